"""Reclaims abandoned tasks and administers the dead-letter queue."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import UTC, datetime, timedelta

from agentqueue.client import QueueClient
from agentqueue.metrics import (
    record_task_dead_lettered,
    record_task_reclaimed,
    record_task_retried,
)
from agentqueue.policy import FailureAction, stage_failure
from agentqueue.schemas import (
    DeadLetter,
    Task,
    deserialize_dead_letter,
    deserialize_task,
    format_timestamp,
    iso_now,
    parse_timestamp,
    serialize_task,
)
from agentqueue.types import NotFoundError, TransientInfraError, ValidationError

logger = logging.getLogger(__name__)

RECLAIMER = "reclaimer"
"""Consumer name that stale entries are reassigned to while being re-routed."""

_PENDING_BATCH = 100


class ReliabilityManager:
    """Recovers work abandoned by crashed consumers and manages the DLQ.

    A consumer that dies between claiming and acknowledging leaves its entry
    in the group's pending list. :meth:`reclaim_stale` takes such entries
    over once they have been idle long enough and routes them through the
    same retry/dead-letter policy as a handler failure.

    Args:
        client: Connected :class:`QueueClient`.
    """

    def __init__(self, client: QueueClient) -> None:
        self._client = client
        self._config = client.config
        self._reclaimer: asyncio.Task[None] | None = None

    @property
    def reclaimer_running(self) -> bool:
        return self._reclaimer is not None and not self._reclaimer.done()

    # ------------------------------------------------------------------
    # Stale-claim recovery
    # ------------------------------------------------------------------

    async def reclaim_stale(self, idle_threshold_ms: int = 60_000) -> int:
        """Re-route pending entries idle for at least *idle_threshold_ms*.

        Inspects up to 100 pending entries. Younger entries are left alone,
        they may still be in flight.

        Returns:
            The number of entries reclaimed.
        """
        cfg = self._config
        summary = await self._client.pending_summary(
            cfg.tasks_stream, cfg.group, count=_PENDING_BATCH
        )
        reclaimed = 0
        for pending in summary.entries:
            if pending.idle_ms < idle_threshold_ms:
                continue
            claimed = await self._client.force_reassign(
                cfg.tasks_stream, cfg.group, RECLAIMER, idle_threshold_ms, pending.entry_id
            )
            if not claimed:
                continue
            entry_id, fields = claimed[0]
            try:
                task = deserialize_task(fields)
            except ValidationError as exc:
                logger.error("Discarding malformed pending entry %s: %s", entry_id, exc)
                async with self._client.batch() as batch:
                    batch.acknowledge(cfg.tasks_stream, cfg.group, entry_id)
                    batch.delete(cfg.tasks_stream, entry_id)
                continue

            started_at = datetime.now(UTC) - timedelta(milliseconds=pending.idle_ms)
            async with self._client.batch() as batch:
                action, bumped = stage_failure(
                    batch,
                    cfg,
                    task,
                    entry_id,
                    worker=RECLAIMER,
                    error=(
                        f"reclaimed from {pending.consumer} after {pending.idle_ms}ms idle"
                    ),
                    started_at=format_timestamp(started_at),
                )
            reclaimed += 1
            record_task_reclaimed(task_id=task.id, worker=pending.consumer)
            if action is FailureAction.RETRY:
                record_task_retried(
                    task_id=task.id, worker=RECLAIMER, retry_count=bumped.retry_count
                )
            else:
                record_task_dead_lettered(
                    task_id=task.id, worker=RECLAIMER, retry_count=bumped.retry_count
                )
            logger.warning(
                "Reclaimed task %s from %s (idle %dms) -> %s",
                task.id,
                pending.consumer,
                pending.idle_ms,
                action,
            )
        if reclaimed:
            logger.info("Reclaim sweep re-routed %d stale entries", reclaimed)
        return reclaimed

    def start_reclaimer(
        self,
        interval_ms: int = 30_000,
        idle_threshold_ms: int = 60_000,
    ) -> None:
        """Run :meth:`reclaim_stale` every *interval_ms*. No-op if already running."""
        if self.reclaimer_running:
            return
        self._reclaimer = asyncio.create_task(
            self._reclaim_loop(interval_ms / 1000, idle_threshold_ms)
        )
        logger.info("Reclaimer started (interval=%dms, idle=%dms)", interval_ms, idle_threshold_ms)

    async def stop_reclaimer(self) -> None:
        """Stop the periodic sweep. No-op if it is not running."""
        task, self._reclaimer = self._reclaimer, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("Reclaimer stopped")

    async def _reclaim_loop(self, interval: float, idle_threshold_ms: int) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.reclaim_stale(idle_threshold_ms)
            except asyncio.CancelledError:
                raise
            except TransientInfraError as exc:
                logger.warning("Reclaim sweep skipped: %s", exc)
            except Exception:
                logger.error("Reclaim sweep failed", exc_info=True)

    # ------------------------------------------------------------------
    # Dead-letter queue
    # ------------------------------------------------------------------

    async def list_dlq(self, count: int = 100) -> list[DeadLetter]:
        """Up to *count* DLQ entries, oldest first."""
        entries = await self._client.range_scan(self._config.dlq_stream, count=count)
        return [deserialize_dead_letter(fields) for _entry_id, fields in entries]

    async def retry_from_dlq(self, task_id: str) -> Task:
        """Move *task_id* from the DLQ back to the task log with ``retry_count=0``.

        Raises:
            NotFoundError: If no DLQ entry carries *task_id*.
        """
        cfg = self._config
        for entry_id, fields in await self._client.range_scan(cfg.dlq_stream):
            if fields.get("id") != task_id:
                continue
            task = deserialize_task(fields).with_retry_count(0)
            async with self._client.batch() as batch:
                batch.append(cfg.tasks_stream, serialize_task(task))
                batch.delete(cfg.dlq_stream, entry_id)
            logger.info("Task %s moved from DLQ back to the task log", task_id)
            return task
        raise NotFoundError(f"Task {task_id} not found in DLQ")

    async def purge_dlq(self, max_age_ms: int) -> int:
        """Delete DLQ entries whose task was created more than *max_age_ms* ago.

        Returns:
            The number of entries deleted.
        """
        now = parse_timestamp(iso_now())
        cutoff = now - timedelta(milliseconds=max_age_ms)
        expired: list[str] = []
        for entry_id, fields in await self._client.range_scan(self._config.dlq_stream):
            try:
                created = parse_timestamp(fields["createdAt"])
            except (KeyError, ValueError):
                logger.warning("DLQ entry %s has no usable createdAt, keeping it", entry_id)
                continue
            if created < cutoff:
                expired.append(entry_id)

        deleted = await self._client.delete(self._config.dlq_stream, *expired)
        if deleted:
            logger.info("Purged %d DLQ entries older than %dms", deleted, max_age_ms)
        return len(expired)
