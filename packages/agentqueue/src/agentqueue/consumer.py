"""Task consumer that claims tasks from the shared group and routes handler outcomes."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import os
import random
import socket
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from agentqueue.client import QueueClient
from agentqueue.metrics import (
    record_task_completed,
    record_task_dead_lettered,
    record_task_retried,
)
from agentqueue.observability.logging import LogContext
from agentqueue.policy import FailureAction, stage_failure
from agentqueue.schemas import (
    Result,
    ResultDocument,
    ResultStatus,
    Task,
    deserialize_task,
    iso_now,
    serialize_result,
    validate_result_document,
)
from agentqueue.types import HandlerError, TransientInfraError, ValidationError

_log = logging.getLogger(__name__)

TaskHandler = Callable[[Task], Awaitable[ResultDocument | Mapping[str, Any] | str | None]]


def _generate_worker_name() -> str:
    """Generate a unique consumer name from hostname, PID, and a random suffix."""
    hostname = socket.gethostname()
    pid = os.getpid()
    suffix = random.randbytes(4).hex()
    return f"{hostname}-{pid}-{suffix}"


@dataclass(frozen=True)
class ClaimedTask:
    """A task read from the log together with the entry id needed to ack it."""

    task: Task
    entry_id: str


@dataclass(frozen=True)
class HandlerSucceeded:
    document: ResultDocument


@dataclass(frozen=True)
class HandlerFailed:
    error: HandlerError


HandlerOutcome = HandlerSucceeded | HandlerFailed


async def invoke_handler(handler: Callable[[Task], Any], task: Task) -> HandlerOutcome:
    """Run *handler* on *task* and capture the outcome as a value.

    Any exception raised by the handler, or a return value that is not a
    valid result document, becomes :class:`HandlerFailed`.
    """
    try:
        value = handler(task)
        if inspect.isawaitable(value):
            value = await value
        document = validate_result_document(value)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        return HandlerFailed(HandlerError(task.id, exc))
    return HandlerSucceeded(document)


class TaskConsumer:
    """One worker in the shared consumer group.

    Runs a single cooperative loop: claim one task, publish its heartbeat
    lease, run the handler, then :meth:`ack` or :meth:`fail`. Several
    consumers (in any number of processes) compete for entries; Redis decides
    who gets which.

    Args:
        client: Connected :class:`QueueClient`.
        worker_name: Consumer identity within the group. Auto-generated if
            not provided.
        block_ms: How long each claim waits for a new entry.
        backoff: Seconds to pause after an infrastructure error.
    """

    def __init__(
        self,
        client: QueueClient,
        worker_name: str | None = None,
        *,
        block_ms: int = 5000,
        backoff: float = 1.0,
    ) -> None:
        self._client = client
        self._config = client.config
        self._worker_name = worker_name or _generate_worker_name()
        self._block_ms = block_ms
        self._backoff = backoff

        self._shutdown_event = asyncio.Event()
        self._running = False
        self._tasks_processed = 0
        self._tasks_failed = 0

    @property
    def worker_name(self) -> str:
        return self._worker_name

    @property
    def running(self) -> bool:
        return self._running

    @property
    def tasks_processed(self) -> int:
        return self._tasks_processed

    @property
    def tasks_failed(self) -> int:
        return self._tasks_failed

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def start(self, handler: TaskHandler) -> None:
        """Enter the claim-handle loop until :meth:`stop` is called.

        Errors from claiming, acking or failing are logged and followed by a
        short backoff; the loop itself never raises them. A stopped consumer
        may be started again.

        Raises:
            RuntimeError: If this consumer's loop is already running.
        """
        if self._running:
            raise RuntimeError(f"Consumer {self._worker_name} is already running")
        self._running = True
        _log.info(
            "Consumer %s starting (stream=%s, group=%s)",
            self._worker_name,
            self._config.tasks_stream,
            self._config.group,
        )
        group_ready = False
        try:
            while not self._shutdown_event.is_set():
                try:
                    if not group_ready:
                        await self._client.ensure_group(
                            self._config.tasks_stream, self._config.group
                        )
                        group_ready = True
                    claimed = await self._claim(self._block_ms)
                    if claimed is None:
                        continue
                    await self._process(claimed, handler)
                except asyncio.CancelledError:
                    raise
                except ValidationError as exc:
                    _log.error("Consumer %s skipped malformed entry: %s", self._worker_name, exc)
                except TransientInfraError as exc:
                    _log.warning(
                        "Consumer %s lost the log (%s), retrying in %.1fs",
                        self._worker_name,
                        exc,
                        self._backoff,
                    )
                    await self._pause()
                except Exception:
                    _log.error(
                        "Consumer %s loop error, retrying in %.1fs",
                        self._worker_name,
                        self._backoff,
                        exc_info=True,
                    )
                    await self._pause()
        finally:
            self._running = False
            self._shutdown_event.clear()
            _log.info(
                "Consumer %s stopped (processed=%d, failed=%d)",
                self._worker_name,
                self._tasks_processed,
                self._tasks_failed,
            )

    async def stop(self) -> None:
        """Ask the loop to exit after its current wait; an in-flight handler finishes."""
        self._shutdown_event.set()

    async def _pause(self) -> None:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=self._backoff)

    async def _process(self, claimed: ClaimedTask, handler: TaskHandler) -> None:
        task = claimed.task
        started_at = iso_now()
        with LogContext(worker=self._worker_name, task_id=task.id):
            _log.info(
                "Consumer %s claimed task %s (type=%s, attempt=%d)",
                self._worker_name,
                task.id,
                task.type,
                task.retry_count + 1,
            )
            await self.heartbeat(task.id, task.timeout_ms)
            outcome = await invoke_handler(handler, task)
            if isinstance(outcome, HandlerSucceeded):
                await self.ack(task.id, claimed.entry_id, outcome.document, started_at)
            else:
                await self.fail(
                    task.id,
                    claimed.entry_id,
                    str(outcome.error),
                    task,
                    started_at=started_at,
                )

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------

    async def claim(self) -> ClaimedTask | None:
        """Claim one task without waiting and without running a handler.

        Raises:
            ValidationError: If the next entry is malformed. The entry is
                acknowledged and deleted before raising.
        """
        await self._client.ensure_group(self._config.tasks_stream, self._config.group)
        return await self._claim(None)

    async def _claim(self, block_ms: int | None) -> ClaimedTask | None:
        entries = await self._client.claim(
            self._config.tasks_stream,
            self._config.group,
            self._worker_name,
            count=1,
            block_ms=block_ms,
        )
        if not entries:
            return None
        entry_id, fields = entries[0]
        try:
            task = deserialize_task(fields)
        except ValidationError:
            await self._discard(entry_id, fields)
            raise
        return ClaimedTask(task=task, entry_id=entry_id)

    async def _discard(self, entry_id: str, fields: dict[str, str]) -> None:
        _log.error(
            "Consumer %s discarding malformed entry %s: %r",
            self._worker_name,
            entry_id,
            fields,
        )
        async with self._client.batch() as batch:
            batch.acknowledge(self._config.tasks_stream, self._config.group, entry_id)
            batch.delete(self._config.tasks_stream, entry_id)

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    async def ack(
        self,
        task_id: str,
        entry_id: str,
        result: ResultDocument | Mapping[str, Any] | str | None,
        started_at: str,
    ) -> Result:
        """Record success: append the result, ack and delete the entry atomically."""
        outcome = Result.build(
            task_id=task_id,
            worker=self._worker_name,
            status=ResultStatus.SUCCESS,
            document=validate_result_document(result),
            started_at=started_at,
        )
        async with self._client.batch() as batch:
            batch.append(self._config.results_stream, serialize_result(outcome))
            batch.acknowledge(self._config.tasks_stream, self._config.group, entry_id)
            batch.delete(self._config.tasks_stream, entry_id)

        self._tasks_processed += 1
        record_task_completed(
            task_id=task_id, worker=self._worker_name, duration_ms=outcome.duration_ms
        )
        _log.info("Task %s succeeded in %dms", task_id, outcome.duration_ms)
        return outcome

    async def fail(
        self,
        task_id: str,
        entry_id: str,
        error: str,
        original_task: Task,
        *,
        started_at: str | None = None,
    ) -> FailureAction:
        """Record a failed attempt: retry the task or dead-letter it.

        The retry counter is bumped first; the task is re-appended (a fresh
        entry any worker may claim) while it stays within ``max_retries``,
        and dead-lettered with *error* otherwise. The original entry is
        acknowledged and deleted in the same transaction.
        """
        async with self._client.batch() as batch:
            action, bumped = stage_failure(
                batch,
                self._config,
                original_task,
                entry_id,
                worker=self._worker_name,
                error=error,
                started_at=started_at,
            )

        self._tasks_failed += 1
        if action is FailureAction.RETRY:
            record_task_retried(
                task_id=task_id, worker=self._worker_name, retry_count=bumped.retry_count
            )
            _log.warning(
                "Task %s failed (%s), retry %d/%d queued",
                task_id,
                error,
                bumped.retry_count,
                bumped.max_retries,
            )
        else:
            record_task_dead_lettered(
                task_id=task_id, worker=self._worker_name, retry_count=bumped.retry_count
            )
            _log.error(
                "Task %s failed (%s), retries exhausted, moved to DLQ",
                task_id,
                error,
            )
        return action

    async def heartbeat(self, task_id: str, timeout_ms: int) -> None:
        """Set or refresh the lease for *task_id*, expiring after *timeout_ms*."""
        await self._client.set_with_expiry(
            self._config.heartbeat_key(task_id), self._worker_name, timeout_ms
        )
