"""Task producer: dispatch work onto the task log and collect results."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from agentqueue.client import QueueClient
from agentqueue.metrics import record_queue_depth, record_task_dispatched
from agentqueue.schemas import (
    Priority,
    Result,
    Task,
    TaskInput,
    deserialize_result,
    generate_id,
    iso_now,
    serialize_task,
    validate_task_input,
)

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.5


@dataclass(frozen=True)
class QueueStats:
    """Aggregate queue counters.

    ``pending`` is the task-log length, ``processing`` the group's
    pending-entry count, ``completed`` the result-log length and ``failed``
    the DLQ length.
    """

    pending: int
    processing: int
    completed: int
    failed: int


class TaskProducer:
    """Creates tasks, appends them to the task log and reads results back.

    Args:
        client: Connected :class:`QueueClient`.
    """

    def __init__(self, client: QueueClient) -> None:
        self._client = client
        self._config = client.config

    async def dispatch(self, task: TaskInput | Mapping[str, Any]) -> str:
        """Stamp a new id, ``createdAt`` and ``retryCount=0`` and append the task.

        Errors from the log propagate to the caller.

        Returns:
            The generated task id.
        """
        spec = validate_task_input(task)
        full = Task(
            id=generate_id(),
            type=spec.type,
            payload=spec.payload,
            priority=spec.priority,
            dispatched_by=spec.dispatched_by,
            created_at=iso_now(),
            max_retries=spec.max_retries,
            retry_count=0,
            timeout_ms=spec.timeout_ms,
        )
        entry_id = await self._client.append(self._config.tasks_stream, serialize_task(full))
        record_task_dispatched(
            task_id=full.id, task_type=str(full.type), stream=self._config.tasks_stream
        )
        logger.info(
            "Dispatched task %s (type=%s, priority=%s, entry=%s)",
            full.id,
            full.type,
            full.priority,
            entry_id,
        )
        return full.id

    async def dispatch_urgent(self, task: TaskInput | Mapping[str, Any]) -> str:
        """Dispatch with ``priority="high"`` regardless of the input."""
        spec = validate_task_input(task)
        return await self.dispatch(spec.model_copy(update={"priority": Priority.HIGH}))

    async def await_result(self, task_id: str, timeout_ms: int = 30_000) -> Result | None:
        """Poll the result log until a result for *task_id* appears.

        Scans every 500 ms. Returns ``None`` once *timeout_ms* elapses. A
        retried task may have several results; the oldest one is returned.
        """
        deadline = time.monotonic() + timeout_ms / 1000
        while True:
            entries = await self._client.range_scan(self._config.results_stream)
            for _entry_id, fields in entries:
                if fields.get("taskId") == task_id:
                    return deserialize_result(fields)
            if time.monotonic() >= deadline:
                logger.debug("No result for task %s within %dms", task_id, timeout_ms)
                return None
            await asyncio.sleep(_POLL_INTERVAL)

    async def poll_results(self, count: int = 10) -> list[Result]:
        """The *count* most recent results, newest first."""
        entries = await self._client.reverse_scan(self._config.results_stream, count=count)
        return [deserialize_result(fields) for _entry_id, fields in entries]

    async def stats(self) -> QueueStats:
        """Queue depth counters. ``processing`` is 0 before the group exists."""
        pending, completed, failed, summary = await asyncio.gather(
            self._client.length(self._config.tasks_stream),
            self._client.length(self._config.results_stream),
            self._client.length(self._config.dlq_stream),
            self._client.pending_summary(
                self._config.tasks_stream, self._config.group, count=0
            ),
        )
        record_queue_depth(depth=pending, stream=self._config.tasks_stream)
        return QueueStats(
            pending=pending,
            processing=summary.count,
            completed=completed,
            failed=failed,
        )
