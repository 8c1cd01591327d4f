"""Queue metrics recording helpers.

Records dispatch, completion, retry, dead-letter and reclaim events using the
``agentqueue.observability.metrics`` infrastructure (OTel when installed,
in-memory collector otherwise).
"""

from __future__ import annotations

from typing import Any

from agentqueue.observability.metrics import HAS_OTEL, _collector, _get_meter
from agentqueue.observability.semconv import (
    METRIC_QUEUE_DEPTH,
    METRIC_TASK_DURATION,
    METRIC_TASKS_COMPLETED,
    METRIC_TASKS_DEAD_LETTERED,
    METRIC_TASKS_DISPATCHED,
    METRIC_TASKS_RECLAIMED,
    METRIC_TASKS_RETRIED,
    QUEUE_RETRY_COUNT,
    QUEUE_STREAM,
    QUEUE_TASK_ID,
    QUEUE_TASK_TYPE,
    QUEUE_WORKER,
)


def _build_attributes(
    *,
    task_id: str = "",
    task_type: str = "",
    worker: str = "",
    stream: str = "",
    retry_count: int | None = None,
) -> dict[str, Any]:
    """Build attribute dict for queue metrics."""
    attrs: dict[str, Any] = {}
    if task_id:
        attrs[QUEUE_TASK_ID] = task_id
    if task_type:
        attrs[QUEUE_TASK_TYPE] = task_type
    if worker:
        attrs[QUEUE_WORKER] = worker
    if stream:
        attrs[QUEUE_STREAM] = stream
    if retry_count is not None:
        attrs[QUEUE_RETRY_COUNT] = retry_count
    return attrs


def _count(name: str, description: str, attrs: dict[str, Any]) -> None:
    if HAS_OTEL:
        _get_meter().create_counter(name=name, unit="1", description=description).add(1, attrs)
    else:
        _collector.add_counter(name, 1.0, attrs)


def record_task_dispatched(*, task_id: str = "", task_type: str = "", stream: str = "") -> None:
    """Record that a task was appended to the task log."""
    attrs = _build_attributes(task_id=task_id, task_type=task_type, stream=stream)
    _count(METRIC_TASKS_DISPATCHED, "Number of tasks dispatched", attrs)


def record_task_completed(
    *,
    task_id: str = "",
    worker: str = "",
    duration_ms: int = 0,
) -> None:
    """Record a successful attempt and its duration.

    Args:
        task_id: The task identifier.
        worker: The consumer that handled it.
        duration_ms: Handler wall time in milliseconds.
    """
    attrs = _build_attributes(task_id=task_id, worker=worker)
    _count(METRIC_TASKS_COMPLETED, "Number of tasks completed", attrs)
    if duration_ms <= 0:
        return
    if HAS_OTEL:
        _get_meter().create_histogram(
            name=METRIC_TASK_DURATION,
            unit="ms",
            description="Task handling duration",
        ).record(duration_ms, attrs)
    else:
        _collector.record_histogram(METRIC_TASK_DURATION, float(duration_ms), attrs)


def record_task_retried(*, task_id: str = "", worker: str = "", retry_count: int = 0) -> None:
    """Record that a failed task was re-appended for another attempt."""
    attrs = _build_attributes(task_id=task_id, worker=worker, retry_count=retry_count)
    _count(METRIC_TASKS_RETRIED, "Number of task retries", attrs)


def record_task_dead_lettered(
    *, task_id: str = "", worker: str = "", retry_count: int = 0
) -> None:
    """Record that a task exhausted its retries and moved to the DLQ."""
    attrs = _build_attributes(task_id=task_id, worker=worker, retry_count=retry_count)
    _count(METRIC_TASKS_DEAD_LETTERED, "Number of tasks dead-lettered", attrs)


def record_task_reclaimed(*, task_id: str = "", worker: str = "") -> None:
    """Record that a stale pending entry was reclaimed from *worker*."""
    attrs = _build_attributes(task_id=task_id, worker=worker)
    _count(METRIC_TASKS_RECLAIMED, "Number of stale tasks reclaimed", attrs)


def record_queue_depth(*, depth: int, stream: str = "") -> None:
    """Record the current task-log length."""
    attrs = _build_attributes(stream=stream)
    if HAS_OTEL:
        _get_meter().create_up_down_counter(
            name=METRIC_QUEUE_DEPTH,
            unit="1",
            description="Current task queue depth",
        ).add(depth, attrs)
    else:
        _collector.set_gauge(METRIC_QUEUE_DEPTH, float(depth), attrs)
