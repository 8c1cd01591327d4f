"""Retry / dead-letter routing shared by the consumer and the reliability manager."""

from __future__ import annotations

from enum import StrEnum

from agentqueue.client import LogBatch
from agentqueue.config import QueueConfig
from agentqueue.schemas import (
    DeadLetter,
    Task,
    next_attempt,
    serialize_dead_letter,
    serialize_task,
)


class FailureAction(StrEnum):
    """Where a failed attempt was routed."""

    RETRY = "retry"
    DEAD_LETTER = "dead_letter"


def stage_failure(
    batch: LogBatch,
    config: QueueConfig,
    task: Task,
    entry_id: str,
    *,
    worker: str,
    error: str,
    started_at: str | None = None,
) -> tuple[FailureAction, Task]:
    """Queue the routing of one failed attempt onto *batch*.

    The original entry is acknowledged and deleted; the task, with its retry
    counter bumped, is either re-appended to the task log or appended to the
    DLQ together with a ``failed`` result carrying *error*.

    Returns:
        The action taken and the bumped task.
    """
    bumped, retryable = next_attempt(task)
    batch.acknowledge(config.tasks_stream, config.group, entry_id)
    batch.delete(config.tasks_stream, entry_id)
    if retryable:
        batch.append(config.tasks_stream, serialize_task(bumped))
        return FailureAction.RETRY, bumped

    letter = DeadLetter.build(bumped, worker=worker, error=error, started_at=started_at)
    batch.append(config.dlq_stream, serialize_dead_letter(letter))
    return FailureAction.DEAD_LETTER, bumped
