"""Error taxonomy for agent-queue."""

from __future__ import annotations


class AgentQueueError(Exception):
    """Base exception for all agent-queue errors."""


class ValidationError(AgentQueueError):
    """A Task or Result failed structural validation.

    Validation is fail-fast: *field* names the first violated constraint.
    """

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"Validation error: {field}: {message}")


class NotFoundError(AgentQueueError):
    """A requested entry does not exist (e.g. DLQ retry of an unknown task)."""


class TransientInfraError(AgentQueueError):
    """The log backend is temporarily unreachable."""


class HandlerError(AgentQueueError):
    """The caller-supplied task handler raised.

    Args:
        task_id: The task being handled.
        cause: The original exception.
    """

    def __init__(self, task_id: str, cause: BaseException) -> None:
        self.task_id = task_id
        self.cause = cause
        super().__init__(str(cause) or type(cause).__name__)
