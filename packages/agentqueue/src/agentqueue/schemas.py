"""Wire schema for tasks, results and dead letters.

Every entity travels through Redis Streams as a flat ``dict[str, str]``:
scalars as their string form, integers in decimal, and nested documents as
canonical JSON. Wire keys are camelCase; the Python attributes are snake_case
aliases of them.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, JsonValue, StrictInt, StrictStr, field_validator
from pydantic import ValidationError as PydanticValidationError

from agentqueue.types import ValidationError

# ---------------------------------------------------------------------------
# Closed sets
# ---------------------------------------------------------------------------


class TaskType(StrEnum):
    """Kind of work a task describes."""

    CODE = "code"
    EXEC = "exec"
    QUERY = "query"
    REVIEW = "review"


class Priority(StrEnum):
    """Advisory priority. The log never reorders by it."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class ResultStatus(StrEnum):
    """Outcome of one task attempt."""

    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"


# ---------------------------------------------------------------------------
# Time and id helpers
# ---------------------------------------------------------------------------


def generate_id() -> str:
    """Return a fresh unique task id."""
    return str(uuid4())


def format_timestamp(moment: datetime) -> str:
    """*moment* in UTC as ISO-8601 with millisecond precision and a ``Z`` suffix."""
    return moment.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def iso_now() -> str:
    return format_timestamp(datetime.now(UTC))


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def elapsed_ms(start: str, end: str) -> int:
    """Milliseconds from *start* to *end*, clamped at zero."""
    delta = parse_timestamp(end) - parse_timestamp(start)
    return max(0, int(delta.total_seconds() * 1000))


def _check_timestamp(value: str) -> str:
    try:
        parse_timestamp(value)
    except ValueError as exc:
        raise ValueError(f"not an ISO-8601 timestamp: {value!r}") from exc
    return value


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


class TaskPayload(BaseModel):
    """Task document. ``prompt`` is required; everything else is opaque."""

    model_config = ConfigDict(frozen=True, extra="allow")

    prompt: StrictStr
    repo: JsonValue = None
    issue: JsonValue = None
    workdir: JsonValue = None
    branch: JsonValue = None


class ResultDocument(BaseModel):
    """Result document produced by a handler (or by a terminal failure)."""

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    output: JsonValue = None
    error: JsonValue = None
    commit_sha: JsonValue = Field(default=None, alias="commitSha")
    branch: JsonValue = None


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


class TaskInput(BaseModel):
    """What a caller supplies to dispatch: a Task minus id, createdAt and retryCount."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: TaskType
    payload: TaskPayload
    priority: Priority = Priority.NORMAL
    dispatched_by: StrictStr = Field(default="", alias="dispatchedBy")
    max_retries: StrictInt = Field(default=3, ge=0, alias="maxRetries")
    timeout_ms: StrictInt = Field(default=300_000, gt=0, alias="timeoutMs")


class Task(BaseModel):
    """A unit of work. Immutable; retries produce a copy with a bumped counter."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: StrictStr = Field(min_length=1)
    type: TaskType
    payload: TaskPayload
    priority: Priority
    dispatched_by: StrictStr = Field(alias="dispatchedBy")
    created_at: StrictStr = Field(alias="createdAt")
    max_retries: StrictInt = Field(ge=0, alias="maxRetries")
    retry_count: StrictInt = Field(ge=0, alias="retryCount")
    timeout_ms: StrictInt = Field(gt=0, alias="timeoutMs")

    @field_validator("created_at")
    @classmethod
    def check_created_at(cls, value: str) -> str:
        return _check_timestamp(value)

    def with_retry_count(self, retry_count: int) -> Task:
        return self.model_copy(update={"retry_count": retry_count})


class Result(BaseModel):
    """Outcome of one task attempt. Several may exist per task id."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    task_id: StrictStr = Field(alias="taskId")
    worker: StrictStr
    status: ResultStatus
    result: ResultDocument
    started_at: StrictStr = Field(alias="startedAt")
    completed_at: StrictStr = Field(alias="completedAt")
    duration_ms: StrictInt = Field(ge=0, alias="durationMs")

    @field_validator("started_at", "completed_at")
    @classmethod
    def check_timestamps(cls, value: str) -> str:
        return _check_timestamp(value)

    @classmethod
    def build(
        cls,
        *,
        task_id: str,
        worker: str,
        status: ResultStatus,
        document: ResultDocument,
        started_at: str,
        completed_at: str | None = None,
    ) -> Result:
        """Create a Result, deriving ``duration_ms`` from the two timestamps."""
        completed = completed_at or iso_now()
        return cls(
            task_id=task_id,
            worker=worker,
            status=status,
            result=document,
            started_at=started_at,
            completed_at=completed,
            duration_ms=elapsed_ms(started_at, completed),
        )


class DeadLetter(BaseModel):
    """A DLQ entry: the exhausted task plus its terminal failure result."""

    model_config = ConfigDict(frozen=True)

    task: Task
    result: Result

    @property
    def error(self) -> str:
        error = self.result.result.error
        if error is None:
            return ""
        return error if isinstance(error, str) else json.dumps(error, sort_keys=True)

    @classmethod
    def build(
        cls,
        task: Task,
        *,
        worker: str,
        error: str,
        started_at: str | None = None,
    ) -> DeadLetter:
        completed = iso_now()
        failure = Result.build(
            task_id=task.id,
            worker=worker,
            status=ResultStatus.FAILED,
            document=ResultDocument(error=error),
            started_at=started_at or completed,
            completed_at=completed,
        )
        return cls(task=task, result=failure)


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


def next_attempt(task: Task) -> tuple[Task, bool]:
    """Bump *task*'s retry counter after a failure.

    ``max_retries`` counts retries, so the bumped task may run again while
    ``retry_count <= max_retries``. Returns ``(bumped_task, retryable)``.
    """
    bumped = task.with_retry_count(task.retry_count + 1)
    return bumped, bumped.retry_count <= bumped.max_retries


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _first_error(exc: PydanticValidationError) -> ValidationError:
    err = exc.errors()[0]
    field = ".".join(str(part) for part in err["loc"]) or "value"
    return ValidationError(field, err["msg"])


def _validate(model: type[BaseModel], data: Any, what: str) -> Any:
    if not isinstance(data, Mapping):
        raise ValidationError(what, f"{what} must be an object")
    try:
        return model.model_validate(dict(data))
    except PydanticValidationError as exc:
        raise _first_error(exc) from exc


def validate_task(data: Any) -> Task:
    """Validate an untyped mapping into a :class:`Task`.

    Raises:
        ValidationError: Naming the first violated field.
    """
    return _validate(Task, data, "task")


def validate_result(data: Any) -> Result:
    """Validate an untyped mapping into a :class:`Result`.

    Raises:
        ValidationError: Naming the first violated field.
    """
    return _validate(Result, data, "result")


def validate_task_input(data: Any) -> TaskInput:
    if isinstance(data, TaskInput):
        return data
    return _validate(TaskInput, data, "task")


def validate_result_document(data: Any) -> ResultDocument:
    """Coerce a handler's return value into a :class:`ResultDocument`.

    ``None`` becomes an empty document and a bare string becomes ``output``.
    """
    if isinstance(data, ResultDocument):
        return data
    if data is None:
        return ResultDocument()
    if isinstance(data, str):
        return ResultDocument(output=data)
    return _validate(ResultDocument, data, "result")


# ---------------------------------------------------------------------------
# Flat string encoding
# ---------------------------------------------------------------------------


def _dump_document(doc: BaseModel) -> str:
    data = doc.model_dump(mode="json", by_alias=True, exclude_none=True)
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def _field(data: Mapping[str, str], key: str) -> str:
    try:
        value = data[key]
    except KeyError:
        raise ValidationError(key, f"{key} required") from None
    if not isinstance(value, str):
        raise ValidationError(key, f"{key} must be a string")
    return value


def _int_field(data: Mapping[str, str], key: str) -> int:
    raw = _field(data, key)
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(key, f"{key} must be an integer, got {raw!r}") from None


def _json_field(data: Mapping[str, str], key: str) -> Any:
    raw = _field(data, key)
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError(key, f"{key} is not valid JSON: {exc.msg}") from None


def serialize_task(task: Task) -> dict[str, str]:
    return {
        "id": task.id,
        "type": str(task.type),
        "payload": _dump_document(task.payload),
        "priority": str(task.priority),
        "dispatchedBy": task.dispatched_by,
        "createdAt": task.created_at,
        "maxRetries": str(task.max_retries),
        "retryCount": str(task.retry_count),
        "timeoutMs": str(task.timeout_ms),
    }


def deserialize_task(data: Mapping[str, str]) -> Task:
    """Invert :func:`serialize_task` and re-validate.

    Raises:
        ValidationError: If the flat form is missing keys, has non-numeric
            counters, broken JSON, or fails Task validation.
    """
    if not isinstance(data, Mapping):
        raise ValidationError("task", "task must be an object")
    return validate_task(
        {
            "id": _field(data, "id"),
            "type": _field(data, "type"),
            "payload": _json_field(data, "payload"),
            "priority": _field(data, "priority"),
            "dispatchedBy": _field(data, "dispatchedBy"),
            "createdAt": _field(data, "createdAt"),
            "maxRetries": _int_field(data, "maxRetries"),
            "retryCount": _int_field(data, "retryCount"),
            "timeoutMs": _int_field(data, "timeoutMs"),
        }
    )


def serialize_result(result: Result) -> dict[str, str]:
    return {
        "taskId": result.task_id,
        "worker": result.worker,
        "status": str(result.status),
        "result": _dump_document(result.result),
        "startedAt": result.started_at,
        "completedAt": result.completed_at,
        "durationMs": str(result.duration_ms),
    }


def deserialize_result(data: Mapping[str, str]) -> Result:
    """Invert :func:`serialize_result` and re-validate."""
    if not isinstance(data, Mapping):
        raise ValidationError("result", "result must be an object")
    return validate_result(
        {
            "taskId": _field(data, "taskId"),
            "worker": _field(data, "worker"),
            "status": _field(data, "status"),
            "result": _json_field(data, "result"),
            "startedAt": _field(data, "startedAt"),
            "completedAt": _field(data, "completedAt"),
            "durationMs": _int_field(data, "durationMs"),
        }
    )


def serialize_dead_letter(entry: DeadLetter) -> dict[str, str]:
    # Task and Result wire keys are disjoint, so one flat mapping holds both.
    return {**serialize_task(entry.task), **serialize_result(entry.result)}


def deserialize_dead_letter(data: Mapping[str, str]) -> DeadLetter:
    return DeadLetter(task=deserialize_task(data), result=deserialize_result(data))
