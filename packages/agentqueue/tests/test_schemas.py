"""Tests for agentqueue.schemas: validation, flat encoding and the retry policy."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from agentqueue.schemas import (
    DeadLetter,
    Priority,
    Result,
    ResultDocument,
    ResultStatus,
    Task,
    TaskPayload,
    TaskType,
    deserialize_dead_letter,
    deserialize_result,
    deserialize_task,
    elapsed_ms,
    format_timestamp,
    generate_id,
    iso_now,
    next_attempt,
    parse_timestamp,
    serialize_dead_letter,
    serialize_result,
    serialize_task,
    validate_result,
    validate_result_document,
    validate_task,
    validate_task_input,
)
from agentqueue.types import ValidationError


def _task_data(**overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": "task-1",
        "type": "code",
        "payload": {"prompt": "fix issue 42", "repo": "acme/api", "issue": 42},
        "priority": "high",
        "dispatchedBy": "planner",
        "createdAt": "2026-03-01T10:00:00.000Z",
        "maxRetries": 3,
        "retryCount": 0,
        "timeoutMs": 300_000,
    }
    data.update(overrides)
    return data


def _result_data(**overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "taskId": "task-1",
        "worker": "host-1-abcd",
        "status": "success",
        "result": {"output": "done", "commitSha": "abc123"},
        "startedAt": "2026-03-01T10:00:00.000Z",
        "completedAt": "2026-03-01T10:00:01.500Z",
        "durationMs": 1500,
    }
    data.update(overrides)
    return data


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_generate_id_unique(self) -> None:
        assert generate_id() != generate_id()

    def test_iso_now_is_utc_millis(self) -> None:
        now = iso_now()
        assert now.endswith("Z")
        assert len(now.split(".")[1]) == 4  # "123Z"
        assert parse_timestamp(now).utcoffset().total_seconds() == 0  # type: ignore[union-attr]

    def test_parse_naive_timestamp_is_utc(self) -> None:
        parsed = parse_timestamp("2026-03-01T10:00:00")
        assert parsed.utcoffset().total_seconds() == 0  # type: ignore[union-attr]

    def test_elapsed_ms(self) -> None:
        assert elapsed_ms("2026-03-01T10:00:00.000Z", "2026-03-01T10:00:02.250Z") == 2250

    def test_elapsed_ms_clamped(self) -> None:
        assert elapsed_ms("2026-03-01T10:00:05.000Z", "2026-03-01T10:00:00.000Z") == 0

    def test_format_timestamp_converts_to_utc(self) -> None:
        moment = datetime(2026, 3, 1, 12, 0, 0, 250_000, tzinfo=timezone(timedelta(hours=2)))
        assert format_timestamp(moment) == "2026-03-01T10:00:00.250Z"


# ---------------------------------------------------------------------------
# validate_task
# ---------------------------------------------------------------------------


class TestValidateTask:
    def test_valid(self) -> None:
        task = validate_task(_task_data())
        assert task.id == "task-1"
        assert task.type is TaskType.CODE
        assert task.priority is Priority.HIGH
        assert task.payload.prompt == "fix issue 42"
        assert task.payload.issue == 42
        assert task.dispatched_by == "planner"
        assert task.retry_count == 0

    def test_payload_extra_fields_kept(self) -> None:
        task = validate_task(_task_data(payload={"prompt": "p", "labels": ["bug"]}))
        assert task.model_dump(by_alias=True)["payload"]["labels"] == ["bug"]

    def test_missing_id(self) -> None:
        data = _task_data()
        del data["id"]
        with pytest.raises(ValidationError) as exc_info:
            validate_task(data)
        assert exc_info.value.field == "id"

    def test_empty_id(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_task(_task_data(id=""))
        assert exc_info.value.field == "id"

    def test_bad_type(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_task(_task_data(type="deploy"))
        assert exc_info.value.field == "type"

    def test_missing_prompt(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_task(_task_data(payload={"repo": "acme/api"}))
        assert exc_info.value.field == "payload.prompt"

    def test_bad_priority(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_task(_task_data(priority="urgent"))
        assert exc_info.value.field == "priority"

    def test_negative_retry_count(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_task(_task_data(retryCount=-1))
        assert exc_info.value.field == "retryCount"

    def test_zero_timeout(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_task(_task_data(timeoutMs=0))
        assert exc_info.value.field == "timeoutMs"

    def test_bad_created_at(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_task(_task_data(createdAt="yesterday"))
        assert exc_info.value.field == "createdAt"

    def test_not_a_mapping(self) -> None:
        with pytest.raises(ValidationError, match="must be an object"):
            validate_task(["not", "a", "task"])

    def test_error_message_format(self) -> None:
        with pytest.raises(ValidationError, match=r"^Validation error: type: "):
            validate_task(_task_data(type="deploy"))


class TestValidateTaskInput:
    def test_defaults(self) -> None:
        spec = validate_task_input({"type": "query", "payload": {"prompt": "why?"}})
        assert spec.priority is Priority.NORMAL
        assert spec.max_retries == 3
        assert spec.timeout_ms == 300_000
        assert spec.dispatched_by == ""

    def test_passthrough(self) -> None:
        spec = validate_task_input({"type": "query", "payload": {"prompt": "why?"}})
        assert validate_task_input(spec) is spec

    def test_rejects_bad_type(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_task_input({"type": "nope", "payload": {"prompt": "x"}})
        assert exc_info.value.field == "type"

    def test_payload_context_keys_are_opaque(self) -> None:
        spec = validate_task_input(
            {"type": "code", "payload": {"prompt": "p", "issue": "#42", "repo": {"name": "api"}}}
        )
        assert spec.payload.issue == "#42"
        assert spec.payload.repo == {"name": "api"}

    def test_prompt_must_be_string(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_task_input({"type": "code", "payload": {"prompt": 42}})
        assert exc_info.value.field == "payload.prompt"


# ---------------------------------------------------------------------------
# validate_result / result documents
# ---------------------------------------------------------------------------


class TestValidateResult:
    def test_valid(self) -> None:
        result = validate_result(_result_data())
        assert result.status is ResultStatus.SUCCESS
        assert result.result.commit_sha == "abc123"
        assert result.duration_ms == 1500

    def test_bad_status(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_result(_result_data(status="crashed"))
        assert exc_info.value.field == "status"

    def test_negative_duration(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_result(_result_data(durationMs=-5))
        assert exc_info.value.field == "durationMs"

    def test_build_computes_duration(self) -> None:
        result = Result.build(
            task_id="t",
            worker="w",
            status=ResultStatus.SUCCESS,
            document=ResultDocument(output="ok"),
            started_at="2026-03-01T10:00:00.000Z",
            completed_at="2026-03-01T10:00:00.750Z",
        )
        assert result.duration_ms == 750


class TestValidateResultDocument:
    def test_none_is_empty(self) -> None:
        assert validate_result_document(None) == ResultDocument()

    def test_string_is_output(self) -> None:
        assert validate_result_document("hello").output == "hello"

    def test_mapping(self) -> None:
        doc = validate_result_document({"output": "x", "branch": "fix/42"})
        assert doc.branch == "fix/42"

    def test_structured_output(self) -> None:
        doc = validate_result_document({"output": {"files": ["a.py", "b.py"]}, "commitSha": None})
        assert doc.output == {"files": ["a.py", "b.py"]}

    def test_list_output(self) -> None:
        assert validate_result_document({"output": [1, "two"]}).output == [1, "two"]

    def test_rejects_non_mapping(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_result_document(["a", "b"])
        assert exc_info.value.field == "result"


# ---------------------------------------------------------------------------
# Flat encoding
# ---------------------------------------------------------------------------


class TestTaskEncoding:
    def test_round_trip(self) -> None:
        task = validate_task(_task_data(payload={"prompt": "p", "meta": {"k": [1, 2]}}))
        assert deserialize_task(serialize_task(task)) == task

    def test_flat_string_fields(self) -> None:
        flat = serialize_task(validate_task(_task_data()))
        assert all(isinstance(v, str) for v in flat.values())
        assert flat["maxRetries"] == "3"
        assert flat["retryCount"] == "0"
        assert flat["timeoutMs"] == "300000"
        assert json.loads(flat["payload"])["prompt"] == "fix issue 42"

    def test_payload_json_is_canonical(self) -> None:
        flat = serialize_task(validate_task(_task_data()))
        assert flat["payload"] == '{"issue":42,"prompt":"fix issue 42","repo":"acme/api"}'

    def test_explicit_none_keys_omitted(self) -> None:
        task = validate_task(_task_data(payload={"prompt": "p", "repo": None, "branch": None}))
        flat = serialize_task(task)
        assert flat["payload"] == '{"prompt":"p"}'
        assert deserialize_task(flat) == task

    def test_opaque_payload_values_round_trip(self) -> None:
        task = validate_task(_task_data(payload={"prompt": "p", "issue": "#42", "repo": ["a", "b"]}))
        assert deserialize_task(serialize_task(task)).payload.issue == "#42"

    def test_non_numeric_counter(self) -> None:
        flat = serialize_task(validate_task(_task_data()))
        flat["maxRetries"] = "three"
        with pytest.raises(ValidationError) as exc_info:
            deserialize_task(flat)
        assert exc_info.value.field == "maxRetries"

    def test_missing_key(self) -> None:
        flat = serialize_task(validate_task(_task_data()))
        del flat["createdAt"]
        with pytest.raises(ValidationError) as exc_info:
            deserialize_task(flat)
        assert exc_info.value.field == "createdAt"

    def test_broken_payload_json(self) -> None:
        flat = serialize_task(validate_task(_task_data()))
        flat["payload"] = "{not json"
        with pytest.raises(ValidationError) as exc_info:
            deserialize_task(flat)
        assert exc_info.value.field == "payload"

    def test_decoded_payload_still_validated(self) -> None:
        flat = serialize_task(validate_task(_task_data()))
        flat["payload"] = '{"repo": "acme/api"}'
        with pytest.raises(ValidationError) as exc_info:
            deserialize_task(flat)
        assert exc_info.value.field == "payload.prompt"


class TestResultEncoding:
    def test_round_trip(self) -> None:
        result = validate_result(_result_data())
        assert deserialize_result(serialize_result(result)) == result

    def test_non_numeric_duration(self) -> None:
        flat = serialize_result(validate_result(_result_data()))
        flat["durationMs"] = "fast"
        with pytest.raises(ValidationError) as exc_info:
            deserialize_result(flat)
        assert exc_info.value.field == "durationMs"


class TestDeadLetter:
    def test_build_records_failure(self) -> None:
        task = validate_task(_task_data(retryCount=4))
        letter = DeadLetter.build(task, worker="w1", error="boom")
        assert letter.result.status is ResultStatus.FAILED
        assert letter.result.task_id == task.id
        assert letter.error == "boom"

    def test_round_trip(self) -> None:
        task = validate_task(_task_data(retryCount=4))
        letter = DeadLetter.build(
            task, worker="w1", error="boom", started_at="2026-03-01T10:00:00.000Z"
        )
        flat = serialize_dead_letter(letter)
        assert flat["id"] == task.id
        assert flat["taskId"] == task.id
        assert deserialize_dead_letter(flat) == letter

    def test_structured_error_rendered_as_json(self) -> None:
        task = validate_task(_task_data(retryCount=4))
        result = Result.build(
            task_id=task.id,
            worker="w1",
            status=ResultStatus.FAILED,
            document=ResultDocument(error={"code": 7, "msg": "boom"}),
            started_at="2026-03-01T10:00:00.000Z",
        )
        letter = DeadLetter(task=task, result=result)
        assert letter.error == '{"code": 7, "msg": "boom"}'


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


class TestNextAttempt:
    def _task(self, retry_count: int, max_retries: int) -> Task:
        return Task(
            id="t",
            type=TaskType.EXEC,
            payload=TaskPayload(prompt="run"),
            priority=Priority.LOW,
            dispatched_by="",
            created_at=iso_now(),
            max_retries=max_retries,
            retry_count=retry_count,
            timeout_ms=1000,
        )

    def test_within_budget(self) -> None:
        bumped, retryable = next_attempt(self._task(0, 2))
        assert bumped.retry_count == 1
        assert retryable is True

    def test_last_retry(self) -> None:
        bumped, retryable = next_attempt(self._task(1, 2))
        assert bumped.retry_count == 2
        assert retryable is True

    def test_exhausted(self) -> None:
        bumped, retryable = next_attempt(self._task(2, 2))
        assert bumped.retry_count == 3
        assert retryable is False

    def test_zero_retries_dead_letters_first_failure(self) -> None:
        bumped, retryable = next_attempt(self._task(0, 0))
        assert bumped.retry_count == 1
        assert retryable is False

    def test_original_unchanged(self) -> None:
        task = self._task(0, 2)
        next_attempt(task)
        assert task.retry_count == 0
