"""Agent Queue: a reliable Redis Streams task queue for agent workers."""

from __future__ import annotations

from agentqueue.autoscaler import AutoScaler, ScaleAction, ScaleDecision
from agentqueue.client import PendingEntry, PendingSummary, QueueClient
from agentqueue.config import QueueConfig
from agentqueue.consumer import ClaimedTask, TaskConsumer
from agentqueue.policy import FailureAction
from agentqueue.producer import QueueStats, TaskProducer
from agentqueue.reliability import ReliabilityManager
from agentqueue.schemas import (
    DeadLetter,
    Priority,
    Result,
    ResultDocument,
    ResultStatus,
    Task,
    TaskInput,
    TaskPayload,
    TaskType,
    deserialize_result,
    deserialize_task,
    serialize_result,
    serialize_task,
    validate_result,
    validate_task,
)
from agentqueue.types import (
    AgentQueueError,
    HandlerError,
    NotFoundError,
    TransientInfraError,
    ValidationError,
)

__version__ = "0.1.0"

__all__: list[str] = [
    "AgentQueueError",
    "AutoScaler",
    "ClaimedTask",
    "DeadLetter",
    "FailureAction",
    "HandlerError",
    "NotFoundError",
    "PendingEntry",
    "PendingSummary",
    "Priority",
    "QueueClient",
    "QueueConfig",
    "QueueStats",
    "ReliabilityManager",
    "Result",
    "ResultDocument",
    "ResultStatus",
    "ScaleAction",
    "ScaleDecision",
    "Task",
    "TaskConsumer",
    "TaskInput",
    "TaskPayload",
    "TaskProducer",
    "TaskType",
    "TransientInfraError",
    "ValidationError",
    "deserialize_result",
    "deserialize_task",
    "serialize_result",
    "serialize_task",
    "validate_result",
    "validate_task",
]
