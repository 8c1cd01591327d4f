"""Configuration for queue stream names and the Redis connection."""

from __future__ import annotations

import os

from pydantic import BaseModel, Field

_ENV_REDIS_URL = "AGENT_QUEUE_REDIS_URL"
_ENV_PREFIX = "AGENT_QUEUE_PREFIX"
_DEFAULT_REDIS_URL = "redis://localhost:6379"
_DEFAULT_PREFIX = "agent-queue"


class QueueConfig(BaseModel):
    """Names of the three logs, the shared consumer group and the lease keys.

    Args:
        redis_url: Redis connection URL.
        tasks_stream: Stream holding dispatched tasks.
        results_stream: Stream holding successful results.
        dlq_stream: Stream holding dead-lettered tasks.
        group: Consumer group shared by every worker.
        heartbeat_prefix: Key prefix for per-task heartbeat leases.
    """

    model_config = {"frozen": True}

    redis_url: str = _DEFAULT_REDIS_URL
    tasks_stream: str = Field(default=f"{_DEFAULT_PREFIX}:tasks", min_length=1)
    results_stream: str = Field(default=f"{_DEFAULT_PREFIX}:results", min_length=1)
    dlq_stream: str = Field(default=f"{_DEFAULT_PREFIX}:dlq", min_length=1)
    group: str = Field(default=f"{_DEFAULT_PREFIX}:workers", min_length=1)
    heartbeat_prefix: str = Field(default=f"{_DEFAULT_PREFIX}:heartbeat", min_length=1)

    @classmethod
    def with_prefix(cls, prefix: str, *, redis_url: str = _DEFAULT_REDIS_URL) -> QueueConfig:
        """Build a config whose keys all live under *prefix*."""
        return cls(
            redis_url=redis_url,
            tasks_stream=f"{prefix}:tasks",
            results_stream=f"{prefix}:results",
            dlq_stream=f"{prefix}:dlq",
            group=f"{prefix}:workers",
            heartbeat_prefix=f"{prefix}:heartbeat",
        )

    @classmethod
    def from_env(cls) -> QueueConfig:
        """Read ``AGENT_QUEUE_REDIS_URL`` (or ``REDIS_URL``) and ``AGENT_QUEUE_PREFIX``."""
        url = os.environ.get(_ENV_REDIS_URL) or os.environ.get("REDIS_URL") or _DEFAULT_REDIS_URL
        prefix = os.environ.get(_ENV_PREFIX) or _DEFAULT_PREFIX
        return cls.with_prefix(prefix, redis_url=url)

    @property
    def streams(self) -> tuple[str, str, str]:
        """All three stream names (tasks, results, dlq)."""
        return (self.tasks_stream, self.results_stream, self.dlq_stream)

    def heartbeat_key(self, task_id: str) -> str:
        return f"{self.heartbeat_prefix}:{task_id}"
