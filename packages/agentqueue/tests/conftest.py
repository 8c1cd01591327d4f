"""Shared fixtures: a QueueClient wired to an in-process fakeredis server."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from typing import Any
from unittest.mock import patch

import fakeredis
import fakeredis.aioredis
import pytest

from agentqueue.client import QueueClient
from agentqueue.config import QueueConfig
from agentqueue.observability.metrics import reset_metrics


@pytest.fixture
def config() -> QueueConfig:
    return QueueConfig.with_prefix("test-queue")


@pytest.fixture
async def client(config: QueueConfig) -> AsyncIterator[QueueClient]:
    c = QueueClient(config=config)
    c._redis = fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    await c.ensure_streams()
    yield c
    await c.disconnect()


@pytest.fixture(autouse=True)
def _in_memory_metrics() -> Any:
    """Record metrics in the in-memory collector, fresh for each test."""
    reset_metrics()
    with patch("agentqueue.metrics.HAS_OTEL", False):
        yield


@pytest.fixture
def make_input() -> Callable[..., dict[str, Any]]:
    """Factory for valid dispatch mappings with optional wire-key overrides."""

    def _make(prompt: str = "fix the bug", **overrides: Any) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": "code",
            "payload": {"prompt": prompt},
            "priority": "normal",
            "dispatchedBy": "tester",
            "maxRetries": 3,
            "timeoutMs": 60_000,
        }
        data.update(overrides)
        return data

    return _make
