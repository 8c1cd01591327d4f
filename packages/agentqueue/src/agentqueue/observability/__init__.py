"""Logging and metrics plumbing for agent-queue."""

from __future__ import annotations

from agentqueue.observability.logging import (
    JsonFormatter,
    LogContext,
    TextFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)
from agentqueue.observability.metrics import (
    HAS_OTEL,
    MetricsCollector,
    get_collector,
    get_metrics_snapshot,
    reset_metrics,
)

__all__: list[str] = [
    "HAS_OTEL",
    "JsonFormatter",
    "LogContext",
    "MetricsCollector",
    "TextFormatter",
    "configure_logging",
    "get_collector",
    "get_logger",
    "get_metrics_snapshot",
    "reset_logging",
    "reset_metrics",
]
