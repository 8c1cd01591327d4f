"""Attribute keys and metric names used across agent-queue."""

from __future__ import annotations

# Attribute keys
QUEUE_TASK_ID = "agentqueue.task_id"
QUEUE_TASK_TYPE = "agentqueue.task_type"
QUEUE_WORKER = "agentqueue.worker"
QUEUE_STREAM = "agentqueue.stream"
QUEUE_RETRY_COUNT = "agentqueue.retry_count"

# Metric names
METRIC_TASKS_DISPATCHED = "queue_tasks_dispatched"
METRIC_TASKS_COMPLETED = "queue_tasks_completed"
METRIC_TASKS_RETRIED = "queue_tasks_retried"
METRIC_TASKS_DEAD_LETTERED = "queue_tasks_dead_lettered"
METRIC_TASKS_RECLAIMED = "queue_tasks_reclaimed"
METRIC_TASK_DURATION = "queue_task_duration"
METRIC_QUEUE_DEPTH = "queue_depth"
