"""Dispatch a few tasks and wait for their results.

Start ``examples/worker.py`` first; the prompt containing "fail" is
retried up to its ``maxRetries`` and then lands in the dead-letter queue
(inspect it with ``agent-queue dlq list``).

Usage:
    export AGENT_QUEUE_REDIS_URL=redis://localhost:6379
    uv run python examples/dispatch.py
"""

import asyncio

from agentqueue import QueueClient, QueueConfig, TaskProducer

TASKS = [
    {"type": "code", "payload": {"prompt": "add a --json flag to the stats command"}},
    {"type": "review", "payload": {"prompt": "review the reclaim loop"}, "priority": "high"},
    {"type": "exec", "payload": {"prompt": "this one should fail"}, "maxRetries": 1},
]


async def main() -> None:
    async with QueueClient(config=QueueConfig.from_env()) as client:
        producer = TaskProducer(client)

        task_ids = [await producer.dispatch(task) for task in TASKS]
        for task_id in task_ids:
            print(f"dispatched {task_id}")

        for task_id in task_ids:
            result = await producer.await_result(task_id, timeout_ms=10_000)
            if result is None:
                print(f"{task_id}: no result yet")
                continue
            outcome = result.result.output or result.result.error
            print(f"{task_id}: {result.status} after {result.duration_ms}ms by {result.worker}: {outcome}")

        stats = await producer.stats()
        print(
            f"pending={stats.pending} processing={stats.processing} "
            f"completed={stats.completed} failed={stats.failed}"
        )


if __name__ == "__main__":
    asyncio.run(main())
