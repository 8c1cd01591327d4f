"""Worker process: claims tasks, runs a handler, reclaims stale work.

Runs a consumer loop alongside the periodic reclaimer and the autoscale
monitor.  The handler here only echoes the prompt; swap in a real agent
invocation for production use.

Prerequisites:
    # Terminal 1 - start Redis
    docker run -p 6379:6379 redis:7

Usage:
    export AGENT_QUEUE_REDIS_URL=redis://localhost:6379
    export AGENT_QUEUE_LOG_LEVEL=INFO
    uv run python examples/worker.py
"""

import asyncio
import signal

from agentqueue import (
    AutoScaler,
    QueueClient,
    QueueConfig,
    ReliabilityManager,
    ResultDocument,
    Task,
    TaskConsumer,
)


async def handle(task: Task) -> ResultDocument:
    if "fail" in task.payload.prompt:
        raise RuntimeError(f"refusing prompt for task {task.id}")
    await asyncio.sleep(0.5)
    return ResultDocument(output=f"[{task.type}] done: {task.payload.prompt}")


async def scale_up(pending: int) -> None:
    # Hook for a cluster API call; printing keeps the example self-contained.
    print(f"[autoscale] {pending} tasks waiting, more workers needed")


async def main() -> None:
    async with QueueClient(config=QueueConfig.from_env()) as client:
        consumer = TaskConsumer(client)
        reliability = ReliabilityManager(client)
        scaler = AutoScaler(client)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(consumer.stop()))

        reliability.start_reclaimer(interval_ms=30_000, idle_threshold_ms=60_000)
        scaler.start_monitor(interval_ms=15_000, pending_threshold=2, on_scale_up=scale_up)
        print(f"Worker {consumer.worker_name} running (Ctrl+C to stop)")
        try:
            await consumer.start(handle)
        finally:
            await scaler.stop_monitor()
            await reliability.stop_reclaimer()

        print(f"processed={consumer.tasks_processed} failed={consumer.tasks_failed}")


if __name__ == "__main__":
    asyncio.run(main())
