"""Queue-depth monitor that signals when more workers are needed.

The autoscaler does not start workers itself; it calls a caller-supplied
``on_scale_up`` coroutine (which might launch a container or a job) whenever
the task log backs up past a threshold.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum

from agentqueue.client import QueueClient
from agentqueue.producer import TaskProducer
from agentqueue.types import TransientInfraError

logger = logging.getLogger(__name__)

ScaleUpCallback = Callable[[int], Awaitable[None]]


class ScaleAction(StrEnum):
    SCALE_UP = "scale_up"
    OK = "ok"


@dataclass(frozen=True)
class ScaleDecision:
    """Outcome of one :meth:`AutoScaler.check_and_scale` call."""

    action: ScaleAction
    pending: int
    processing: int


class AutoScaler:
    """Watches queue depth and triggers a scale-up callback.

    Args:
        client: Connected :class:`QueueClient`.
    """

    def __init__(self, client: QueueClient) -> None:
        self._producer = TaskProducer(client)
        self._monitor: asyncio.Task[None] | None = None

    @property
    def monitor_running(self) -> bool:
        return self._monitor is not None and not self._monitor.done()

    async def check_and_scale(
        self,
        pending_threshold: int = 2,
        on_scale_up: ScaleUpCallback | None = None,
    ) -> ScaleDecision:
        """Read the queue stats and call *on_scale_up* when pending work exceeds the threshold.

        Without a callback the decision is always ``ok``.
        """
        stats = await self._producer.stats()
        if stats.pending > pending_threshold and on_scale_up is not None:
            logger.info(
                "Queue depth %d exceeds %d, scaling up", stats.pending, pending_threshold
            )
            await on_scale_up(stats.pending)
            return ScaleDecision(ScaleAction.SCALE_UP, stats.pending, stats.processing)
        return ScaleDecision(ScaleAction.OK, stats.pending, stats.processing)

    def start_monitor(
        self,
        interval_ms: int = 15_000,
        pending_threshold: int = 2,
        on_scale_up: ScaleUpCallback | None = None,
    ) -> None:
        """Run :meth:`check_and_scale` every *interval_ms*. No-op if already running."""
        if self.monitor_running:
            return
        self._monitor = asyncio.create_task(
            self._monitor_loop(interval_ms / 1000, pending_threshold, on_scale_up)
        )
        logger.info("Autoscale monitor started (interval=%dms)", interval_ms)

    async def stop_monitor(self) -> None:
        """Stop the periodic check. No-op if it is not running."""
        task, self._monitor = self._monitor, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("Autoscale monitor stopped")

    async def _monitor_loop(
        self,
        interval: float,
        pending_threshold: int,
        on_scale_up: ScaleUpCallback | None,
    ) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.check_and_scale(pending_threshold, on_scale_up)
            except asyncio.CancelledError:
                raise
            except TransientInfraError as exc:
                logger.warning("Autoscale check skipped: %s", exc)
            except Exception:
                logger.error("Autoscale check failed", exc_info=True)
