"""Tests for AutoScaler."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock

import pytest

from agentqueue.autoscaler import AutoScaler, ScaleAction, ScaleDecision
from agentqueue.client import QueueClient
from agentqueue.producer import TaskProducer

MakeInput = Callable[..., dict[str, Any]]


async def _fill(client: QueueClient, make_input: MakeInput, n: int) -> None:
    producer = TaskProducer(client)
    for _ in range(n):
        await producer.dispatch(make_input())


class TestCheckAndScale:
    @pytest.mark.asyncio
    async def test_below_threshold(self, client: QueueClient, make_input: MakeInput) -> None:
        await _fill(client, make_input, 2)
        on_scale_up = AsyncMock()

        decision = await AutoScaler(client).check_and_scale(2, on_scale_up)

        assert decision == ScaleDecision(ScaleAction.OK, pending=2, processing=0)
        on_scale_up.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_above_threshold(self, client: QueueClient, make_input: MakeInput) -> None:
        await _fill(client, make_input, 3)
        on_scale_up = AsyncMock()

        decision = await AutoScaler(client).check_and_scale(2, on_scale_up)

        assert decision.action is ScaleAction.SCALE_UP
        assert decision.pending == 3
        on_scale_up.assert_awaited_once_with(3)

    @pytest.mark.asyncio
    async def test_no_callback_is_ok(self, client: QueueClient, make_input: MakeInput) -> None:
        await _fill(client, make_input, 10)

        decision = await AutoScaler(client).check_and_scale(pending_threshold=2)

        assert decision.action is ScaleAction.OK
        assert decision.pending == 10

    @pytest.mark.asyncio
    async def test_reports_processing(self, client: QueueClient, make_input: MakeInput) -> None:
        cfg = client.config
        await _fill(client, make_input, 1)
        await client.claim(cfg.tasks_stream, cfg.group, "w-1")

        decision = await AutoScaler(client).check_and_scale()

        assert decision.processing == 1


class TestMonitor:
    @pytest.mark.asyncio
    async def test_monitor_calls_back(self, client: QueueClient, make_input: MakeInput) -> None:
        await _fill(client, make_input, 5)
        on_scale_up = AsyncMock()
        scaler = AutoScaler(client)

        scaler.start_monitor(interval_ms=10, pending_threshold=2, on_scale_up=on_scale_up)
        for _ in range(200):
            if on_scale_up.await_count:
                break
            await asyncio.sleep(0.01)
        await scaler.stop_monitor()

        on_scale_up.assert_awaited_with(5)
        assert scaler.monitor_running is False

    @pytest.mark.asyncio
    async def test_callback_errors_do_not_stop_monitor(
        self, client: QueueClient, make_input: MakeInput
    ) -> None:
        await _fill(client, make_input, 5)
        on_scale_up = AsyncMock(side_effect=RuntimeError("cluster API down"))
        scaler = AutoScaler(client)

        scaler.start_monitor(interval_ms=10, on_scale_up=on_scale_up)
        for _ in range(200):
            if on_scale_up.await_count >= 2:
                break
            await asyncio.sleep(0.01)

        assert scaler.monitor_running is True
        await scaler.stop_monitor()
        assert on_scale_up.await_count >= 2

    @pytest.mark.asyncio
    async def test_start_idempotent_and_stop_noop(self, client: QueueClient) -> None:
        scaler = AutoScaler(client)
        await scaler.stop_monitor()

        scaler.start_monitor(interval_ms=50)
        first = scaler._monitor
        scaler.start_monitor(interval_ms=50)
        assert scaler._monitor is first

        await scaler.stop_monitor()
        await scaler.stop_monitor()
        assert scaler.monitor_running is False
