"""
Unit tests for the keyed, cancellable task scheduler.
"""

import asyncio

import pytest

from fleet.services.runtime.scheduler import GRACE, RESUME, TaskScheduler


@pytest.mark.asyncio
async def test_runs_after_delay():
    scheduler = TaskScheduler()
    fired = []

    async def action():
        fired.append("x")

    task = scheduler.schedule(RESUME, "bot-1", action, delay=0.01)
    await task
    assert fired == ["x"]
    assert scheduler.pending() == []


@pytest.mark.asyncio
async def test_cancel_prevents_action():
    scheduler = TaskScheduler()
    fired = []

    async def action():
        fired.append("x")

    scheduler.schedule(GRACE, "bot-1", action, delay=0.05)
    assert scheduler.cancel(GRACE, "bot-1") is True
    await asyncio.sleep(0.1)
    assert fired == []


@pytest.mark.asyncio
async def test_same_key_replaces_previous():
    scheduler = TaskScheduler()
    fired = []

    async def first():
        fired.append("first")

    async def second():
        fired.append("second")

    scheduler.schedule(GRACE, "bot-1", first, delay=0.05)
    task = scheduler.schedule(GRACE, "bot-1", second, delay=0.01)
    await task
    await asyncio.sleep(0.08)
    assert fired == ["second"]


@pytest.mark.asyncio
async def test_cancel_for_only_touches_that_bot():
    scheduler = TaskScheduler()

    async def idle():
        await asyncio.sleep(1)

    scheduler.schedule(RESUME, "bot-1", idle)
    scheduler.schedule(GRACE, "bot-1", idle, delay=1)
    scheduler.schedule(GRACE, "bot-2", idle, delay=1)
    await asyncio.sleep(0)

    assert scheduler.cancel_for("bot-1") == 2
    assert scheduler.pending() == [(GRACE, "bot-2")]
    await scheduler.shutdown()
    assert scheduler.pending() == []


@pytest.mark.asyncio
async def test_task_cancelling_its_own_bot_completes():
    scheduler = TaskScheduler()
    finished = []

    async def self_cleanup():
        scheduler.cancel_for("bot-1")
        await asyncio.sleep(0)
        finished.append(True)

    task = scheduler.schedule(GRACE, "bot-1", self_cleanup)
    await task
    assert finished == [True]


@pytest.mark.asyncio
async def test_action_error_is_contained():
    scheduler = TaskScheduler()

    async def boom():
        raise RuntimeError("boom")

    task = scheduler.schedule(RESUME, "bot-1", boom)
    await task
    assert task.exception() is None
