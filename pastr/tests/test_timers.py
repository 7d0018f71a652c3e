"""Tests for the recurring timer."""

import asyncio

import pytest

from pastr.daemon.timers import RecurringTimer
from pastr.tests.conftest import ManualClock


@pytest.mark.asyncio
async def test_arm_fires_immediately_then_on_interval():
    clock = ManualClock()
    fired = []

    async def tick():
        fired.append(len(fired))

    timer = RecurringTimer("test", tick, sleep=clock.sleep)
    timer.arm(30, run_immediately=True)
    await timer.drain()
    await clock.settle()

    assert fired == [0]
    assert clock.requested == [30]
    assert timer.interval == 30

    await clock.advance()
    await timer.drain()
    assert fired == [0, 1]
    timer.disarm()


@pytest.mark.asyncio
async def test_rearm_keeps_a_single_timer():
    clock = ManualClock()
    fired = []

    async def tick():
        fired.append(1)

    timer = RecurringTimer("test", tick, sleep=clock.sleep)
    timer.arm(10)
    timer.arm(10)
    timer.arm(20)
    await clock.settle()

    # Only the last armed task ever started sleeping
    assert clock.requested == [20]

    await clock.advance()
    await timer.drain()
    assert len(fired) == 1
    timer.disarm()


@pytest.mark.asyncio
async def test_disarm_stops_future_ticks():
    clock = ManualClock()
    fired = []

    async def tick():
        fired.append(1)

    timer = RecurringTimer("test", tick, sleep=clock.sleep)
    timer.arm(5)
    await clock.settle()
    timer.disarm()

    await clock.advance()
    await timer.drain()

    assert fired == []
    assert timer.active is False
    assert timer.interval is None


@pytest.mark.asyncio
async def test_failing_callback_does_not_stop_timer():
    clock = ManualClock()
    calls = []

    async def tick():
        calls.append(1)
        raise RuntimeError("boom")

    timer = RecurringTimer("test", tick, sleep=clock.sleep)
    timer.arm(5, run_immediately=True)
    await timer.drain()
    await clock.advance()
    await timer.drain()

    assert len(calls) == 2
    assert timer.active
    timer.disarm()


@pytest.mark.asyncio
async def test_ticks_are_not_gated_on_slow_callbacks():
    clock = ManualClock()
    release = asyncio.Event()
    started = []

    async def slow_tick():
        started.append(1)
        await release.wait()

    timer = RecurringTimer("test", slow_tick, sleep=clock.sleep)
    timer.arm(5, run_immediately=True)
    await clock.advance()
    await clock.advance()

    assert len(started) == 3
    release.set()
    await timer.drain()
    timer.disarm()


def test_arm_rejects_non_positive_interval():
    async def tick():
        pass

    timer = RecurringTimer("test", tick)
    with pytest.raises(ValueError):
        timer.arm(0)
