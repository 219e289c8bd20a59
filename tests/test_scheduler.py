import asyncio
import time

import pytest

from autotrade.scheduler import EventLoopRunner, PeriodicTask, seconds_until_aligned


def test_seconds_until_aligned():
    assert seconds_until_aligned(3600, now=7200.0) == 3600
    assert seconds_until_aligned(3600, now=7300.0) == 3500
    assert seconds_until_aligned(60, now=59.5) == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_periodic_task_runs_until_stopped():
    calls = []
    task = PeriodicTask("counter", lambda: calls.append(1), interval_seconds=0.01)
    stop = asyncio.Event()

    runner = asyncio.create_task(task.run(stop))
    await asyncio.sleep(0.1)
    stop.set()
    await asyncio.wait_for(runner, timeout=1)

    assert task.runs >= 2
    assert len(calls) == task.runs


@pytest.mark.asyncio
async def test_failures_do_not_stop_schedule():
    def boom():
        raise RuntimeError("exchange down")

    task = PeriodicTask("failing", boom, interval_seconds=0.01)
    stop = asyncio.Event()

    runner = asyncio.create_task(task.run(stop))
    await asyncio.sleep(0.1)
    stop.set()
    await asyncio.wait_for(runner, timeout=1)

    assert task.failures >= 2
    assert task.runs == 0


@pytest.mark.asyncio
async def test_initial_delay_and_early_stop():
    calls = []
    task = PeriodicTask("delayed", lambda: calls.append(1), interval_seconds=0.01, initial_delay_seconds=5)
    stop = asyncio.Event()

    runner = asyncio.create_task(task.run(stop))
    await asyncio.sleep(0.05)
    stop.set()
    await asyncio.wait_for(runner, timeout=1)

    assert calls == []


@pytest.mark.asyncio
async def test_runs_of_one_task_never_overlap():
    active = []
    overlaps = []

    def slow():
        if active:
            overlaps.append(1)
        active.append(1)
        time.sleep(0.02)
        active.pop()

    task = PeriodicTask("slow", slow, interval_seconds=0.001)
    stop = asyncio.Event()
    runner = asyncio.create_task(task.run(stop))
    await asyncio.sleep(0.15)
    stop.set()
    await asyncio.wait_for(runner, timeout=1)

    assert task.runs >= 2
    assert overlaps == []


@pytest.mark.asyncio
async def test_event_loop_runner_runs_tasks_independently():
    first, second = [], []
    runner = EventLoopRunner([
        PeriodicTask("first", lambda: first.append(1), interval_seconds=0.01),
        PeriodicTask("second", lambda: second.append(1), interval_seconds=0.01, initial_delay_seconds=0.02),
    ])

    main = asyncio.create_task(runner.start())
    await asyncio.sleep(0.1)
    await runner.stop()
    await asyncio.wait_for(main, timeout=1)

    assert first and second
