"""Asyncio scheduling of the decision trigger and the reconciliation loop.

Both jobs are blocking (HTTP + SQLite), so each run is pushed to a worker
thread with ``asyncio.to_thread``. A task waits its interval after a run
completes (fixed delay), so runs of the same task never overlap, while the two
tasks run independently of each other.
"""
import asyncio
import time
from typing import Callable, List, Optional

from .logging_setup import logger


def seconds_until_aligned(interval: float, now: Optional[float] = None) -> float:
    """Seconds until the next multiple of ``interval`` since the epoch (e.g. top of the hour)."""
    now = time.time() if now is None else now
    remaining = interval - (now % interval)
    return remaining if remaining > 0 else interval


class PeriodicTask:
    """Run a blocking callable periodically until stopped.

    Args:
        name: Name used in log lines
        func: Blocking callable; exceptions are logged and the schedule continues
        interval_seconds: Delay between the end of one run and the start of the next
        initial_delay_seconds: Delay before the first run
        align_to_interval: Start runs on interval boundaries instead of fixed delay
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], object],
        interval_seconds: float,
        initial_delay_seconds: float = 0.0,
        align_to_interval: bool = False,
    ):
        self.name = name
        self.func = func
        self.interval = interval_seconds
        self.initial_delay = initial_delay_seconds
        self.align = align_to_interval
        self.runs = 0
        self.failures = 0

    def _next_delay(self) -> float:
        if self.align:
            return seconds_until_aligned(self.interval)
        return self.interval

    async def _sleep(self, delay: float, stop_event: asyncio.Event) -> bool:
        """Sleep up to ``delay`` seconds; returns True if stop was requested."""
        if delay <= 0:
            return stop_event.is_set()
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    async def run(self, stop_event: asyncio.Event) -> None:
        first_delay = seconds_until_aligned(self.interval) if self.align else self.initial_delay
        if await self._sleep(first_delay, stop_event):
            return

        while not stop_event.is_set():
            try:
                await asyncio.to_thread(self.func)
                self.runs += 1
            except Exception as e:
                self.failures += 1
                logger.exception(f"Scheduled task failed | task={self.name} error={e}")
            if await self._sleep(self._next_delay(), stop_event):
                break
        logger.info(f"Scheduled task stopped | task={self.name} runs={self.runs} failures={self.failures}")


class EventLoopRunner:
    """Run a set of periodic tasks concurrently until ``stop`` is called."""

    def __init__(self, tasks: List[PeriodicTask]):
        self.tasks = tasks
        self._stop_event: Optional[asyncio.Event] = None

    async def start(self) -> None:
        self._stop_event = asyncio.Event()
        logger.info(f"Scheduler started | tasks={[t.name for t in self.tasks]}")
        await asyncio.gather(*(t.run(self._stop_event) for t in self.tasks))

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
