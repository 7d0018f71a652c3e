"""Recurring timer owned by a single component."""

import asyncio
from typing import Any, Awaitable, Callable, Optional, Set

from loguru import logger


class RecurringTimer:
    """
    Fires ``callback`` every ``interval`` seconds on the running loop.

    Each firing runs the callback as its own task, so ticks follow the
    wall clock and are not gated on the previous callback finishing.
    Arming an armed timer cancels the old one first; there is never more
    than one timer task per instance.
    """

    def __init__(
        self,
        name: str,
        callback: Callable[[], Awaitable[Any]],
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.name = name
        self._callback = callback
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._interval: Optional[float] = None
        self._ticks: Set[asyncio.Task] = set()

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def interval(self) -> Optional[float]:
        return self._interval if self.active else None

    def arm(self, interval: float, run_immediately: bool = False) -> None:
        """Cancel any existing timer and start a new one."""
        if interval <= 0:
            raise ValueError(f"Timer interval must be positive, got {interval}")
        self.disarm()
        self._interval = interval
        if run_immediately:
            self.fire()
        self._task = asyncio.create_task(self._run(interval), name=f"timer:{self.name}")
        logger.debug(f"Timer {self.name} armed every {interval:.1f}s")

    def disarm(self) -> None:
        """Cancel the timer. In-flight callbacks are left to finish."""
        if self._task is not None:
            self._task.cancel()
            self._task = None
            logger.debug(f"Timer {self.name} disarmed")
        self._interval = None

    def fire(self) -> asyncio.Task:
        """Run the callback once, now, as a separate task."""
        task = asyncio.create_task(self._callback(), name=f"tick:{self.name}")
        self._ticks.add(task)
        task.add_done_callback(self._tick_done)
        return task

    async def drain(self) -> None:
        """Wait for every callback that has already been started."""
        while self._ticks:
            await asyncio.gather(*list(self._ticks), return_exceptions=True)

    async def _run(self, interval: float) -> None:
        while True:
            await self._sleep(interval)
            self.fire()

    def _tick_done(self, task: asyncio.Task) -> None:
        self._ticks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Timer {self.name} callback failed: {exc!r}")
