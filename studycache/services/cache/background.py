"""Named periodic background tasks owned by the cache services."""

import asyncio
from typing import Awaitable, Callable, Optional

from studycache.core.logging import get_logger

logger = get_logger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


class PeriodicTask:
    """Runs a coroutine function on a fixed interval until stopped.

    An exception raised by one run is logged and the loop carries on.
    The sleep function is injectable so tests can drive virtual time.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        func: Callable[[], Awaitable[object]],
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.name = name
        self.interval = interval
        self._func = func
        self._sleep = sleep
        self._task: Optional[asyncio.Task[None]] = None
        self.runs = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the loop on the running event loop (no-op if already running)."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.debug(f"Started background task {self.name} (every {self.interval}s)")

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.debug(f"Stopped background task {self.name}")

    async def run_once(self) -> None:
        """Run one iteration, logging instead of raising."""
        self.runs += 1
        try:
            await self._func()
        except Exception as e:
            self.failures += 1
            logger.error(f"Background task {self.name} failed: {e}")

    async def _loop(self) -> None:
        while True:
            await self._sleep(self.interval)
            await self.run_once()
