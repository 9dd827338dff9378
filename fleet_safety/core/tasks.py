"""
Interval-driven background tasks.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Runs a coroutine function every `interval` seconds in a background task.

    A tick that is still running when the next one is due is not re-entered;
    the new tick is skipped and counted instead.
    """

    def __init__(self, name: str, interval: float, func: Callable[[], Awaitable[None]]):
        self.name = name
        self.interval = interval
        self._func = func
        self._task: Optional[asyncio.Task] = None
        self._tick_lock = asyncio.Lock()
        self.runs = 0
        self.skipped = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info(f"Started {self.name} (every {self.interval}s)")

    async def stop(self):
        if not self._task:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"Stopped {self.name}")

    async def run_once(self) -> bool:
        """Run a single tick. Returns False if a tick was already in flight."""
        if self._tick_lock.locked():
            self.skipped += 1
            logger.debug(f"{self.name}: previous tick still running, skipping")
            return False

        async with self._tick_lock:
            try:
                await self._func()
                self.runs += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failures += 1
                logger.error(f"{self.name} tick failed: {e}", exc_info=True)
        return True

    async def _loop(self):
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval)

    def get_stats(self) -> dict:
        return {
            "running": self.running,
            "interval": self.interval,
            "runs": self.runs,
            "skipped": self.skipped,
            "failures": self.failures,
        }
