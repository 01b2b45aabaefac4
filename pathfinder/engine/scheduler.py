"""
pathfinder.engine.scheduler — Cancellable Periodic Tasks
==========================================================

"Invoke *callback* every N seconds until cancelled."  Views own one task
per clock and must call :meth:`PeriodicTask.stop` on teardown so no timer
outlives its view.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

TickCallback = Callable[[], Awaitable[None] | None]


class PeriodicTask:
    """Runs *callback* every *interval* seconds on an asyncio loop.

    The first call happens immediately.  Exceptions are logged and the
    loop keeps going.  Sync and async callbacks are both accepted.
    """

    def __init__(self, callback: TickCallback, interval: float, name: str) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.callback = callback
        self.interval = interval
        self.name = name
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> None:
        """Invoke the callback a single time, logging failures."""
        try:
            result = self.callback()
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Periodic task %s failed", self.name)

    def start(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Start ticking.  A no-op if already running."""
        if self.running:
            return

        async def _tick_loop() -> None:
            while True:
                await self.run_once()
                await asyncio.sleep(self.interval)

        loop = loop or asyncio.get_running_loop()
        self._task = loop.create_task(_tick_loop(), name=self.name)
        logger.debug("Periodic task %s started (every %.1fs)", self.name, self.interval)

    def stop(self) -> None:
        """Cancel the loop.  Safe to call more than once."""
        if self._task is not None:
            self._task.cancel()
            self._task = None
            logger.debug("Periodic task %s stopped", self.name)
