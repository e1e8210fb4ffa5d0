"""
Owned periodic timer.

Fires a callback every `period` seconds. defer() pushes the next firing out
by one period; the timer is owned by whoever starts it, nothing is global.

Invariants:
    - At most one loop task per timer
    - A callback failure is logged and never stops the timer
    - stop() waits for a callback that is already running

How to change safely:
    - Keep callbacks as separate tasks so a slow callback never delays the clock
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class PeriodicTimer:
    """Calls an async callback on a fixed period.

    Example:
        >>> timer = PeriodicTimer(60.0, name="periodic-export")
        >>> timer.start(scheduler.tick)
        >>> timer.defer()          # skip the upcoming firing
        >>> await timer.stop()
    """

    def __init__(self, period: float, name: str = "timer") -> None:
        if period <= 0:
            raise ValueError(f"Timer period must be positive, got {period}")
        self.period = period
        self.name = name
        self._task: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[None]] = set()
        self._deferred = False
        self._last_deferral = time.monotonic()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, callback: Callable[[], Awaitable[object]]) -> None:
        """Start firing callback every period."""
        if self.is_running:
            raise RuntimeError(f"Timer {self.name} already started")
        self._last_deferral = time.monotonic()
        self._task = asyncio.create_task(self._loop(callback), name=f"{self.name}-loop")
        logger.debug("Timer started", extra={"timer": self.name, "period": self.period})

    def defer(self) -> None:
        """Skip the next firing."""
        self._deferred = True
        self._last_deferral = time.monotonic()

    def time_since_last_deferral(self) -> float:
        """Seconds since the last defer() (or start())."""
        return time.monotonic() - self._last_deferral

    async def stop(self) -> None:
        """Stop the timer, waiting for an in-flight callback to finish."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        logger.debug("Timer stopped", extra={"timer": self.name})

    async def _loop(self, callback: Callable[[], Awaitable[object]]) -> None:
        while True:
            await asyncio.sleep(self.period)
            if self._deferred:
                self._deferred = False
                continue
            task = asyncio.create_task(self._fire(callback), name=f"{self.name}-fire")
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _fire(self, callback: Callable[[], Awaitable[object]]) -> None:
        try:
            await callback()
        except Exception as e:
            logger.error(f"Timer {self.name} callback failed: {e}", exc_info=True)
