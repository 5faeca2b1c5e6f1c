"""Periodic task scheduling with an injectable clock.

Every periodic job in promorelay (queue drain, channel scan, heartbeat, live
inbox consumer) runs through a Ticker. A tick that is still running when the
next one is due causes that next one to be skipped, never queued.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

LOGGER = logging.getLogger(__name__)


class Clock:
    """Wall time and sleeping, swappable in tests."""

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class Ticker:
    """Run an async callback every `interval` seconds, non-reentrantly."""

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Awaitable[None]],
        clock: Optional[Clock] = None,
    ) -> None:
        self.name = name
        self.interval = interval
        self._callback = callback
        self._clock = clock or Clock()
        self._loop_task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._in_tick = False
        self.skipped = 0

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def busy(self) -> bool:
        return self._in_tick

    def start(self) -> None:
        """Start the ticker loop. Starting a running ticker is a no-op."""

        if self.running:
            return
        self._loop_task = asyncio.ensure_future(self._run())
        LOGGER.debug("Ticker %s started (every %ss)", self.name, self.interval)

    def stop(self) -> None:
        """Cancel future ticks. A tick already in flight is left to finish."""

        if self._loop_task is not None:
            self._loop_task.cancel()
            self._loop_task = None
            LOGGER.debug("Ticker %s stopped", self.name)

    async def tick(self) -> bool:
        """Run the callback once unless a previous run is still active.

        Returns False when the tick was skipped.
        """

        if self._in_tick:
            self.skipped += 1
            LOGGER.debug("Ticker %s still busy, skipping tick", self.name)
            return False
        self._in_tick = True
        try:
            await self._callback()
        except Exception:
            LOGGER.exception("Ticker %s callback failed", self.name)
        finally:
            self._in_tick = False
        return True

    async def _run(self) -> None:
        while True:
            await self._clock.sleep(self.interval)
            if self._tick_task is not None and not self._tick_task.done():
                self.skipped += 1
                continue
            # Ticks run in their own task so stop() never interrupts one.
            self._tick_task = asyncio.ensure_future(self.tick())
