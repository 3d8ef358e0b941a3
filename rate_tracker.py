"""
Rolling-window counter of outbound AI requests.
"""

import asyncio
import bisect
import logging
import time
from typing import Callable, Optional, Tuple

logger = logging.getLogger(__name__)


class RateTracker:
    """Counts requests sent during the trailing window.

    Timestamps are only appended by ``record_request`` and only evicted, oldest
    first, by ``sweep``. Both replace the whole tuple so readers never observe a
    partial update.
    """

    def __init__(self, window_seconds: float = 60.0, sweep_interval: float = 1.0,
                 clock: Callable[[], float] = time.monotonic):
        self.window_seconds = window_seconds
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._timestamps: Tuple[float, ...] = ()
        self._task: Optional[asyncio.Task] = None

    @property
    def timestamps(self) -> Tuple[float, ...]:
        return self._timestamps

    def record_request(self) -> None:
        self._timestamps = self._timestamps + (self._clock(),)

    def current_count(self, window_seconds: Optional[float] = None) -> int:
        """Number of requests in the already-swept window"""
        if window_seconds is not None and window_seconds != self.window_seconds:
            raise ValueError(
                f"Tracker counts a {self.window_seconds}s window, got {window_seconds}s"
            )
        return len(self._timestamps)

    def usage_ratio(self, budget_per_minute: int) -> float:
        return self.current_count() / budget_per_minute if budget_per_minute else 0.0

    def sweep(self, now: Optional[float] = None) -> int:
        """Evict timestamps older than the window; returns how many were dropped"""
        now = self._clock() if now is None else now
        cutoff = now - self.window_seconds
        stale = bisect.bisect_left(self._timestamps, cutoff)
        if stale:
            self._timestamps = self._timestamps[stale:]
        return stale

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    def start(self) -> None:
        """Start the background sweep on the running loop"""
        if self._task is None or self._task.done():
            self._task = asyncio.get_event_loop().create_task(self._sweep_forever())
            logger.debug("Rate tracker sweep started")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.debug("Rate tracker sweep stopped")

    def reset(self) -> None:
        self._timestamps = ()
