"""Minimum-interval throttle for calls to rate-limited remote services."""

import asyncio
import time
from collections.abc import Awaitable, Callable


class MinIntervalThrottle:
    """
    Ensure at least `min_interval` seconds pass between two `wait()` returns.

    The first call returns immediately; each later call sleeps for whatever
    remains of the interval since the previous one. An interval of 0
    disables throttling.
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if min_interval < 0:
            raise ValueError(f"min_interval must be >= 0, got {min_interval}")
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last: float | None = None

    async def wait(self) -> None:
        if self._last is not None and self.min_interval > 0:
            remaining = self.min_interval - (self._clock() - self._last)
            if remaining > 0:
                await self._sleep(remaining)
        self._last = self._clock()

    def reset(self) -> None:
        """Forget the previous call, so the next `wait()` returns immediately."""
        self._last = None
