from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_seconds: float


class FixedWindowRateLimiter:
    """
    At most `limit` acquisitions per fixed window of `window_seconds`.

    The counter resets when the window rolls over; it is not a sliding window,
    so a burst straddling a boundary can briefly exceed the nominal rate.
    `acquire()` blocks (no queueing or priority) until a slot is free. The lock
    serializes the bookkeeping, so one instance can be shared by concurrent
    callers; clients receive it by injection.
    """

    def __init__(
        self,
        *,
        limit: int,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._window_started: float | None = None
        self._count = 0

    def set_limit(self, limit: int) -> None:
        # takes effect for the current window; already-counted calls still count
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if limit != self.limit:
            log.info("rate limit changed from %d to %d per %.0fs", self.limit, limit, self.window_seconds)
            self.limit = limit

    def peek(self) -> RateLimitResult:
        now = self._clock()
        if self._window_started is None or now - self._window_started >= self.window_seconds:
            return RateLimitResult(allowed=True, remaining=self.limit, reset_seconds=0.0)
        remaining = max(0, self.limit - self._count)
        reset = self.window_seconds - (now - self._window_started)
        return RateLimitResult(allowed=remaining > 0, remaining=remaining, reset_seconds=reset)

    async def acquire(self) -> None:
        async with self._lock:
            now = self._clock()
            if self._window_started is None or now - self._window_started >= self.window_seconds:
                self._window_started = now
                self._count = 0

            if self._count >= self.limit:
                wait = self.window_seconds - (now - self._window_started)
                if wait > 0:
                    log.info("rate limit reached (%d/%.0fs), waiting %.1fs", self.limit, self.window_seconds, wait)
                    await self._sleep(wait)
                self._window_started = self._clock()
                self._count = 0

            self._count += 1
