"""Sliding-window rate limiter, one instance per provider connection."""
import asyncio
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque

from core.config import RateLimitConfig
from core.logging import logger
from core.monitoring import RATE_LIMIT_WAITS

__all__ = ["SlidingWindowRateLimiter"]


class SlidingWindowRateLimiter:
    """Admit at most ``limit`` calls in any ``window`` seconds.

    Waiters queue on an asyncio.Lock, which wakes them in FIFO order, so
    admission follows call order.
    """

    def __init__(
        self,
        limit: int = 60,
        window: float = 60.0,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be positive")
        if window <= 0:
            raise ValueError("window must be positive")
        self.limit = limit
        self.window = window
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._timestamps: Deque[float] = deque()
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: RateLimitConfig, name: str = "default", **kwargs) -> "SlidingWindowRateLimiter":
        return cls(limit=config.limit, window=config.window, name=name, **kwargs)

    def _prune(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.window:
            self._timestamps.popleft()

    def current_usage(self) -> int:
        self._prune(self._clock())
        return len(self._timestamps)

    def time_until_slot(self) -> float:
        """Seconds until a call would be admitted, 0.0 if one would be now."""
        now = self._clock()
        self._prune(now)
        if len(self._timestamps) < self.limit:
            return 0.0
        return max(0.0, self._timestamps[0] + self.window - now)

    async def wait_for_slot(self) -> None:
        async with self._lock:
            waited = False
            while True:
                wait = self.time_until_slot()
                if not wait:
                    self._timestamps.append(self._clock())
                    return
                if not waited:
                    waited = True
                    RATE_LIMIT_WAITS.labels(limiter=self.name).inc()
                logger.info(f"Rate-limit hit for {self.name} – sleeping {wait:.2f}s")
                await self._sleep(wait)
