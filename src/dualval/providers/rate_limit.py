"""
Sliding Window Rate Limiter

Shared, process-wide limit on external provider calls. The lock is held only
while the window is pruned and a slot is claimed; waiting happens outside it.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from threading import Lock
from typing import Callable

from dualval.config import get_settings


class SlidingWindowRateLimiter:
    """
    At most `max_calls` acquisitions in any `window_seconds` interval.

    Usage:
        limiter = SlidingWindowRateLimiter(60, 60.0)
        await limiter.acquire()
    """

    def __init__(
        self,
        max_calls: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_calls < 1:
            raise ValueError("max_calls must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self._max_calls = max_calls
        self._window = window_seconds
        self._clock = clock
        self._calls: deque[float] = deque()
        self._lock = Lock()

    def _prune(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= self._window:
            self._calls.popleft()

    def try_acquire(self) -> float:
        """
        Claim a slot if one is free.

        Returns:
            0.0 when a slot was claimed, otherwise the seconds until the
            oldest call leaves the window.
        """
        with self._lock:
            now = self._clock()
            self._prune(now)
            if len(self._calls) < self._max_calls:
                self._calls.append(now)
                return 0.0
            return max(self._calls[0] + self._window - now, 0.001)

    async def acquire(self) -> None:
        """Wait until a slot is free, then claim it."""
        while True:
            wait = self.try_acquire()
            if wait == 0.0:
                return
            await asyncio.sleep(wait)

    @property
    def in_window(self) -> int:
        """Calls currently counted against the window."""
        with self._lock:
            self._prune(self._clock())
            return len(self._calls)


_limiter: SlidingWindowRateLimiter | None = None


def get_rate_limiter() -> SlidingWindowRateLimiter:
    """Process-wide limiter configured from settings."""
    global _limiter
    if _limiter is None:
        settings = get_settings().providers
        _limiter = SlidingWindowRateLimiter(
            settings.rate_limit_calls, settings.rate_limit_window_seconds
        )
    return _limiter


def reset_rate_limiter() -> None:
    """Reset the shared limiter (for testing)."""
    global _limiter
    _limiter = None
