# ABOUTME: Sliding-window rate limiter shared by all cluster API calls
# ABOUTME: Callers wait for a free slot instead of failing when the window is full

"""Rate limiting for the shared cluster API client."""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict, deque

import structlog

logger = structlog.get_logger(__name__)


class RateLimiter:
    """Sliding-window rate limiter keyed by caller-chosen strings."""

    def __init__(self, max_calls: int = 50, window_seconds: float = 1.0) -> None:
        """Initialize rate limiter.

        Args:
            max_calls: Maximum calls allowed in window
            window_seconds: Window size in seconds
        """
        self._max_calls = max_calls
        self._window = window_seconds
        self._calls: dict[str, deque[float]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    def _expire(self, key: str, now: float) -> deque[float]:
        calls = self._calls[key]
        while calls and now - calls[0] >= self._window:
            calls.popleft()
        return calls

    def check(self, key: str) -> bool:
        """Take a slot if one is free.

        Args:
            key: Rate limit key (e.g., "cluster")

        Returns:
            True if a slot was taken, False if rate limited
        """
        now = time.monotonic()
        calls = self._expire(key, now)
        if len(calls) >= self._max_calls:
            return False
        calls.append(now)
        return True

    async def acquire(self, key: str = "cluster") -> None:
        """Wait until a slot is free, then take it."""
        async with self._lock:
            while not self.check(key):
                delay = self._window - (time.monotonic() - self._calls[key][0])
                logger.debug("Rate limit reached, waiting", key=key, delay=round(delay, 3))
                await asyncio.sleep(max(delay, 0.001))

    def reset(self, key: str | None = None) -> None:
        """Reset rate limit counters.

        Args:
            key: Specific key to reset, or None for all
        """
        if key:
            self._calls.pop(key, None)
        else:
            self._calls.clear()
