"""
Shared outbound budgets for the GitHub API and the README summarizer.

Every GitHub request and every summarizer call acquires a token first, so
concurrent pipeline runs for different users draw on one budget instead of
each assuming it owns the whole quota. When GitHub reports the quota as
spent, the client calls pause_until() with the reset time and every run
waits, instead of each run discovering the 403 separately.

Usage:
    from utils.rate_limiter import get_rate_limiter

    limiter = get_rate_limiter("github")
    await limiter.acquire()
    response = await client.get(url)
    if response.headers.get("X-RateLimit-Remaining") == "0":
        limiter.pause_until(float(response.headers["X-RateLimit-Reset"]))

Budgets:
    - github: 5000/hour (authenticated REST quota)
    - summarizer: 60/minute
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, Optional

logger = logging.getLogger(__name__)

# Never sleep longer than GitHub's own reset window on a bad header
MAX_PAUSE_SECONDS = 3600.0


class AsyncRateLimiter:
    """
    Token bucket with an optional server-imposed pause.

    Tokens refill continuously at ``rate / period`` per second up to
    ``rate``. A caller finding the bucket empty sleeps until one token has
    accrued. While paused, every caller sleeps until the pause ends, even
    on an unlimited limiter.

    Args:
        rate: Requests allowed per period (None = unlimited)
        period: Length of the period in seconds
    """

    def __init__(self, rate: Optional[int] = None, period: float = 1):
        self.rate = rate
        self.period = period
        self._lock = asyncio.Lock()
        self._available: float = float(rate) if rate else float("inf")
        self._refilled_at: Optional[float] = None
        self._paused_until: float = 0.0

    @property
    def available(self) -> float:
        return self._available

    @property
    def paused(self) -> bool:
        return time.monotonic() < self._paused_until

    def pause_until(self, reset_epoch: float) -> None:
        """Hold all callers until ``reset_epoch`` (seconds since the epoch)."""
        delay = min(max(0.0, reset_epoch - time.time()), MAX_PAUSE_SECONDS)
        deadline = time.monotonic() + delay
        if deadline > self._paused_until:
            self._paused_until = deadline
            logger.warning(f"Quota exhausted, pausing outbound calls for {delay:.0f}s")

    async def acquire(self) -> None:
        """Wait for and consume one token."""
        pause = self._paused_until - time.monotonic()
        if pause > 0:
            await asyncio.sleep(pause)

        if self.rate is None:
            return

        async with self._lock:
            now = time.monotonic()
            if self._refilled_at is None:
                self._refilled_at = now
            self._available = min(
                self.rate, self._available + (now - self._refilled_at) * self.rate / self.period
            )
            self._refilled_at = now

            if self._available < 1:
                shortfall = (1 - self._available) * self.period / self.rate
                logger.debug(f"Budget empty, waiting {shortfall:.2f}s")
                await asyncio.sleep(shortfall)
                self._refilled_at = time.monotonic()
                self._available = 1

            self._available -= 1


class RateLimiterPool:
    """Named limiters, created on first use with the budgets below."""

    API_LIMITS: Dict[str, Dict[str, Optional[int]]] = {
        "github": {"rate": 5000, "period": 3600},
        "summarizer": {"rate": 60, "period": 60},
    }

    def __init__(self):
        self._by_name: Dict[str, AsyncRateLimiter] = {}

    def get(self, api_name: str) -> AsyncRateLimiter:
        limiter = self._by_name.get(api_name)
        if limiter is None:
            budget = self.API_LIMITS.get(api_name, {"rate": None, "period": 1})
            limiter = AsyncRateLimiter(rate=budget["rate"], period=budget["period"])
            self._by_name[api_name] = limiter
            logger.debug(f"Created {api_name} limiter: {budget}")
        return limiter

    def clear(self) -> None:
        self._by_name.clear()


_pool = RateLimiterPool()


def get_rate_limiter(api_name: str) -> AsyncRateLimiter:
    """Process-wide limiter for ``api_name``."""
    return _pool.get(api_name)


def reset_limiters() -> None:
    """Drop all process-wide limiters (tests)."""
    _pool.clear()
