"""
Retry policy for GitHub API calls.

Provides:
- RetryConfig: attempt count and backoff bounds
- is_retryable_error: error classification
- get_retry_after_seconds: Retry-After / X-RateLimit-Reset parsing
- wait_for_retry: tenacity wait strategy honoring server hints

Usage:
    from tenacity import AsyncRetrying
    from collectors.retry_strategy import RetryConfig

    config = RetryConfig(max_attempts=3)
    async for attempt in AsyncRetrying(**config.tenacity_kwargs()):
        with attempt:
            response = await client.get(url)
            raise_for_retryable_status(response)
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from tenacity import (
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    backoff_min: float = 1.0
    backoff_max: float = 60.0  # Also caps server-provided waits

    def tenacity_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for ``tenacity.AsyncRetrying``."""
        return {
            "stop": stop_after_attempt(self.max_attempts),
            "wait": wait_for_retry(self.backoff_min, self.backoff_max),
            "retry": retry_if_exception(is_retryable_error),
            "before_sleep": _log_retry,
            "reraise": True,
        }


def is_rate_limited(response: httpx.Response) -> bool:
    """GitHub signals primary rate-limit exhaustion as 403 with zero remaining."""
    if response.status_code == 429:
        return True
    return (
        response.status_code == 403
        and response.headers.get("X-RateLimit-Remaining") == "0"
    )


def is_retryable_error(error: BaseException) -> bool:
    """
    Determine if an error is retryable.

    Retryable: transport errors and timeouts, HTTP 5xx, HTTP 429, and 403
    responses that carry an exhausted rate-limit header. Other 4xx
    responses and programming errors are not.
    """
    if isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True

    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if 500 <= status < 600:
            return True
        return is_rate_limited(error.response)

    return False


def get_retry_after_seconds(error: BaseException) -> Optional[float]:
    """
    Extract a server-provided wait from an HTTP error.

    Prefers ``Retry-After``; falls back to ``X-RateLimit-Reset`` (epoch seconds).
    """
    if not isinstance(error, httpx.HTTPStatusError):
        return None

    headers = error.response.headers
    retry_after = headers.get("Retry-After")
    if retry_after is not None:
        try:
            return max(0.0, float(retry_after))
        except ValueError:
            return None

    reset = headers.get("X-RateLimit-Reset")
    if reset is not None:
        try:
            return max(0.0, float(reset) - time.time())
        except ValueError:
            return None

    return None


class wait_for_retry:
    """Exponential backoff, replaced by the server's hint when one is present."""

    def __init__(self, backoff_min: float = 1.0, backoff_max: float = 60.0):
        self.backoff_max = backoff_max
        self._exponential = wait_exponential(multiplier=1, min=backoff_min, max=backoff_max)

    def __call__(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        hinted = get_retry_after_seconds(error) if error is not None else None
        if hinted is not None:
            return min(hinted, self.backoff_max)
        return self._exponential(retry_state)


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    logger.warning(
        f"GitHub request attempt {retry_state.attempt_number} failed: {error}. "
        f"Retrying in {wait:.1f}s..."
    )


def raise_for_retryable_status(response: httpx.Response) -> None:
    """Raise HTTPStatusError only for responses worth retrying."""
    if response.status_code >= 500 or is_rate_limited(response):
        response.raise_for_status()
