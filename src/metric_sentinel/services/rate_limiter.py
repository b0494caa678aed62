"""
Rate Limit Awareness Service

Provides rate limit handling with proactive backoff for remote sample
sources, to avoid 429/503 responses.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from metric_sentinel.domain.errors import SourceRateLimitedError
from metric_sentinel.observability.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_AFTER_SECONDS = 5.0


class RateLimitAwareExecutor:
    """
    Rate limit handling with proactive backoff.

    Features:
    - Tracks request usage over a rolling minute
    - Proactive backoff when approaching the limit
    - Honours Retry-After on rate limit responses, retrying once
    """

    def __init__(
        self,
        source_name: str,
        requests_per_minute: int = 600,
        warning_threshold: float = 0.8,  # start backing off
        critical_threshold: float = 0.95,  # wait for the window to drain
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.source_name = source_name
        self.requests_per_minute = requests_per_minute
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold
        self._sleep = sleep

        # Request timestamps (rolling 60-second window)
        self.request_history: deque[float] = deque(maxlen=requests_per_minute)

        # Backoff state
        self.backoff_until = 0.0
        self.consecutive_errors = 0

        # Statistics
        self.total_requests = 0
        self.total_backoffs = 0
        self.total_errors = 0

    def _clean_old_requests(self) -> None:
        cutoff = time.monotonic() - 60
        while self.request_history and self.request_history[0] < cutoff:
            self.request_history.popleft()

    def _get_usage_pct(self) -> float:
        self._clean_old_requests()
        return len(self.request_history) / self.requests_per_minute

    @staticmethod
    def _calculate_backoff(usage_pct: float) -> float:
        if usage_pct < 0.8:
            return 0.0
        elif usage_pct < 0.9:
            return 2.0
        elif usage_pct < 0.95:
            return 5.0
        else:
            return 10.0

    async def execute(self, request_func: Callable[[], Awaitable[T]], label: str = "request") -> T:
        """
        Execute ``request_func`` with rate limit awareness.

        ``request_func`` signals a rate limit by raising SourceRateLimitedError
        (``details["retry_after"]`` in seconds, optional).

        Raises:
            SourceRateLimitedError: still limited after one retry.
            Exception: anything else ``request_func`` raises, unchanged.
        """
        now = time.monotonic()
        if now < self.backoff_until:
            wait_time = self.backoff_until - now
            logger.info(f"[RateLimit:{self.source_name}] In backoff, waiting {wait_time:.1f}s (label={label})")
            await self._sleep(wait_time)

        usage_pct = self._get_usage_pct()
        if usage_pct >= self.critical_threshold and self.request_history:
            wait_time = max(0.0, 60 - (time.monotonic() - self.request_history[0]))
            logger.warning(
                f"[RateLimit:{self.source_name}] CRITICAL: {usage_pct:.1%} usage, "
                f"waiting {wait_time:.1f}s (label={label})"
            )
            await self._sleep(wait_time)
        elif usage_pct >= self.warning_threshold:
            backoff = self._calculate_backoff(usage_pct)
            if backoff > 0:
                logger.info(
                    f"[RateLimit:{self.source_name}] {usage_pct:.1%} usage, "
                    f"proactive backoff {backoff:.1f}s (label={label})"
                )
                self.total_backoffs += 1
                await self._sleep(backoff)

        self.total_requests += 1
        try:
            response = await request_func()
        except SourceRateLimitedError as e:
            self.total_errors += 1
            self.consecutive_errors += 1

            hinted = e.details.get("retry_after")
            retry_after = DEFAULT_RETRY_AFTER_SECONDS if hinted is None else max(0.0, float(hinted))
            self.backoff_until = time.monotonic() + retry_after
            logger.warning(
                f"[RateLimit:{self.source_name}] Hit rate limit, backing off {retry_after:.1f}s "
                f"(consecutive={self.consecutive_errors}, label={label})"
            )
            await self._sleep(retry_after)

            try:
                response = await request_func()
            except SourceRateLimitedError as retry_e:
                logger.error(f"[RateLimit:{self.source_name}] Retry failed: {retry_e}")
                raise

        self.request_history.append(time.monotonic())
        self.consecutive_errors = 0
        return response

    def get_stats(self) -> dict:
        """Get rate limiter statistics."""
        return {
            "source": self.source_name,
            "requests_per_minute": self.requests_per_minute,
            "current_usage": f"{self._get_usage_pct():.1%}",
            "total_requests": self.total_requests,
            "total_backoffs": self.total_backoffs,
            "total_errors": self.total_errors,
            "consecutive_errors": self.consecutive_errors,
        }

    def reset(self) -> None:
        """Reset rate limiter state (for testing)."""
        self.request_history.clear()
        self.backoff_until = 0.0
        self.consecutive_errors = 0
        self.total_requests = 0
        self.total_backoffs = 0
        self.total_errors = 0
