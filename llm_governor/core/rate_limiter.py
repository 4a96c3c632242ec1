"""
Rate Limiter
============
Token-bucket admission control for outbound backend calls.
"""

import asyncio
import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import structlog

from llm_governor import metrics

logger = structlog.get_logger()


@dataclass(frozen=True)
class RateLimiterState:
    """Snapshot of the bucket for diagnostics."""

    tokens: float
    last_refill: float
    max_tokens: float
    refill_rate: float


class RateLimiter:
    """
    Token bucket rate limiter.

    Admission tokens refill continuously at ``requests_per_minute / 60000``
    tokens per millisecond up to ``max_tokens``. Every refill-and-take happens
    without an intervening await, so concurrent tasks on one event loop never
    observe a half-updated bucket. Waiters are not served in order.

    Usage:
        limiter = RateLimiter(requests_per_minute=30, burst_size=5)
        await limiter.acquire()
    """

    def __init__(
        self,
        requests_per_minute: int = 10,
        burst_size: int | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the rate limiter.

        Args:
            requests_per_minute: Sustained request rate
            burst_size: Bucket capacity (defaults to requests_per_minute)
            clock: Monotonic clock in seconds
            sleep: Coroutine used to suspend a waiting caller
        """
        if requests_per_minute <= 0:
            raise ValueError(f"requests_per_minute must be > 0, got {requests_per_minute}")
        if burst_size is not None and burst_size <= 0:
            raise ValueError(f"burst_size must be > 0, got {burst_size}")

        self.max_tokens = float(burst_size or requests_per_minute)
        self.refill_rate = requests_per_minute / 60000
        self._clock = clock
        self._sleep = sleep
        self._tokens = self.max_tokens
        self._last_refill = self._now_ms()

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def _refill(self) -> None:
        now = self._now_ms()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(self.max_tokens, self._tokens + elapsed * self.refill_rate)
        self._last_refill = now

    def _take(self) -> bool:
        self._refill()
        if self._tokens >= 1:
            self._tokens -= 1
            return True
        return False

    def wait_time_ms(self) -> int:
        """Milliseconds until one admission token is available."""
        self._refill()
        if self._tokens >= 1:
            return 0
        return math.ceil((1 - self._tokens) / self.refill_rate)

    async def acquire(self) -> None:
        """Take one admission token, suspending until one is available."""
        while not self._take():
            wait_ms = math.ceil((1 - self._tokens) / self.refill_rate)
            logger.info("Throttling request to avoid rate limits", wait_ms=wait_ms)
            metrics.RATE_LIMIT_WAIT_SECONDS.observe(wait_ms / 1000)
            await self._sleep(wait_ms / 1000)

    def try_acquire(self) -> bool:
        """Take one admission token if available, without waiting."""
        return self._take()

    def available_tokens(self) -> int:
        self._refill()
        return math.floor(self._tokens)

    def state(self) -> RateLimiterState:
        self._refill()
        return RateLimiterState(
            tokens=self._tokens,
            last_refill=self._last_refill,
            max_tokens=self.max_tokens,
            refill_rate=self.refill_rate,
        )

    def reset(self) -> None:
        """Refill the bucket to capacity."""
        self._tokens = self.max_tokens
        self._last_refill = self._now_ms()
