"""Token bucket shared by every ingestion worker.

The upstream limit applies to all requests made with one API key, so one
limiter instance is handed to every worker rather than one per worker. A 429
from any worker engages a global lockout through :meth:`RateLimiter.backoff`;
each later success earns back one step of trust.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]

BACKOFF_STEP_SECONDS = 5.0
MAX_BACKOFF_SECONDS = 30.0
BACKOFF_JITTER_SECONDS = 1.0
REFILL_JITTER_SECONDS = 0.5

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class RateLimiterState:
    """Point-in-time view of the bucket for logging and tests."""

    tokens: float
    max_tokens: float
    refill_rate_per_ms: float
    backoff_until: float
    consecutive_backoffs: int


class RateLimiter:
    """Async token bucket with a global backoff lockout."""

    _rate_per_second: float
    _max_tokens: float
    _tokens: float
    _last_refill: float
    _backoff_until: float
    _consecutive_backoffs: int
    _lock: asyncio.Lock

    def __init__(
        self,
        rate_per_second: float,
        burst: float | None = None,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        """Create a full bucket; burst defaults to two seconds of sustained rate."""
        if rate_per_second <= 0:
            msg = "RateLimiter rate_per_second must be positive."
            raise ValueError(msg)
        self._rate_per_second = rate_per_second
        self._max_tokens = float(burst if burst is not None else rate_per_second * 2)
        if self._max_tokens < 1:
            msg = "RateLimiter burst must allow at least one token."
            raise ValueError(msg)
        self._tokens = self._max_tokens
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._last_refill = clock()
        self._backoff_until = 0.0
        self._consecutive_backoffs = 0
        self._lock = asyncio.Lock()

    @property
    def consecutive_backoffs(self) -> int:
        """Return the current backoff streak."""
        return self._consecutive_backoffs

    def snapshot(self) -> RateLimiterState:
        """Return the current bucket state without refilling it."""
        return RateLimiterState(
            tokens=self._tokens,
            max_tokens=self._max_tokens,
            refill_rate_per_ms=self._rate_per_second / 1000,
            backoff_until=self._backoff_until,
            consecutive_backoffs=self._consecutive_backoffs,
        )

    async def acquire(self) -> None:
        """Wait out any lockout and for one token, then take it."""
        while True:
            async with self._lock:
                now = self._clock()
                if now < self._backoff_until:
                    wait = self._backoff_until - now + self._jitter(BACKOFF_JITTER_SECONDS)
                else:
                    self._refill(now)
                    if self._tokens >= 1:
                        self._tokens -= 1
                        return
                    wait = (1 - self._tokens) / self._rate_per_second + self._jitter(
                        REFILL_JITTER_SECONDS,
                    )
            await self._sleep(wait)

    def backoff(self) -> float:
        """Engage a global lockout after a remote rate-limit signal."""
        self._consecutive_backoffs += 1
        window = min(
            MAX_BACKOFF_SECONDS,
            BACKOFF_STEP_SECONDS * self._consecutive_backoffs,
        )
        now = self._clock()
        self._backoff_until = now + window
        self._tokens = 0.0
        # Refill resumes only once the lockout has elapsed.
        self._last_refill = self._backoff_until
        logger.warning(
            "Rate limiter backing off for %.1fs (streak=%d)",
            window,
            self._consecutive_backoffs,
        )
        return window

    def on_success(self) -> None:
        """Decay the backoff streak by one step."""
        self._consecutive_backoffs = max(0, self._consecutive_backoffs - 1)

    def _refill(self, now: float) -> None:
        elapsed = now - self._last_refill
        if elapsed <= 0:
            return
        self._tokens = min(
            self._max_tokens,
            self._tokens + elapsed * self._rate_per_second,
        )
        self._last_refill = now

    def _jitter(self, ceiling: float) -> float:
        return self._rng.uniform(0, ceiling)
