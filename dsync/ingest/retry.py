"""Shared exponential backoff policy for fetch, gap-fill and credential retries."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from dsync.config.settings import AppSettings

# Fetch retries get extra headroom over the configured budget; the exponent
# stops growing after five doublings so the ceiling is reached predictably.
FETCH_EXTRA_ATTEMPTS = 5
FETCH_MAX_EXPONENT = 5
FETCH_JITTER_SECONDS = 2.0


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: base * 2**attempt, jittered, capped."""

    max_attempts: int
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.0
    max_exponent: int | None = None

    def __post_init__(self) -> None:
        """Reject budgets that could never run an attempt."""
        if self.max_attempts < 1:
            msg = "RetryPolicy.max_attempts must be at least 1."
            raise ValueError(msg)

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        """Return the sleep before retrying after zero-based ``attempt`` failed."""
        exponent = attempt if self.max_exponent is None else min(attempt, self.max_exponent)
        delay = self.base_delay * (2**exponent)
        if self.jitter > 0:
            delay += (rng or random).uniform(0, self.jitter)
        return min(delay, self.max_delay)

    def is_last(self, attempt: int) -> bool:
        """Return True when ``attempt`` is the final one in the budget."""
        return attempt + 1 >= self.max_attempts


def fetch_retry_policy(settings: AppSettings) -> RetryPolicy:
    """Build the page-fetch policy used by workers and gap-fill."""
    return RetryPolicy(
        max_attempts=settings.max_retries + FETCH_EXTRA_ATTEMPTS,
        base_delay=settings.retry_base_seconds,
        max_delay=settings.retry_max_seconds,
        jitter=FETCH_JITTER_SECONDS,
        max_exponent=FETCH_MAX_EXPONENT,
    )


def credential_retry_policy(settings: AppSettings) -> RetryPolicy:
    """Build the credential refresh policy."""
    return RetryPolicy(
        max_attempts=settings.max_retries,
        base_delay=settings.retry_base_seconds,
        max_delay=settings.retry_max_seconds,
    )
