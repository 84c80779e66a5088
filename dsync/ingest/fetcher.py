"""Permit, fetch and transient recovery for one feed page."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from dsync.feed.errors import (
    AuthExpiredError,
    ExhaustedRetriesError,
    FeedError,
    RateLimitedError,
    TransportError,
)

if TYPE_CHECKING:
    from dsync.feed.client import Credential, FeedClient
    from dsync.feed.records import FeedPage
    from dsync.ingest.credentials import CredentialBroker
    from dsync.ingest.rate_limiter import RateLimiter, Sleep
    from dsync.ingest.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 15.0
RATE_LIMIT_JITTER_SECONDS = 5.0


@dataclass(slots=True)
class PageFetcher:
    """Fetch pages through the shared limiter, absorbing transient failures.

    Rate limits, forbidden responses and transport failures are retried here
    against the same cursor. Cursor expiry and malformed bodies are left to the
    caller, and a spent retry budget surfaces as ``ExhaustedRetriesError``.
    """

    client: FeedClient
    limiter: RateLimiter
    retry_policy: RetryPolicy
    page_size: int
    broker: CredentialBroker | None = None
    default_retry_after_seconds: float = DEFAULT_RETRY_AFTER_SECONDS
    rate_limit_jitter_seconds: float = RATE_LIMIT_JITTER_SECONDS
    label: str = "fetch"
    sleep: Sleep = asyncio.sleep
    rng: random.Random = field(default_factory=random.Random)

    async def fetch(self, cursor: str | None) -> FeedPage:
        """Return the page at ``cursor`` or raise once recovery is exhausted."""
        use_privileged = self.broker is not None and self.broker.available
        last_error: FeedError | None = None
        for attempt in range(self.retry_policy.max_attempts):
            await self.limiter.acquire()
            credential = self._credential() if use_privileged else None
            try:
                page = await self.client.fetch_page(
                    cursor=cursor,
                    limit=self.page_size,
                    credential=credential,
                )
            except RateLimitedError as exc:
                last_error = exc
                await self._wait_out_rate_limit(exc)
                continue
            except AuthExpiredError as exc:
                last_error = exc
                if use_privileged:
                    use_privileged = await self._refresh_credential()
                    continue
                await self._backoff(attempt, exc)
                continue
            except TransportError as exc:
                last_error = exc
                await self._backoff(attempt, exc)
                continue
            self.limiter.on_success()
            return page

        raise ExhaustedRetriesError.for_operation(
            operation=self.label,
            attempts=self.retry_policy.max_attempts,
            last_error=last_error,
        )

    def _credential(self) -> Credential | None:
        if self.broker is None:
            return None
        return self.broker.credential

    async def _refresh_credential(self) -> bool:
        """Refresh after a forbidden response; False means drop to standard access."""
        if self.broker is None:
            return False
        try:
            _ = await self.broker.refresh()
        except ExhaustedRetriesError:
            logger.warning(
                "%s: credential refresh failed, using standard endpoint",
                self.label,
            )
            return False
        return True

    async def _wait_out_rate_limit(self, exc: RateLimitedError) -> None:
        _ = self.limiter.backoff()
        retry_after = (
            exc.retry_after
            if exc.retry_after is not None
            else self.default_retry_after_seconds
        )
        delay = retry_after + self.rng.uniform(0, self.rate_limit_jitter_seconds)
        logger.warning("%s: rate limited, sleeping %.1fs", self.label, delay)
        await self.sleep(delay)

    async def _backoff(self, attempt: int, exc: FeedError) -> None:
        if self.retry_policy.is_last(attempt):
            return
        delay = self.retry_policy.delay_for(attempt, self.rng)
        logger.warning(
            "%s: attempt %d failed (%s), retrying in %.1fs",
            self.label,
            attempt + 1,
            exc,
            delay,
        )
        await self.sleep(delay)
