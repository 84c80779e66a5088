"""Privileged credential acquisition with periodic background refresh."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import TYPE_CHECKING

from dsync.feed.errors import ExhaustedRetriesError, FeedError
from dsync.ingest.retry import RetryPolicy
from dsync.ingest.single_flight import SingleFlight

if TYPE_CHECKING:
    from dsync.feed.client import Credential, CredentialClient
    from dsync.ingest.rate_limiter import Sleep

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL_SECONDS = 240.0


class CredentialBroker:
    """Own the current credential; refreshes are coalesced into one request."""

    _client: CredentialClient
    _refresh_interval_seconds: float
    _retry_policy: RetryPolicy
    _credential: Credential | None
    _single_flight: SingleFlight[Credential]
    _task: asyncio.Task[None] | None
    _stop_event: asyncio.Event | None
    _requests: int

    def __init__(
        self,
        *,
        client: CredentialClient,
        refresh_interval_seconds: float = DEFAULT_REFRESH_INTERVAL_SECONDS,
        retry_policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        """Create broker with no credential and no refresh task."""
        self._client = client
        self._refresh_interval_seconds = refresh_interval_seconds
        self._retry_policy = retry_policy or RetryPolicy(max_attempts=5)
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._credential = None
        self._single_flight = SingleFlight()
        self._task = None
        self._stop_event = None
        self._requests = 0

    @property
    def available(self) -> bool:
        """Return True once any credential has been obtained."""
        return self._credential is not None

    @property
    def credential(self) -> Credential | None:
        """Return the current credential, if any."""
        return self._credential

    @property
    def request_count(self) -> int:
        """Return how many outbound credential requests were issued."""
        return self._requests

    @property
    def is_running(self) -> bool:
        """Return True while the background refresh task is active."""
        return self._task is not None and not self._task.done()

    async def initialize(self) -> Credential:
        """Acquire the first credential and start periodic refresh."""
        credential = await self.refresh()
        if not self.is_running:
            self._stop_event = asyncio.Event()
            self._task = asyncio.create_task(self._run_loop(self._stop_event))
        return credential

    async def refresh(self) -> Credential:
        """Refresh the credential, joining a refresh already in flight."""
        return await self._single_flight.run(self._refresh_with_retry)

    async def stop(self) -> None:
        """Stop the background refresh task."""
        task = self._task
        if task is None:
            return
        if self._stop_event is not None:
            self._stop_event.set()
        _ = task.cancel()
        _ = await asyncio.gather(task, return_exceptions=True)
        self._task = None
        self._stop_event = None

    async def _refresh_with_retry(self) -> Credential:
        last_error: FeedError | None = None
        for attempt in range(self._retry_policy.max_attempts):
            self._requests += 1
            try:
                credential = await self._client.request_credential()
            except FeedError as exc:
                last_error = exc
                if self._retry_policy.is_last(attempt):
                    break
                delay = self._retry_policy.delay_for(attempt, self._rng)
                logger.warning(
                    "Credential refresh attempt %d failed: %s; retrying in %.1fs",
                    attempt + 1,
                    exc,
                    delay,
                )
                await self._sleep(delay)
                continue
            self._credential = credential
            logger.info(
                "Credential refreshed (endpoint=%s, expires_in=%ss)",
                credential.endpoint,
                credential.expires_in_seconds,
            )
            return credential
        raise ExhaustedRetriesError.for_operation(
            operation="credential refresh",
            attempts=self._retry_policy.max_attempts,
            last_error=last_error,
        )

    async def _run_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                _ = await asyncio.wait_for(
                    stop_event.wait(),
                    timeout=self._refresh_interval_seconds,
                )
            except TimeoutError:
                pass
            else:
                return
            try:
                _ = await self.refresh()
            except FeedError:
                # Keep serving the previous credential until the next tick.
                logger.exception("Background credential refresh failed")
