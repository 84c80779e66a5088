"""Final forward sweep that picks up records the partitions missed."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from dsync.feed.errors import (
    CursorExpiredError,
    ExhaustedRetriesError,
    MalformedResponseError,
)

if TYPE_CHECKING:
    from dsync.ingest.credentials import CredentialBroker
    from dsync.ingest.fetcher import PageFetcher
    from dsync.ingest.worker import EventSink, ProgressCallback

logger = logging.getLogger(__name__)

GAP_FILL_WORKER_ID = -1
DEFAULT_GAP_FILL_SLACK = 10_000
DEFAULT_MAX_CURSOR_RESETS = 5


@dataclass(slots=True)
class GapFill:
    """Paginate from the feed head until the shortfall plus slack is covered."""

    fetcher: PageFetcher
    sink: EventSink
    broker: CredentialBroker | None = None
    slack: int = DEFAULT_GAP_FILL_SLACK
    on_progress: ProgressCallback | None = None
    shutdown: asyncio.Event = field(default_factory=asyncio.Event)
    max_cursor_resets: int = DEFAULT_MAX_CURSOR_RESETS

    async def run(self, *, current_count: int, target_count: int) -> int:
        """Run one pass and return how many records were fetched."""
        shortfall = target_count - current_count
        if shortfall <= 0:
            return 0
        fetch_target = shortfall + self.slack
        logger.info(
            "Gap fill starting: %d missing, fetching up to %d",
            shortfall,
            fetch_target,
        )
        await self._refresh_credential()

        cursor: str | None = None
        fetched = 0
        cursor_resets = 0
        while fetched < fetch_target and not self.shutdown.is_set():
            try:
                page = await self.fetcher.fetch(cursor)
            except CursorExpiredError:
                cursor_resets += 1
                if cursor_resets > self.max_cursor_resets:
                    logger.error("Gap fill giving up after repeated cursor expiry")
                    break
                logger.warning("Gap fill cursor expired; restarting from head")
                cursor = None
                continue
            except (ExhaustedRetriesError, MalformedResponseError):
                logger.exception("Gap fill ended early")
                break
            cursor_resets = 0

            if not page.events:
                break
            try:
                await self.sink.insert_events(page.events)
            except Exception as exc:
                if isinstance(exc, asyncio.CancelledError):
                    raise
                # Earlier pages stay stored and the run still reports.
                logger.exception("Gap fill ended early")
                break
            fetched += len(page.events)
            if self.on_progress is not None:
                self.on_progress(GAP_FILL_WORKER_ID, len(page.events))

            cursor = page.next_cursor
            if not page.has_more or cursor is None:
                break

        logger.info("Gap fill done: %d fetched", fetched)
        return fetched

    async def _refresh_credential(self) -> None:
        if self.broker is None or not self.broker.available:
            return
        try:
            _ = await self.broker.refresh()
        except ExhaustedRetriesError:
            logger.warning("Gap fill credential refresh failed; continuing")
