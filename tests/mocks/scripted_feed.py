"""Scripted feed, credential and storage fakes for ingestion tests."""

from __future__ import annotations

import asyncio
import errno
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, override

from dsync.feed.client import Credential
from dsync.feed.records import FeedPage
from dsync.storage.checkpoints_repo import (
    Checkpoint,
    CheckpointCompletedError,
    CheckpointStatus,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from dsync.feed.records import EventRecord

type FeedResponse = FeedPage | BaseException
type CredentialResponse = Credential | BaseException

FIXED_NOW = datetime(2026, 1, 1, tzinfo=UTC)


def make_events(prefix: str, count: int, *, start: int = 0) -> list[EventRecord]:
    """Build ``count`` minimal event records with ids ``<prefix>-<n>``."""
    return [
        {
            "id": f"{prefix}-{index}",
            "sessionId": f"s-{prefix}",
            "userId": "u-1",
            "type": "click",
            "name": "button",
            "properties": {"n": index},
            "timestamp": 1_700_000_000_000 + index,
            "session": {"deviceType": "desktop", "browser": "firefox"},
        }
        for index in range(start, start + count)
    ]


def make_page(
    events: list[EventRecord],
    *,
    has_more: bool = False,
    next_cursor: str | None = None,
) -> FeedPage:
    """Build a feed page."""
    return FeedPage(events=events, has_more=has_more, next_cursor=next_cursor)


def make_credential(token: str = "token-1") -> Credential:
    """Build a privileged credential."""
    return Credential(
        endpoint="/stream/events",
        token=token,
        token_header="X-Stream-Token",
        expires_in_seconds=300,
        acquired_at=FIXED_NOW,
    )


@dataclass(slots=True, frozen=True)
class FetchCall:
    """One recorded fetch_page invocation."""

    cursor: str | None
    limit: int
    credential: Credential | None


class FakeTime:
    """Manual clock whose sleep advances time instead of waiting."""

    def __init__(self, start: float = 1_000.0) -> None:
        """Start the clock at ``start`` seconds."""
        self.now = start
        self.sleeps: list[float] = []

    def clock(self) -> float:
        """Return the current fake time."""
        return self.now

    async def sleep(self, seconds: float) -> None:
        """Record the sleep, advance time and yield to the loop."""
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class ScriptedFeedClient:
    """Return scripted pages or raise scripted errors in call order."""

    def __init__(self, responses: Sequence[FeedResponse]) -> None:
        """Queue responses; an exhausted script yields empty final pages."""
        self.responses: list[FeedResponse] = list(responses)
        self.calls: list[FetchCall] = []

    async def fetch_page(
        self,
        *,
        cursor: str | None,
        limit: int,
        credential: Credential | None = None,
    ) -> FeedPage:
        """Record the call and replay the next scripted response."""
        self.calls.append(FetchCall(cursor=cursor, limit=limit, credential=credential))
        await asyncio.sleep(0)
        if not self.responses:
            return make_page([])
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


class RoutedFeedClient:
    """Answer each fetch through a handler keyed on the request cursor."""

    def __init__(
        self,
        handler: Callable[[str | None, Credential | None], FeedResponse],
    ) -> None:
        """Create client around ``handler``."""
        self.handler = handler
        self.calls: list[FetchCall] = []

    async def fetch_page(
        self,
        *,
        cursor: str | None,
        limit: int,
        credential: Credential | None = None,
    ) -> FeedPage:
        """Record the call and return the handler's answer."""
        self.calls.append(FetchCall(cursor=cursor, limit=limit, credential=credential))
        await asyncio.sleep(0)
        response = self.handler(cursor, credential)
        if isinstance(response, BaseException):
            raise response
        return response


class ScriptedCredentialClient:
    """Replay credential responses; the last one repeats once the script ends."""

    def __init__(
        self,
        responses: Sequence[CredentialResponse],
        *,
        gate: asyncio.Event | None = None,
    ) -> None:
        """Queue responses; requests block on ``gate`` when one is given."""
        self.responses: list[CredentialResponse] = list(responses)
        self.gate = gate
        self.calls = 0

    async def request_credential(self) -> Credential:
        """Count the request and replay the next scripted response."""
        self.calls += 1
        if self.gate is not None:
            _ = await self.gate.wait()
        else:
            await asyncio.sleep(0)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, BaseException):
            raise response
        return response


class RecordingSink:
    """In-memory idempotent sink keyed by event id."""

    def __init__(self, existing: int = 0) -> None:
        """Pre-populate ``existing`` placeholder ids."""
        self.events: dict[str, EventRecord] = {
            f"existing-{index}": {"id": f"existing-{index}"} for index in range(existing)
        }
        self.batches: list[int] = []

    async def insert_events(self, records: Sequence[EventRecord]) -> None:
        """Store records, keeping the first copy of each id."""
        self.batches.append(len(records))
        for record in records:
            _ = self.events.setdefault(str(record["id"]), record)
        await asyncio.sleep(0)

    async def count_events(self) -> int:
        """Return the distinct id count."""
        return len(self.events)


class FailingSink(RecordingSink):
    """Sink whose writes fail once ``fail_after`` batches are stored."""

    def __init__(self, fail_after: int) -> None:
        super().__init__()
        self.fail_after = fail_after
        self.rejected = 0

    @override
    async def insert_events(self, records: Sequence[EventRecord]) -> None:
        if len(self.batches) >= self.fail_after:
            self.rejected += 1
            raise OSError(errno.EOVERFLOW, "Value too large for defined data type")
        await super().insert_events(records)


@dataclass(slots=True)
class MemoryCheckpointStore:
    """In-memory checkpoint store honoring the completed-is-terminal rule."""

    checkpoints: dict[int, Checkpoint] = field(default_factory=dict)
    saves: list[tuple[int, str | None, int]] = field(default_factory=list)

    async def list_checkpoints(self) -> dict[int, Checkpoint]:
        """Return a copy of stored checkpoints."""
        return dict(self.checkpoints)

    async def save_checkpoint(
        self,
        *,
        worker_id: int,
        cursor: str | None,
        events_ingested: int,
        boundary_ts: int,
    ) -> Checkpoint:
        """Upsert a running checkpoint unless the worker already completed."""
        existing = self.checkpoints.get(worker_id)
        if existing is not None and existing.is_completed:
            raise CheckpointCompletedError.for_worker(worker_id)
        checkpoint = Checkpoint(
            worker_id=worker_id,
            cursor=cursor,
            events_ingested=events_ingested,
            boundary_ts=boundary_ts,
            status=CheckpointStatus.RUNNING,
            last_checkpoint_at=FIXED_NOW,
        )
        self.checkpoints[worker_id] = checkpoint
        self.saves.append((worker_id, cursor, events_ingested))
        return checkpoint

    async def mark_completed(
        self,
        *,
        worker_id: int,
        events_ingested: int,
        boundary_ts: int,
    ) -> Checkpoint:
        """Mark the worker completed, keeping its last cursor."""
        existing = self.checkpoints.get(worker_id)
        checkpoint = Checkpoint(
            worker_id=worker_id,
            cursor=existing.cursor if existing is not None else None,
            events_ingested=events_ingested,
            boundary_ts=boundary_ts,
            status=CheckpointStatus.COMPLETED,
            last_checkpoint_at=FIXED_NOW,
        )
        self.checkpoints[worker_id] = checkpoint
        return checkpoint
