"""Typed feed page payloads and event row normalization."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, cast

from dsync.feed.errors import MalformedResponseError
from dsync.feed.timestamps import normalize_timestamp

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence
    from datetime import datetime

    from dsync.feed.timestamps import TimeProvider

type EventRecord = Mapping[str, object]


@dataclass(slots=True, frozen=True)
class FeedPage:
    """One page of feed events with its pagination metadata."""

    events: list[EventRecord]
    has_more: bool
    next_cursor: str | None
    cursor_expires_in: int | None = None


@dataclass(slots=True, frozen=True)
class EventRow:
    """Event fields persisted at the sink boundary."""

    id: str
    session_id: str | None
    user_id: str | None
    type: str | None
    name: str | None
    properties: str
    timestamp: datetime
    device_type: str | None
    browser: str | None


class EventRowError(MalformedResponseError):
    """Raised when an event record cannot be mapped to a stored row."""

    @classmethod
    def for_record(cls, *, details: str) -> EventRowError:
        """Build deterministic error for unusable event records."""
        return cls(f"Event record invalid: {details}")


def parse_page(payload: object) -> FeedPage:
    """Decode a feed response body into a typed page."""
    if not isinstance(payload, dict):
        raise MalformedResponseError.from_details(details="body must be an object")
    body = cast("dict[str, object]", payload)
    data = body.get("data")
    if data is None:
        data = []
    if not isinstance(data, list):
        raise MalformedResponseError.from_details(details="`data` must be a list")
    events: list[EventRecord] = []
    for item in cast("list[object]", data):
        if not isinstance(item, dict):
            raise MalformedResponseError.from_details(
                details="`data` entries must be objects",
            )
        events.append(cast("EventRecord", item))

    pagination = body.get("pagination")
    if pagination is None:
        pagination = {}
    if not isinstance(pagination, dict):
        raise MalformedResponseError.from_details(
            details="`pagination` must be an object",
        )
    meta = cast("dict[str, object]", pagination)
    next_cursor = meta.get("nextCursor")
    if next_cursor is not None and not isinstance(next_cursor, str):
        raise MalformedResponseError.from_details(
            details="`pagination.nextCursor` must be a string",
        )
    expires_in = meta.get("cursorExpiresIn")
    return FeedPage(
        events=events,
        has_more=bool(meta.get("hasMore", False)),
        next_cursor=next_cursor or None,
        cursor_expires_in=expires_in if isinstance(expires_in, int) else None,
    )


def to_event_row(
    record: EventRecord,
    *,
    time_provider: TimeProvider | None = None,
) -> EventRow:
    """Map one feed event record to its stored row shape."""
    event_id = record.get("id")
    if isinstance(event_id, int) and not isinstance(event_id, bool):
        event_id = str(event_id)
    if not isinstance(event_id, str) or not event_id:
        raise EventRowError.for_record(details="missing string `id`")
    session = record.get("session")
    session_map = cast("Mapping[str, object]", session) if isinstance(session, dict) else {}
    properties = record.get("properties")
    return EventRow(
        id=event_id,
        session_id=_optional_str(record.get("sessionId")),
        user_id=_optional_str(record.get("userId")),
        type=_optional_str(record.get("type")),
        name=_optional_str(record.get("name")),
        properties=_encode_properties(properties if properties is not None else {}),
        timestamp=normalize_timestamp(
            record.get("timestamp"),
            time_provider=time_provider,
        ),
        device_type=_optional_str(session_map.get("deviceType")),
        browser=_optional_str(session_map.get("browser")),
    )


def to_event_rows(
    records: Sequence[EventRecord],
    *,
    time_provider: TimeProvider | None = None,
) -> list[EventRow]:
    """Map a page of records, dropping in-page duplicate ids."""
    rows: dict[str, EventRow] = {}
    for record in records:
        row = to_event_row(record, time_provider=time_provider)
        rows.setdefault(row.id, row)
    return list(rows.values())


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def _encode_properties(value: object) -> str:
    try:
        return json.dumps(value, separators=(",", ":"), allow_nan=False, default=str)
    except ValueError as exc:
        raise EventRowError.for_record(details=f"properties: {exc}") from exc
