"""Repository for idempotent bulk event inserts."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import text

if TYPE_CHECKING:
    from collections.abc import Sequence

    from dsync.feed.records import EventRow
    from dsync.storage.db import SessionFactory


class EventsRepositoryError(RuntimeError):
    """Base exception for event store operations."""


class EventsRepository:
    """Insert-if-absent batch writer and counter for ingested events."""

    _read_session_factory: SessionFactory
    _write_session_factory: SessionFactory

    def __init__(
        self,
        *,
        read_session_factory: SessionFactory,
        write_session_factory: SessionFactory,
    ) -> None:
        """Create repository with explicit read/write session dependencies."""
        self._read_session_factory = read_session_factory
        self._write_session_factory = write_session_factory

    async def insert_events(self, rows: Sequence[EventRow]) -> None:
        """Insert a batch in one transaction, skipping ids already stored."""
        if not rows:
            return
        statement = text(
            """
            INSERT INTO ingested_events (
                id,
                session_id,
                user_id,
                type,
                name,
                properties,
                timestamp,
                device_type,
                browser
            )
            VALUES (
                :id,
                :session_id,
                :user_id,
                :type,
                :name,
                :properties,
                :timestamp,
                :device_type,
                :browser
            )
            ON CONFLICT(id) DO NOTHING
            """,
        )
        params = [
            {
                "id": row.id,
                "session_id": row.session_id,
                "user_id": row.user_id,
                "type": row.type,
                "name": row.name,
                "properties": row.properties,
                "timestamp": row.timestamp.isoformat(),
                "device_type": row.device_type,
                "browser": row.browser,
            }
            for row in rows
        ]
        async with self._write_session_factory() as session:
            _ = await session.execute(statement, params)
            await session.commit()

    async def count_events(self) -> int:
        """Return the number of distinct stored event ids."""
        statement = text("SELECT COUNT(*) AS event_count FROM ingested_events")
        async with self._read_session_factory() as session:
            result = await session.execute(statement)
            value = result.scalar_one()
        if not isinstance(value, int):
            raise EventsRepositoryError(f"Unexpected event count value: {value!r}")
        return value

    async def has_event(self, *, event_id: str) -> bool:
        """Return True when an event id is already stored."""
        statement = text("SELECT 1 FROM ingested_events WHERE id = :id")
        async with self._read_session_factory() as session:
            result = await session.execute(statement, {"id": event_id})
            return result.first() is not None
