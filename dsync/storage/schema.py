"""Idempotent schema creation for the event and checkpoint tables."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from dsync.storage.db import StorageRuntime

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS ingested_events (
        id TEXT NOT NULL,
        session_id TEXT NULL,
        user_id TEXT NULL,
        type TEXT NULL,
        name TEXT NULL,
        properties TEXT NOT NULL DEFAULT '{}',
        timestamp DATETIME NULL,
        device_type TEXT NULL,
        browser TEXT NULL,
        CONSTRAINT pk_ingested_events PRIMARY KEY (id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ingestion_progress (
        worker_id INTEGER NOT NULL,
        cursor_value TEXT NULL,
        events_ingested INTEGER NOT NULL DEFAULT 0,
        boundary_ts BIGINT NOT NULL,
        last_checkpoint DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
        status VARCHAR(16) NOT NULL DEFAULT 'running',
        CONSTRAINT pk_ingestion_progress PRIMARY KEY (worker_id),
        CONSTRAINT ck_ingestion_progress_status
            CHECK (status IN ('running', 'completed'))
    )
    """,
)


async def create_schema(runtime: StorageRuntime) -> None:
    """Create the event and checkpoint tables when missing."""
    async with runtime.write_engine.begin() as connection:
        for statement in SCHEMA_STATEMENTS:
            _ = await connection.exec_driver_sql(statement)
    logger.info("Database schema ready")
