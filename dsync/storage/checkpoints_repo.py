"""Repository helpers for per-partition ingestion checkpoints."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING

from sqlalchemy import text

if TYPE_CHECKING:
    from collections.abc import Mapping

    from dsync.storage.db import SessionFactory

TimeProvider = Callable[[], datetime]

_CHECKPOINT_COLUMNS = """
    worker_id,
    cursor_value,
    events_ingested,
    boundary_ts,
    last_checkpoint,
    status
"""


class CheckpointStatus(StrEnum):
    """Lifecycle of one partition; completed is terminal."""

    RUNNING = "running"
    COMPLETED = "completed"


@dataclass(slots=True, frozen=True)
class Checkpoint:
    """Persisted progress for one partition."""

    worker_id: int
    cursor: str | None
    events_ingested: int
    boundary_ts: int
    status: CheckpointStatus
    last_checkpoint_at: datetime

    @property
    def is_completed(self) -> bool:
        """Return True when the partition finished in an earlier run."""
        return self.status is CheckpointStatus.COMPLETED


class CheckpointsRepositoryError(RuntimeError):
    """Base exception for checkpoint repository operations."""


class CheckpointDecodeError(CheckpointsRepositoryError):
    """Raised when checkpoint rows cannot be decoded."""

    @classmethod
    def from_details(cls, *, details: str) -> CheckpointDecodeError:
        """Build deterministic decode error message."""
        return cls(f"Checkpoint row invalid: {details}")


class CheckpointCompletedError(CheckpointsRepositoryError):
    """Raised when a write would move a completed checkpoint back to running."""

    @classmethod
    def for_worker(cls, worker_id: int) -> CheckpointCompletedError:
        """Build deterministic error for writes against completed partitions."""
        return cls(f"Checkpoint for worker {worker_id} is already completed.")


def _utc_now() -> datetime:
    return datetime.now(UTC)


class CheckpointsRepository:
    """Read and upsert checkpoints keyed by worker id."""

    _read_session_factory: SessionFactory
    _write_session_factory: SessionFactory
    _time_provider: TimeProvider

    def __init__(
        self,
        *,
        read_session_factory: SessionFactory,
        write_session_factory: SessionFactory,
        time_provider: TimeProvider | None = None,
    ) -> None:
        """Create repository with explicit read/write session dependencies."""
        self._read_session_factory = read_session_factory
        self._write_session_factory = write_session_factory
        self._time_provider = _utc_now if time_provider is None else time_provider

    async def list_checkpoints(self) -> dict[int, Checkpoint]:
        """Return every stored checkpoint keyed by worker id."""
        statement = text(f"SELECT {_CHECKPOINT_COLUMNS} FROM ingestion_progress")  # noqa: S608
        async with self._read_session_factory() as session:
            result = await session.execute(statement)
            rows = result.mappings().all()
        checkpoints: dict[int, Checkpoint] = {}
        for row in rows:
            checkpoint = _decode_checkpoint_row(row)
            checkpoints[checkpoint.worker_id] = checkpoint
        return checkpoints

    async def get_checkpoint(self, *, worker_id: int) -> Checkpoint | None:
        """Return the checkpoint for one worker or None if missing."""
        statement = text(
            f"""
            SELECT {_CHECKPOINT_COLUMNS}
            FROM ingestion_progress
            WHERE worker_id = :worker_id
            """,  # noqa: S608
        )
        async with self._read_session_factory() as session:
            result = await session.execute(statement, {"worker_id": worker_id})
            row = result.mappings().one_or_none()
        if row is None:
            return None
        return _decode_checkpoint_row(row)

    async def save_checkpoint(
        self,
        *,
        worker_id: int,
        cursor: str | None,
        events_ingested: int,
        boundary_ts: int,
    ) -> Checkpoint:
        """Upsert a running checkpoint; completed checkpoints are left untouched."""
        statement = text(
            f"""
            INSERT INTO ingestion_progress (
                worker_id,
                cursor_value,
                events_ingested,
                boundary_ts,
                last_checkpoint,
                status
            )
            VALUES (
                :worker_id,
                :cursor_value,
                :events_ingested,
                :boundary_ts,
                :last_checkpoint,
                'running'
            )
            ON CONFLICT(worker_id) DO UPDATE SET
                cursor_value = excluded.cursor_value,
                events_ingested = excluded.events_ingested,
                boundary_ts = excluded.boundary_ts,
                last_checkpoint = excluded.last_checkpoint,
                status = 'running'
            WHERE ingestion_progress.status != 'completed'
            RETURNING {_CHECKPOINT_COLUMNS}
            """,  # noqa: S608
        )
        async with self._write_session_factory() as session:
            result = await session.execute(
                statement,
                {
                    "worker_id": worker_id,
                    "cursor_value": cursor,
                    "events_ingested": events_ingested,
                    "boundary_ts": boundary_ts,
                    "last_checkpoint": _format_timestamp(self._time_provider()),
                },
            )
            row = result.mappings().one_or_none()
            await session.commit()
        if row is None:
            raise CheckpointCompletedError.for_worker(worker_id)
        return _decode_checkpoint_row(row)

    async def mark_completed(
        self,
        *,
        worker_id: int,
        events_ingested: int,
        boundary_ts: int,
    ) -> Checkpoint:
        """Mark a partition completed, creating its row when none exists."""
        statement = text(
            f"""
            INSERT INTO ingestion_progress (
                worker_id,
                events_ingested,
                boundary_ts,
                last_checkpoint,
                status
            )
            VALUES (
                :worker_id,
                :events_ingested,
                :boundary_ts,
                :last_checkpoint,
                'completed'
            )
            ON CONFLICT(worker_id) DO UPDATE SET
                events_ingested = excluded.events_ingested,
                last_checkpoint = excluded.last_checkpoint,
                status = 'completed'
            RETURNING {_CHECKPOINT_COLUMNS}
            """,  # noqa: S608
        )
        async with self._write_session_factory() as session:
            result = await session.execute(
                statement,
                {
                    "worker_id": worker_id,
                    "events_ingested": events_ingested,
                    "boundary_ts": boundary_ts,
                    "last_checkpoint": _format_timestamp(self._time_provider()),
                },
            )
            row = result.mappings().one()
            await session.commit()
        return _decode_checkpoint_row(row)


def _decode_checkpoint_row(row: Mapping[str, object]) -> Checkpoint:
    return Checkpoint(
        worker_id=_coerce_int(value=row.get("worker_id"), field="worker_id"),
        cursor=_coerce_optional_str(value=row.get("cursor_value"), field="cursor_value"),
        events_ingested=_coerce_int(
            value=row.get("events_ingested"),
            field="events_ingested",
        ),
        boundary_ts=_coerce_int(value=row.get("boundary_ts"), field="boundary_ts"),
        status=_coerce_status(value=row.get("status")),
        last_checkpoint_at=_coerce_datetime(value=row.get("last_checkpoint")),
    )


def _coerce_int(*, value: object, field: str) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lstrip("-").isdigit():
        return int(value)
    raise CheckpointDecodeError.from_details(details=f"missing integer `{field}`")


def _coerce_optional_str(*, value: object, field: str) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    raise CheckpointDecodeError.from_details(details=f"invalid `{field}` value")


def _coerce_status(*, value: object) -> CheckpointStatus:
    if isinstance(value, str):
        try:
            return CheckpointStatus(value)
        except ValueError:
            pass
    raise CheckpointDecodeError.from_details(details=f"invalid status {value!r}")


def _coerce_datetime(*, value: object) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        candidate = f"{value[:-1]}+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(candidate)
        except ValueError as exc:
            raise CheckpointDecodeError.from_details(
                details="invalid last_checkpoint value",
            ) from exc
    else:
        raise CheckpointDecodeError.from_details(details="missing last_checkpoint")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()
