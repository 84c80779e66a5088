"""Storage module for dsync."""

from .checkpoints_repo import (
    Checkpoint,
    CheckpointCompletedError,
    CheckpointDecodeError,
    CheckpointsRepository,
    CheckpointsRepositoryError,
    CheckpointStatus,
)
from .db import (
    StorageRuntime,
    build_sqlite_url,
    create_session_factory,
    create_storage_runtime,
    dispose_storage_runtime,
)
from .events_repo import EventsRepository, EventsRepositoryError
from .schema import create_schema
from .writer_queue import (
    WriterQueue,
    WriterQueueClosedError,
    WriterQueueProtocol,
)

__all__ = [
    "Checkpoint",
    "CheckpointCompletedError",
    "CheckpointDecodeError",
    "CheckpointStatus",
    "CheckpointsRepository",
    "CheckpointsRepositoryError",
    "EventsRepository",
    "EventsRepositoryError",
    "StorageRuntime",
    "WriterQueue",
    "WriterQueueClosedError",
    "WriterQueueProtocol",
    "build_sqlite_url",
    "create_schema",
    "create_session_factory",
    "create_storage_runtime",
    "dispose_storage_runtime",
]
