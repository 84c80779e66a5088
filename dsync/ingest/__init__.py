"""Partitioned concurrent ingestion engine."""

from .credentials import CredentialBroker
from .fetcher import PageFetcher
from .gap_fill import GAP_FILL_WORKER_ID, GapFill
from .orchestrator import (
    EventCounter,
    IngestionOrchestrator,
    IngestionReport,
    WorkerOutcome,
    apply_checkpoints,
)
from .partitions import DAY_MS, Partition, plan_partitions
from .persistence import QueuedCheckpointStore, QueuedEventSink
from .progress import ProgressReporter, ProgressSnapshot, format_line
from .rate_limiter import RateLimiter, RateLimiterState
from .retry import RetryPolicy, credential_retry_policy, fetch_retry_policy
from .single_flight import SingleFlight
from .worker import (
    CheckpointStore,
    EventSink,
    ProgressCallback,
    WorkerEngine,
    WorkerState,
    reset_cursor_ts,
)

__all__ = [
    "DAY_MS",
    "GAP_FILL_WORKER_ID",
    "CheckpointStore",
    "CredentialBroker",
    "EventCounter",
    "EventSink",
    "GapFill",
    "IngestionOrchestrator",
    "IngestionReport",
    "PageFetcher",
    "Partition",
    "ProgressCallback",
    "ProgressReporter",
    "ProgressSnapshot",
    "QueuedCheckpointStore",
    "QueuedEventSink",
    "RateLimiter",
    "RateLimiterState",
    "RetryPolicy",
    "SingleFlight",
    "WorkerEngine",
    "WorkerOutcome",
    "WorkerState",
    "apply_checkpoints",
    "credential_retry_policy",
    "fetch_retry_policy",
    "format_line",
    "plan_partitions",
    "reset_cursor_ts",
]
