"""Structured logging configuration and initialization."""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, cast, override

if TYPE_CHECKING:
    from dsync.config.settings import LogLevel

# One id per ingestion run; worker tasks additionally bind their partition id.
run_id: ContextVar[str | None] = ContextVar("run_id", default=None)
worker_id: ContextVar[int | None] = ContextVar("worker_id", default=None)

_STANDARD_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
    },
)


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON tagged with run/worker context."""

    @override
    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as a JSON string."""
        log_data: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(
                record.created,
                tz=UTC,
            ).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "run_id": run_id.get(),
            "worker_id": worker_id.get(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if record.stack_info:
            log_data["stack_trace"] = self.formatStack(record.stack_info)

        protected_attrs = set(log_data.keys())
        record_dict = cast("dict[str, object]", record.__dict__)
        for key, value in record_dict.items():
            if key in _STANDARD_RECORD_ATTRS or key.startswith("_"):
                continue
            if key in protected_attrs:
                log_data[f"extra_{key}"] = value
                continue
            log_data[key] = value

        return json.dumps(log_data, default=str)


def init_logging(level: LogLevel) -> None:
    """Initialize structured logging for the ingestion process."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Keep pytest's capture handler so caplog keeps working under tests.
    for h in root_logger.handlers[:]:
        if type(h).__name__ != "LogCaptureHandler":
            root_logger.removeHandler(h)

    root_logger.addHandler(handler)
