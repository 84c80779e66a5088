"""Typed ingestion settings loaded from static environment variables."""

from __future__ import annotations

import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping

LogLevel = str

ENV_DB_PATH = "DSYNC_DB_PATH"
ENV_LOG_LEVEL = "DSYNC_LOG_LEVEL"
ENV_API_BASE_URL = "DSYNC_API_BASE_URL"
ENV_API_KEY = "DSYNC_API_KEY"
ENV_WORKER_COUNT = "DSYNC_WORKER_COUNT"
ENV_PAGE_SIZE = "DSYNC_PAGE_SIZE"
ENV_TOTAL_EVENTS = "DSYNC_TOTAL_EVENTS"
ENV_LATEST_EVENT_TS = "DSYNC_LATEST_EVENT_TS"
ENV_RANGE_DAYS = "DSYNC_RANGE_DAYS"
ENV_MAX_RETRIES = "DSYNC_MAX_RETRIES"
ENV_RETRY_BASE_SECONDS = "DSYNC_RETRY_BASE_SECONDS"
ENV_RETRY_MAX_SECONDS = "DSYNC_RETRY_MAX_SECONDS"
ENV_TOKEN_REFRESH_SECONDS = "DSYNC_TOKEN_REFRESH_SECONDS"  # noqa: S105
ENV_REQUEST_TIMEOUT_SECONDS = "DSYNC_REQUEST_TIMEOUT_SECONDS"
ENV_RATE_PER_SECOND = "DSYNC_RATE_PER_SECOND"
ENV_RATE_BURST = "DSYNC_RATE_BURST"
ENV_GAP_FILL_RATE_PER_SECOND = "DSYNC_GAP_FILL_RATE_PER_SECOND"
ENV_GAP_FILL_BURST = "DSYNC_GAP_FILL_BURST"
ENV_GAP_FILL_SLACK = "DSYNC_GAP_FILL_SLACK"
ENV_WORKER_STAGGER_SECONDS = "DSYNC_WORKER_STAGGER_SECONDS"
ENV_PROGRESS_INTERVAL_SECONDS = "DSYNC_PROGRESS_INTERVAL_SECONDS"

DEFAULT_DB_PATH = Path("/data/dsync.db")
DEFAULT_LOG_LEVEL: LogLevel = "INFO"
DEFAULT_API_BASE_URL = "http://localhost:8080"
DEFAULT_API_KEY = ""
DEFAULT_WORKER_COUNT = 20
DEFAULT_PAGE_SIZE = 5000
DEFAULT_TOTAL_EVENTS = 3_000_000
DEFAULT_LATEST_EVENT_TS = 1_769_541_612_369
DEFAULT_RANGE_DAYS = 31
DEFAULT_MAX_RETRIES = 5
DEFAULT_RETRY_BASE_SECONDS = 1.0
DEFAULT_RETRY_MAX_SECONDS = 30.0
DEFAULT_TOKEN_REFRESH_SECONDS = 240
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0
DEFAULT_RATE_PER_SECOND = 0.7
DEFAULT_RATE_BURST = 15
DEFAULT_GAP_FILL_RATE_PER_SECOND = 0.5
DEFAULT_GAP_FILL_BURST = 3
DEFAULT_GAP_FILL_SLACK = 10_000
DEFAULT_WORKER_STAGGER_SECONDS = 0.25
DEFAULT_PROGRESS_INTERVAL_SECONDS = 5.0

VALID_LOG_LEVELS: frozenset[LogLevel] = frozenset(
    {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"},
)


class SettingsValidationError(ValueError):
    """Raised when static settings env vars contain invalid values."""

    @classmethod
    def for_empty_value(cls, env_var: str) -> SettingsValidationError:
        """Build error for empty non-optional env var values."""
        message = f"Invalid {env_var}: value cannot be empty."
        return cls(message)

    @classmethod
    def for_invalid_choice(
        cls,
        env_var: str,
        value: str,
        allowed_values: str,
    ) -> SettingsValidationError:
        """Build error for enum-like env vars with fixed allowlists."""
        message = f"Invalid {env_var}: {value!r}. Allowed values: {allowed_values}."
        return cls(message)

    @classmethod
    def for_invalid_number(
        cls,
        env_var: str,
        value: str,
        requirement: str,
    ) -> SettingsValidationError:
        """Build error for numeric env vars outside their allowed range."""
        message = f"Invalid {env_var}: {value!r}. Expected {requirement}."
        return cls(message)


@dataclass(frozen=True, slots=True)
class AppSettings:
    """Resolved static configuration values for one ingestion run."""

    db_path: Path
    log_level: LogLevel
    api_base_url: str
    api_key: str
    worker_count: int
    page_size: int
    total_events: int
    latest_event_ts: int
    range_days: int
    max_retries: int
    retry_base_seconds: float
    retry_max_seconds: float
    token_refresh_seconds: int
    request_timeout_seconds: float
    rate_per_second: float
    rate_burst: int
    gap_fill_rate_per_second: float
    gap_fill_burst: int
    gap_fill_slack: int
    worker_stagger_seconds: float
    progress_interval_seconds: float


def load_settings(environ: Mapping[str, str] | None = None) -> AppSettings:
    """Load and validate static settings from process environment."""
    env = os.environ if environ is None else environ

    return AppSettings(
        db_path=_read_db_path(env),
        log_level=_read_log_level(env),
        api_base_url=_read_base_url(env),
        api_key=env.get(ENV_API_KEY, DEFAULT_API_KEY).strip(),
        worker_count=_read_int(env, ENV_WORKER_COUNT, DEFAULT_WORKER_COUNT),
        page_size=_read_int(env, ENV_PAGE_SIZE, DEFAULT_PAGE_SIZE),
        total_events=_read_int(env, ENV_TOTAL_EVENTS, DEFAULT_TOTAL_EVENTS),
        latest_event_ts=_read_int(env, ENV_LATEST_EVENT_TS, DEFAULT_LATEST_EVENT_TS),
        range_days=_read_int(env, ENV_RANGE_DAYS, DEFAULT_RANGE_DAYS),
        max_retries=_read_int(env, ENV_MAX_RETRIES, DEFAULT_MAX_RETRIES),
        retry_base_seconds=_read_float(
            env,
            ENV_RETRY_BASE_SECONDS,
            DEFAULT_RETRY_BASE_SECONDS,
        ),
        retry_max_seconds=_read_float(
            env,
            ENV_RETRY_MAX_SECONDS,
            DEFAULT_RETRY_MAX_SECONDS,
        ),
        token_refresh_seconds=_read_int(
            env,
            ENV_TOKEN_REFRESH_SECONDS,
            DEFAULT_TOKEN_REFRESH_SECONDS,
        ),
        request_timeout_seconds=_read_float(
            env,
            ENV_REQUEST_TIMEOUT_SECONDS,
            DEFAULT_REQUEST_TIMEOUT_SECONDS,
        ),
        rate_per_second=_read_float(env, ENV_RATE_PER_SECOND, DEFAULT_RATE_PER_SECOND),
        rate_burst=_read_int(env, ENV_RATE_BURST, DEFAULT_RATE_BURST),
        gap_fill_rate_per_second=_read_float(
            env,
            ENV_GAP_FILL_RATE_PER_SECOND,
            DEFAULT_GAP_FILL_RATE_PER_SECOND,
        ),
        gap_fill_burst=_read_int(env, ENV_GAP_FILL_BURST, DEFAULT_GAP_FILL_BURST),
        gap_fill_slack=_read_int(
            env,
            ENV_GAP_FILL_SLACK,
            DEFAULT_GAP_FILL_SLACK,
            allow_zero=True,
        ),
        worker_stagger_seconds=_read_float(
            env,
            ENV_WORKER_STAGGER_SECONDS,
            DEFAULT_WORKER_STAGGER_SECONDS,
            allow_zero=True,
        ),
        progress_interval_seconds=_read_float(
            env,
            ENV_PROGRESS_INTERVAL_SECONDS,
            DEFAULT_PROGRESS_INTERVAL_SECONDS,
        ),
    )


def _read_db_path(environ: Mapping[str, str]) -> Path:
    raw = environ.get(ENV_DB_PATH)
    if raw is None:
        return DEFAULT_DB_PATH
    value = raw.strip()
    if not value:
        raise SettingsValidationError.for_empty_value(ENV_DB_PATH)
    return Path(value).expanduser()


def _read_log_level(environ: Mapping[str, str]) -> LogLevel:
    raw = environ.get(ENV_LOG_LEVEL)
    if raw is None:
        return DEFAULT_LOG_LEVEL
    value = raw.strip().upper()
    if value in VALID_LOG_LEVELS:
        return value
    allowed = ", ".join(sorted(VALID_LOG_LEVELS))
    raise SettingsValidationError.for_invalid_choice(ENV_LOG_LEVEL, raw, allowed)


def _read_base_url(environ: Mapping[str, str]) -> str:
    raw = environ.get(ENV_API_BASE_URL)
    if raw is None:
        return DEFAULT_API_BASE_URL
    value = raw.strip().rstrip("/")
    if not value:
        raise SettingsValidationError.for_empty_value(ENV_API_BASE_URL)
    return value


def _read_int(
    environ: Mapping[str, str],
    env_var: str,
    default: int,
    *,
    allow_zero: bool = False,
) -> int:
    raw = environ.get(env_var)
    if raw is None:
        return default
    value = raw.strip()
    if not value:
        raise SettingsValidationError.for_empty_value(env_var)
    requirement = "a non-negative integer" if allow_zero else "a positive integer"
    try:
        parsed = int(value)
    except ValueError as exc:
        raise SettingsValidationError.for_invalid_number(
            env_var,
            raw,
            requirement,
        ) from exc
    if parsed < 0 or (parsed == 0 and not allow_zero):
        raise SettingsValidationError.for_invalid_number(env_var, raw, requirement)
    return parsed


def _read_float(
    environ: Mapping[str, str],
    env_var: str,
    default: float,
    *,
    allow_zero: bool = False,
) -> float:
    raw = environ.get(env_var)
    if raw is None:
        return default
    value = raw.strip()
    if not value:
        raise SettingsValidationError.for_empty_value(env_var)
    requirement = "a non-negative number" if allow_zero else "a positive number"
    try:
        parsed = float(value)
    except ValueError as exc:
        raise SettingsValidationError.for_invalid_number(
            env_var,
            raw,
            requirement,
        ) from exc
    if not math.isfinite(parsed) or parsed < 0 or (parsed == 0 and not allow_zero):
        raise SettingsValidationError.for_invalid_number(env_var, raw, requirement)
    return parsed
