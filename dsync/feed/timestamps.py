"""Normalization of heterogeneous feed timestamps to UTC instants."""

from __future__ import annotations

import math
from collections.abc import Callable
from datetime import UTC, datetime

TimeProvider = Callable[[], datetime]

# Numeric values below this are epoch seconds, otherwise epoch milliseconds.
SECONDS_THRESHOLD = 10_000_000_000
# Representable range: 0001-01-01T00:00:00Z to 9999-12-31T23:59:59.999Z.
MIN_MILLIS = -62_135_596_800_000
MAX_MILLIS = 253_402_300_799_999


def _utc_now() -> datetime:
    return datetime.now(UTC)


def timestamp_ms(value: object, *, time_provider: TimeProvider | None = None) -> int:
    """Return epoch milliseconds for a numeric or string feed timestamp."""
    millis = _coerce_millis(value)
    if millis is None:
        now = _utc_now() if time_provider is None else time_provider()
        return int(now.timestamp() * 1000)
    return millis


def normalize_timestamp(
    value: object,
    *,
    time_provider: TimeProvider | None = None,
) -> datetime:
    """Return a timezone-aware UTC datetime; unparsable input maps to now."""
    millis = _coerce_millis(value)
    if millis is not None:
        try:
            return datetime.fromtimestamp(millis / 1000, tz=UTC)
        except (OverflowError, OSError, ValueError):
            # Platform time_t limits can be narrower than MIN_MILLIS..MAX_MILLIS.
            pass
    now = _utc_now() if time_provider is None else time_provider()
    return now.astimezone(UTC)


def _coerce_millis(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return _numeric_millis(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        # Digit-only strings are also valid ISO basic dates, so numbers win.
        try:
            number = float(text)
        except ValueError:
            pass
        else:
            return _numeric_millis(number)
        parsed = _parse_datetime(text)
        if parsed is None:
            return None
        return int(parsed.timestamp() * 1000)
    return None


def _numeric_millis(value: float) -> int | None:
    if not math.isfinite(value):
        return None
    millis = int(value * 1000) if value < SECONDS_THRESHOLD else int(value)
    if not MIN_MILLIS <= millis <= MAX_MILLIS:
        return None
    return millis


def _parse_datetime(text: str) -> datetime | None:
    candidate = f"{text[:-1]}+00:00" if text.endswith(("Z", "z")) else text
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
