"""Versioned encode/decode of fabricated feed pagination cursors.

The feed's cursors are base64-encoded compact JSON objects carrying a record
identity, a position timestamp in milliseconds, a format version and an
absolute expiry. Fabricating one lets a worker enter the feed at an arbitrary
historical position instead of paginating down from the newest record.

The layout is not published by the feed. Keep every assumption about it in
this module and bump ``CURSOR_FORMAT_VERSION`` when the upstream format moves.
"""

from __future__ import annotations

import base64
import binascii
import json
import time
from collections.abc import Callable
from dataclasses import dataclass

CURSOR_FORMAT_VERSION = 2
PLACEHOLDER_IDENTITY = "00000000-0000-0000-0000-000000000000"
FABRICATED_CURSOR_TTL_MS = 7_200_000

MillisClock = Callable[[], int]


class CursorFormatError(ValueError):
    """Raised when a cursor token does not match the known wire format."""

    @classmethod
    def from_details(cls, *, details: str) -> CursorFormatError:
        """Build deterministic cursor decode error message."""
        return cls(f"Cursor token invalid: {details}")


@dataclass(slots=True, frozen=True)
class CursorPosition:
    """Decoded contents of a pagination cursor."""

    identity: str
    ts: int
    version: int
    expires_at_ms: int


def current_millis() -> int:
    """Return wall-clock time in epoch milliseconds."""
    return time.time_ns() // 1_000_000


def fabricate_cursor(ts: int, *, clock: MillisClock | None = None) -> str:
    """Encode a cursor positioned at ``ts`` (epoch ms) in the feed's format."""
    now_ms = current_millis() if clock is None else clock()
    payload = {
        "id": PLACEHOLDER_IDENTITY,
        "ts": int(ts),
        "v": CURSOR_FORMAT_VERSION,
        "exp": now_ms + FABRICATED_CURSOR_TTL_MS,
    }
    encoded = json.dumps(payload, separators=(",", ":"), allow_nan=False)
    return base64.b64encode(encoded.encode("utf-8")).decode("ascii")


def decode_cursor(token: str) -> CursorPosition:
    """Decode a cursor token, rejecting unknown versions and malformed payloads."""
    try:
        raw = base64.b64decode(token.encode("ascii"), validate=True)
        decoded = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise CursorFormatError.from_details(details=str(exc)) from exc
    if not isinstance(decoded, dict):
        raise CursorFormatError.from_details(details="payload must be an object")

    version = decoded.get("v")
    if version != CURSOR_FORMAT_VERSION:
        raise CursorFormatError.from_details(
            details=f"unsupported version {version!r}",
        )
    identity = decoded.get("id")
    ts = decoded.get("ts")
    expires_at = decoded.get("exp")
    if not isinstance(identity, str):
        raise CursorFormatError.from_details(details="missing string `id`")
    if not _is_int(ts):
        raise CursorFormatError.from_details(details="missing integer `ts`")
    if not _is_int(expires_at):
        raise CursorFormatError.from_details(details="missing integer `exp`")
    return CursorPosition(
        identity=identity,
        ts=ts,
        version=version,
        expires_at_ms=expires_at,
    )


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
