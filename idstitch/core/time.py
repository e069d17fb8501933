"""idstitch.core.time

Event time is what the client says. Ingest time is what the clock says.

This module is the *only* time helper surface in the codebase.
"""

from __future__ import annotations

import math
from datetime import UTC, datetime

# Epoch values above this are treated as milliseconds (year 5138 in seconds).
_MILLIS_THRESHOLD = 100_000_000_000


def utc_now() -> datetime:
    """Return an aware UTC datetime."""

    return datetime.now(tz=UTC)


def parse_dt(value: str) -> datetime:
    """Parse an ISO-8601 datetime string into an aware UTC datetime.

    Accepts:
    - `Z` suffix
    - explicit offsets
    - naive timestamps (assumed UTC)

    Raises:
        ValueError: if parsing fails.
    """

    v = value.strip()
    if v.endswith("Z"):
        v = v[:-1] + "+00:00"

    dt = datetime.fromisoformat(v)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_iso(dt: datetime) -> str:
    """Render a datetime as fixed-precision UTC ISO-8601.

    Fixed precision keeps lexical order equal to time order in the store.
    """

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def from_epoch(value: object) -> datetime:
    """Convert a Unix epoch value (seconds, or milliseconds) to aware UTC.

    Raises:
        ValueError: if the value is not a finite, non-negative number.
    """

    if isinstance(value, bool):
        raise ValueError("epoch must be a number, not a boolean")
    if isinstance(value, str):
        value = float(value.strip())
    if not isinstance(value, int | float):
        raise ValueError(f"epoch must be a number, got {type(value).__name__}")

    try:
        seconds = float(value)
    except OverflowError as e:
        raise ValueError("epoch out of range: too large") from e
    if not math.isfinite(seconds) or seconds < 0:
        raise ValueError(f"epoch out of range: {value!r}")
    if seconds >= _MILLIS_THRESHOLD:
        seconds = seconds / 1000.0

    try:
        return datetime.fromtimestamp(seconds, tz=UTC)
    except (OverflowError, OSError) as e:
        raise ValueError(f"epoch out of range: {value!r}") from e
