"""Timestamp conversions used by the persisted documents.

Mapping entries keep ``serverModified``/``localModifiedAtDownload`` as ISO-8601
strings, while ``lastUpdated``/``createdAt``/``lastScan`` are epoch milliseconds.
In memory every timestamp is a timezone-aware UTC datetime.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime


def utc_now() -> datetime:
    """Get the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def now_ms() -> int:
    """Get the current time in epoch milliseconds."""
    return int(time.time() * 1000)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_timestamp(value: str | int | float | None) -> datetime | None:
    """Parse an ISO-8601 string or epoch milliseconds into a UTC datetime.

    Returns:
        Parsed datetime, or None for empty or unparseable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, int | float):
        return datetime.fromtimestamp(value / 1000, UTC)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def format_timestamp(value: datetime | None) -> str | None:
    """Format a datetime as ISO-8601 with millisecond precision."""
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def diff_ms(later: datetime, earlier: datetime) -> float:
    """Get ``later - earlier`` in milliseconds."""
    return (ensure_utc(later) - ensure_utc(earlier)).total_seconds() * 1000


def mtime_datetime(mtime: float) -> datetime:
    """Convert a ``st_mtime`` value to a UTC datetime."""
    return datetime.fromtimestamp(mtime, UTC)
