"""Time helpers: naive-UTC storage timestamps and upstream date parsing."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
import time as _time

__all__ = [
    "from_epoch_ms",
    "monotonic_ms",
    "now_utc",
    "parse_upstream_timestamp",
    "to_epoch_ms",
    "utcnow",
]

_EPOCH = datetime(1970, 1, 1)


def now_utc() -> datetime:
    """Return the current UTC time with timezone information."""

    return datetime.now(UTC)


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime, the storage convention."""

    return now_utc().replace(tzinfo=None)


def monotonic_ms() -> int:
    return _time.monotonic_ns() // 1_000_000


def to_epoch_ms(value: datetime) -> int:
    if value.tzinfo is not None:
        value = value.astimezone(UTC).replace(tzinfo=None)
    return (value - _EPOCH) // timedelta(milliseconds=1)


def from_epoch_ms(value: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=int(value))


def parse_upstream_timestamp(value: object) -> datetime | None:
    """Parse an ISO-8601 timestamp from the catalog API into naive UTC.

    Returns ``None`` for missing or unparseable values (the upstream reports
    ``added_at`` as null for very old playlist entries).
    """

    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(UTC).replace(tzinfo=None)
    return parsed
