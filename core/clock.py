"""
core/clock.py -- UTC timestamp helpers shared by the SQL stores.

Timestamps are persisted as fixed-width ISO 8601 strings
("YYYY-MM-DDTHH:MM:SS.ffffff+00:00", always 32 chars, always UTC). Fixed width
makes lexicographic order equal chronological order, so expiry comparisons
such as valid_until > :now work on SQLite TEXT columns and on PostgreSQL
alike without dialect-specific date types.

Naive datetimes are treated as UTC.
"""

from __future__ import annotations

from datetime import datetime, timezone

_DB_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db(value: datetime | None) -> str | None:
    if value is None:
        return None
    return ensure_utc(value).strftime(_DB_FORMAT)


def from_db(value: str | None) -> datetime | None:
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Accept an ISO date/datetime string (or datetime) from API or CLI input."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
