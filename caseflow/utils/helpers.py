"""Shared utility functions.

as_utc:          normalise SQLite-naive datetimes before comparing
utcnow:          single source of "now" for services (tests pass ``now=``)
parse_datetime:  query/body parsing, returns None on bad input
parse_date:      date-only variant for disclosure facts
"""

from datetime import date, datetime, timezone


SECONDS_PER_DAY = 86400


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    """Normalise a datetime to UTC-aware regardless of whether SQLite stored it naive.

    SQLite's DateTime columns return naive datetimes; PostgreSQL returns tz-aware.
    Every comparison against ``utcnow()`` goes through this helper so the same
    code works in both environments.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso(dt: datetime | None) -> str | None:
    dt = as_utc(dt)
    return dt.isoformat() if dt else None


def parse_datetime(value):
    """Parse an ISO-8601 datetime (or date) string into an aware UTC datetime.

    Returns None for empty/invalid input. A bare date becomes midnight UTC.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except (ValueError, TypeError):
        return None


def parse_date(value):
    """Parse YYYY-MM-DD (or a datetime string) to a date; None on bad input."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    parsed = parse_datetime(value)
    return parsed.date() if parsed else None
