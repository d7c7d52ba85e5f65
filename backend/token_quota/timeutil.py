"""
UTC time helpers.

Timestamps are stored as ISO strings with fixed microsecond precision so
that string comparison in MongoDB filters matches chronological order.
"""

from datetime import date, datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Normalise to UTC and format with a fixed width."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value) -> Optional[datetime]:
    """Parse a stored timestamp. Naive values are treated as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def utc_date_str(value: datetime) -> str:
    """UTC calendar date as YYYY-MM-DD."""
    return parse_iso(value).astimezone(timezone.utc).date().isoformat()


def parse_date(value) -> Optional[date]:
    if not value:
        return None
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    return date.fromisoformat(str(value)[:10])
