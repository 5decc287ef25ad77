"""UTC time helpers.

The cache layer works in naive UTC datetimes throughout, which is what
DuckDB TIMESTAMP columns round-trip. Aware datetimes only appear at the
edges: incoming query parameters, provider payloads and API responses.
"""

from datetime import datetime, timedelta, timezone
from email.utils import format_datetime, parsedate_to_datetime
from typing import Optional


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert any datetime to naive UTC. Naive input is assumed to be UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_aware_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC tzinfo to a naive UTC datetime (None passes through)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 timestamp into naive UTC.

    Accepts a trailing ``Z`` as well as explicit offsets.

    Raises:
        ValueError: If the string is not a valid timestamp
    """
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    return to_naive_utc(datetime.fromisoformat(text))


def parse_http_date(value: Optional[str]) -> Optional[datetime]:
    """Parse an HTTP date header (RFC 7231 / RFC 2822) into naive UTC.

    Returns None for missing or malformed values.
    """
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    return to_naive_utc(parsed)


def format_http_date(value: datetime) -> str:
    """Format a datetime as an IMF-fixdate (``Mon, 15 Jan 2024 12:00:00 GMT``)."""
    return format_datetime(to_aware_utc(value), usegmt=True)


def floor_hour(value: datetime) -> datetime:
    return value.replace(minute=0, second=0, microsecond=0)


def ceil_hour(value: datetime) -> datetime:
    floored = floor_hour(value)
    if floored == value:
        return floored
    return floored + timedelta(hours=1)

