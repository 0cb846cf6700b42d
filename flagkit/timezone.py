"""
Timezone helpers.

All timestamps are UTC and timezone-aware. Naive datetimes passed in by
callers are assumed to already be UTC.
"""

from datetime import datetime, timezone
from typing import Callable

UTC = timezone.utc

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """
    Get current time in UTC (timezone-aware).

    Always use this instead of datetime.utcnow() which returns
    naive datetime.
    """
    return datetime.now(UTC)


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def format_iso(dt: datetime | None) -> str | None:
    """Format datetime as ISO 8601 with Z suffix."""
    if dt is None:
        return None
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")
