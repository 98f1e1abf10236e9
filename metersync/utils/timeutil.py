"""UTC time helpers."""

from datetime import datetime

import pytz


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(pytz.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return pytz.utc.localize(value)
    return value.astimezone(pytz.utc)


def to_display(value: datetime, zone: str) -> str:
    """ISO-8601 rendering of ``value`` in the named display timezone."""
    return ensure_utc(value).astimezone(pytz.timezone(zone)).isoformat()
