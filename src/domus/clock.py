"""UTC time helpers shared by the record store and the sync engine.

All timestamps are timezone-aware UTC, in memory and when bound to a column.
Values read back from SQLite may come out naive and are re-tagged with
ensure_utc.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Tag naive datetimes as UTC and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (trailing "Z" allowed) or datetime into aware UTC.

    Returns None for None, empty strings and values that are not timestamps.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def format_timestamp(value: datetime) -> str:
    """ISO-8601 in UTC with a "Z" suffix, e.g. 2025-01-15T07:30:00.250000Z."""
    return ensure_utc(value).isoformat().replace("+00:00", "Z")


def generate_id(prefix: str) -> str:
    """Stable record id of the form "<prefix>_<uuid4>"."""
    return f"{prefix}_{uuid.uuid4()}"
