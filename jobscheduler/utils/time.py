"""
Time utilities for schedule evaluation.

Timestamps are stored as tz-aware UTC. Cron expressions are matched
against the wall clock of each job's IANA timezone; this module is the
single conversion point.
"""

from datetime import datetime, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_UTC = timezone.utc


def utcnow() -> datetime:
    """Current instant as a tz-aware UTC datetime."""
    return datetime.now(_UTC)


def ensure_utc(ts: datetime) -> datetime:
    """Validate that a datetime is tz-aware and convert to UTC.

    Args:
        ts: A timezone-aware datetime (any timezone).

    Returns:
        The same instant as a UTC-aware datetime.

    Raises:
        ValueError: If ts is naive (no tzinfo).
    """
    if ts.tzinfo is None:
        raise ValueError(
            "ensure_utc requires a tz-aware datetime, got naive. "
            "Hint: use datetime(..., tzinfo=timezone.utc) for UTC timestamps."
        )
    return ts.astimezone(_UTC)


def resolve_timezone(name: Optional[str]) -> tzinfo:
    """Resolve an IANA timezone name, defaulting to UTC when empty.

    Raises:
        ValueError: If the name is not a known timezone.
    """
    if not name or name.upper() == "UTC":
        return _UTC
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone: {name}") from e
