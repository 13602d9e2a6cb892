"""Datetime utility functions for consistent timezone handling."""

from datetime import datetime, timezone
from typing import Optional


def get_current_utc_datetime() -> datetime:
    """
    Get current datetime in UTC timezone.

    Returns:
        datetime: Current UTC datetime with timezone info

    Example:
        >>> now = get_current_utc_datetime()
        >>> now.tzinfo
        datetime.timezone.utc
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Attach UTC to naive datetimes read back from the database.

    Some backends (SQLite) drop tzinfo on ``DateTime(timezone=True)`` columns,
    which makes comparisons with aware datetimes raise ``TypeError``.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def minutes_between(start: Optional[datetime], end: Optional[datetime]) -> Optional[float]:
    start, end = ensure_utc(start), ensure_utc(end)
    if not start or not end:
        return None
    return (end - start).total_seconds() / 60.0
