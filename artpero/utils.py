"""Small date helpers shared by the services."""

import calendar
from datetime import datetime, timezone


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(dt):
    """Normalize a datetime to UTC-aware.

    SQLite returns naive datetimes even for DateTime(timezone=True) columns;
    treat those as UTC so they compare with aware values.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def add_months(dt, months):
    """Calendar-month arithmetic, clamping the day (Jan 31 + 1 -> Feb 28/29)."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)
