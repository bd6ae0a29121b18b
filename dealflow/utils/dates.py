"""Date helpers shared by the onboarding, SLA and transaction services."""

import calendar
from datetime import datetime, timezone


def utc(dt: datetime | None) -> datetime | None:
    """Make a naive datetime UTC-aware (no-op if already aware)."""
    if dt is None:
        return None
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def add_months(dt: datetime, months: int) -> datetime:
    """Calendar-month arithmetic, clamping to the last day (Aug 31 + 6 -> Feb 28/29)."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def whole_days_between(start: datetime, end: datetime) -> int:
    """Floor of (end - start) in days; negative when end precedes start."""
    return (utc(end) - utc(start)).days
