# coding: utf-8
"""
Date helpers for billing periods
"""
import calendar
from datetime import datetime, UTC
from typing import Optional


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (as returned by SQLite) as UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def add_months(value: datetime, months: int) -> datetime:
    """
    Calendar month arithmetic, clamping the day to the target month

    Jan 31 + 1 month = Feb 28 (or 29).
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def months_between(start: datetime, end: datetime) -> int:
    """Whole calendar months from start to end, rounded to the nearest month"""
    start, end = ensure_utc(start), ensure_utc(end)
    months = (end.year - start.year) * 12 + (end.month - start.month)
    if add_months(start, months) > end:
        months -= 1
    # Round up when more than half of the next month is covered
    remainder = end - add_months(start, months)
    next_span = add_months(start, months + 1) - add_months(start, months)
    if remainder * 2 > next_span:
        months += 1
    return months
