"""Calendar helpers for usage buckets and billing periods.

All arithmetic is done in UTC.  Naive datetimes (SQLite returns them) are
treated as UTC.
"""

from __future__ import annotations

import calendar
from datetime import UTC, datetime, timedelta
from enum import Enum


class PeriodType(str, Enum):
    """Aggregation bucket sizes."""

    HOURLY = "hourly"
    DAILY = "daily"
    MONTHLY = "monthly"


def ensure_utc(value: datetime) -> datetime:
    """Return *value* as a timezone-aware UTC datetime."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def add_months(value: datetime, months: int) -> datetime:
    """Shift *value* by *months* calendar months, clamping the day.

    ``Jan 31 + 1 month`` yields the last day of February.
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def month_start(value: datetime) -> datetime:
    """First instant of the month containing *value*."""
    return ensure_utc(value).replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def month_bounds(value: datetime) -> tuple[datetime, datetime]:
    """Return ``(start, end)`` of the month containing *value*.

    ``end`` is the last representable instant of the month (one
    microsecond before the next month starts), matching invoice periods.
    """
    start = month_start(value)
    return start, add_months(start, 1) - timedelta(microseconds=1)


def truncate(period_type: PeriodType, value: datetime) -> datetime:
    """Align *value* to the start of its bucket."""
    value = ensure_utc(value)
    if period_type is PeriodType.HOURLY:
        return value.replace(minute=0, second=0, microsecond=0)
    if period_type is PeriodType.DAILY:
        return value.replace(hour=0, minute=0, second=0, microsecond=0)
    return month_start(value)


def bucket_end(period_type: PeriodType, start: datetime) -> datetime:
    """Exclusive end of the bucket beginning at *start*."""
    if period_type is PeriodType.HOURLY:
        return start + timedelta(hours=1)
    if period_type is PeriodType.DAILY:
        return start + timedelta(days=1)
    return add_months(start, 1)


def previous_bucket(period_type: PeriodType, now: datetime) -> datetime:
    """Start of the most recently *closed* bucket before *now*."""
    current = truncate(period_type, now)
    if period_type is PeriodType.HOURLY:
        return current - timedelta(hours=1)
    if period_type is PeriodType.DAILY:
        return current - timedelta(days=1)
    return add_months(current, -1)
