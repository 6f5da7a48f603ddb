"""
Shared Utilities for job_analytics

This module provides common helpers used across the analytics components:
- Date range parsing and period windows
- Period bucket boundaries (daily / weekly / monthly)
- Safe numeric conversion

Usage:
    from analytics.utils import DateRange, previous_period_range, safe_float
"""

import calendar
import json
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional, Tuple, Union

DateLike = Union[str, date, datetime]

PERIOD_TYPES = ("daily", "weekly", "monthly")


# ============================================
# Date Parsing
# ============================================

def parse_datetime(value: DateLike) -> datetime:
    """
    Convert a string, date or datetime into a naive datetime.

    Strings may be YYYY-MM-DD or any ISO-8601 timestamp. Timezone-aware
    values are converted to local time and made naive so they compare
    with the rest of the scheduler's clock.
    """
    if isinstance(value, datetime):
        result = value
    elif isinstance(value, date):
        result = datetime.combine(value, time.min)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        result = datetime.fromisoformat(text)
    else:
        raise TypeError(f"Unsupported date value: {value!r}")

    if result.tzinfo is not None:
        result = result.astimezone().replace(tzinfo=None)
    return result


def _is_date_only(value: DateLike) -> bool:
    if isinstance(value, datetime):
        return False
    if isinstance(value, date):
        return True
    return isinstance(value, str) and len(value.strip()) == 10


@dataclass(frozen=True)
class DateRange:
    """
    Inclusive [start, end] time window.

    A date-only end (YYYY-MM-DD or a date) covers that whole day.
    """

    start: datetime
    end: datetime

    @classmethod
    def from_values(cls, start: DateLike, end: DateLike) -> "DateRange":
        start_dt = parse_datetime(start)
        end_dt = parse_datetime(end)
        if _is_date_only(end):
            end_dt = datetime.combine(end_dt.date(), time.max)
        if end_dt < start_dt:
            raise ValueError(f"Date range end {end_dt} is before start {start_dt}")
        return cls(start_dt, end_dt)

    @classmethod
    def last_days(cls, days: int, now: Optional[datetime] = None) -> "DateRange":
        """Trailing window of `days` days ending at now."""
        now = now or datetime.now()
        return cls(now - timedelta(days=days), now)

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


def coerce_range(date_range: Any) -> Optional[DateRange]:
    """Accept a DateRange, a {'start','end'} mapping, a (start, end) tuple or None."""
    if date_range is None or isinstance(date_range, DateRange):
        return date_range
    if isinstance(date_range, dict):
        return DateRange.from_values(date_range["start"], date_range["end"])
    start, end = date_range
    return DateRange.from_values(start, end)


# ============================================
# Period Buckets
# ============================================

def period_bounds(recorded_at: datetime, period_type: str) -> Tuple[date, date]:
    """
    Return the (period_start, period_end) dates of the bucket holding recorded_at.

    daily   - the calendar day
    weekly  - the Sunday-to-Saturday week
    monthly - the calendar month
    """
    day = recorded_at.date()

    if period_type == "daily":
        return day, day
    if period_type == "weekly":
        # Monday=0 .. Sunday=6, weeks start on Sunday
        start = day - timedelta(days=(day.weekday() + 1) % 7)
        return start, start + timedelta(days=6)
    if period_type == "monthly":
        last_day = calendar.monthrange(day.year, day.month)[1]
        return day.replace(day=1), day.replace(day=last_day)

    raise ValueError(f"Unsupported period type: {period_type}")


def previous_period_range(period_type: str, now: Optional[datetime] = None) -> DateRange:
    """
    Window processed by a scheduled aggregation run.

    daily   - yesterday
    weekly  - the last full Sunday-to-Saturday week
    monthly - the last full calendar month
    """
    today = (now or datetime.now()).date()

    if period_type == "daily":
        yesterday = today - timedelta(days=1)
        return DateRange.from_values(yesterday, yesterday)
    if period_type == "weekly":
        this_week_start, _ = period_bounds(datetime.combine(today, time.min), "weekly")
        last_week_start = this_week_start - timedelta(days=7)
        return DateRange.from_values(last_week_start, last_week_start + timedelta(days=6))
    if period_type == "monthly":
        last_month_end = today.replace(day=1) - timedelta(days=1)
        return DateRange.from_values(last_month_end.replace(day=1), last_month_end)

    raise ValueError(f"Unsupported period type: {period_type}")


def closed_days(date_range: DateRange, now: Optional[datetime] = None) -> List[date]:
    """
    Whole calendar days touched by date_range that have already ended.

    Daily snapshot metrics (report totals, referral counts) are only final
    once their day is over, so sync jobs emit them for closed days only.
    """
    today = (now or datetime.now()).date()
    first = date_range.start.date()
    last = min(date_range.end.date(), today - timedelta(days=1))

    days = []
    current = first
    while current <= last:
        days.append(current)
        current += timedelta(days=1)
    return days


# ============================================
# Data Transformation Utilities
# ============================================

def safe_int(value, default: int = 0) -> int:
    """
    Safely convert a value to int.

    Args:
        value: Value to convert
        default: Default if conversion fails

    Returns:
        Integer value or default
    """
    try:
        return int(float(value)) if value is not None else default
    except (ValueError, TypeError):
        return default


def safe_float(value, default: float = 0.0) -> float:
    """
    Safely convert a value to float.

    Args:
        value: Value to convert
        default: Default if conversion fails

    Returns:
        Float value or default
    """
    try:
        return float(value) if value is not None else default
    except (ValueError, TypeError):
        return default


def dumps_json(value: Any) -> Optional[str]:
    """Serialize a JSON column value, keeping None as NULL."""
    if value is None:
        return None
    return json.dumps(value, default=str, sort_keys=True)


def loads_json(value: Optional[str], default: Any = None) -> Any:
    if value is None or value == "":
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default
