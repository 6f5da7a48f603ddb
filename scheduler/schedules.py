"""
Schedule Descriptors for the job_analytics Scheduler

Job schedules use six-field expressions:

    second minute hour day-of-month month day-of-week

Only a small vocabulary is understood. Each expression is parsed once,
when the job configuration is loaded, into a typed descriptor:

    0 */15 * * * *   -> Every('minute', 15)
    0 0 1 * * *      -> DailyAt(hour=1)
    0 0 2 * * 1      -> WeeklyAt(weekday=1, hour=2)     (0 = Sunday)
    0 0 3 1 * *      -> MonthlyOnDay(day=1, hour=3)
    anything else    -> Fallback()                      (top of the next hour)

Next-run computation is then a pure function of (descriptor, now) and is
always strictly after now.

Usage:
    from scheduler.schedules import parse_schedule, compute_next_run

    descriptor = parse_schedule("0 */15 * * * *")
    next_run = compute_next_run(descriptor, datetime.now())
"""

import calendar
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

_STEP = re.compile(r"^\*/(\d+)$")
_NUMBER = re.compile(r"^\d+$")

CRON_WEEKDAYS = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


@dataclass(frozen=True)
class Every:
    """Every n minutes, aligned to multiples of n within the hour."""

    unit: str
    n: int

    @property
    def quantum(self) -> timedelta:
        return timedelta(minutes=self.n)

    def next_after(self, now: datetime) -> datetime:
        base = now.replace(second=0, microsecond=0)
        aligned = base.replace(minute=(base.minute // self.n) * self.n)
        return aligned + self.quantum

    def describe(self) -> str:
        return f"every {self.n} minutes"


@dataclass(frozen=True)
class DailyAt:
    hour: int
    minute: int = 0

    quantum = timedelta(hours=1)

    def next_after(self, now: datetime) -> datetime:
        candidate = now.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate

    def describe(self) -> str:
        return f"daily at {self.hour:02d}:{self.minute:02d}"


@dataclass(frozen=True)
class WeeklyAt:
    """Weekly on a cron weekday (0 = Sunday ... 6 = Saturday)."""

    weekday: int
    hour: int
    minute: int = 0

    quantum = timedelta(hours=1)

    def next_after(self, now: datetime) -> datetime:
        # datetime.weekday(): Monday = 0
        target = (self.weekday - 1) % 7
        candidate = now.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        candidate += timedelta(days=(target - now.weekday()) % 7)
        if candidate <= now:
            candidate += timedelta(days=7)
        return candidate

    def describe(self) -> str:
        return f"weekly on {CRON_WEEKDAYS[self.weekday]} at {self.hour:02d}:{self.minute:02d}"


@dataclass(frozen=True)
class MonthlyOnDay:
    """Monthly on a day of the month; months without that day are skipped."""

    day: int
    hour: int
    minute: int = 0

    quantum = timedelta(hours=1)

    def next_after(self, now: datetime) -> datetime:
        year, month = now.year, now.month
        while True:
            if self.day <= calendar.monthrange(year, month)[1]:
                candidate = datetime(year, month, self.day, self.hour, self.minute)
                if candidate > now:
                    return candidate
            month += 1
            if month > 12:
                year, month = year + 1, 1

    def describe(self) -> str:
        return f"monthly on day {self.day} at {self.hour:02d}:{self.minute:02d}"


@dataclass(frozen=True)
class Fallback:
    """Unrecognized expression: run at the top of the next hour."""

    expression: str = ""

    quantum = timedelta(hours=1)

    def next_after(self, now: datetime) -> datetime:
        return now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)

    def describe(self) -> str:
        return f"hourly (unrecognized schedule '{self.expression}')"


Schedule = Union[Every, DailyAt, WeeklyAt, MonthlyOnDay, Fallback]


def _int_field(value: str, low: int, high: int) -> Optional[int]:
    if not _NUMBER.match(value):
        return None
    number = int(value)
    return number if low <= number <= high else None


def parse_schedule(expression: str) -> Schedule:
    """
    Parse a six-field schedule expression into a descriptor.

    Never raises: anything outside the supported vocabulary becomes Fallback.
    """
    fields = (expression or "").split()
    if len(fields) != 6 or fields[0] != "0" or fields[4] != "*":
        return Fallback(expression)

    _, minute_field, hour_field, day_field, _, weekday_field = fields

    step = _STEP.match(minute_field)
    if step:
        n = int(step.group(1))
        if 0 < n < 60 and 60 % n == 0 and (hour_field, day_field, weekday_field) == ("*", "*", "*"):
            return Every("minute", n)
        return Fallback(expression)

    minute = _int_field(minute_field, 0, 59)
    hour = _int_field(hour_field, 0, 23)
    if minute is None or hour is None:
        return Fallback(expression)

    if day_field == "*" and weekday_field == "*":
        return DailyAt(hour, minute)

    if day_field == "*":
        weekday = _int_field(weekday_field, 0, 7)
        if weekday is not None:
            return WeeklyAt(weekday % 7, hour, minute)

    if weekday_field == "*":
        day = _int_field(day_field, 1, 31)
        if day is not None:
            return MonthlyOnDay(day, hour, minute)

    return Fallback(expression)


def compute_next_run(descriptor: Schedule, now: datetime) -> datetime:
    """
    Next run strictly after now.

    A candidate at or before now is advanced by the descriptor's quantum
    (15 / 30 minutes for interval schedules, 1 hour otherwise).
    """
    candidate = descriptor.next_after(now)
    while candidate <= now:
        candidate += descriptor.quantum
    return candidate
