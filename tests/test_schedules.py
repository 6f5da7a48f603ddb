"""Tests for schedule parsing and next-run computation."""

from datetime import datetime

import pytest

from scheduler.jobs import default_job_configs
from scheduler.schedules import (
    DailyAt,
    Every,
    Fallback,
    MonthlyOnDay,
    WeeklyAt,
    compute_next_run,
    parse_schedule,
)


@pytest.mark.parametrize(
    "expression, expected",
    [
        ("0 */15 * * * *", Every("minute", 15)),
        ("0 */30 * * * *", Every("minute", 30)),
        ("0 0 1 * * *", DailyAt(1, 0)),
        ("0 0 2 * * 1", WeeklyAt(1, 2, 0)),
        ("0 0 4 * * 0", WeeklyAt(0, 4, 0)),
        ("0 0 4 * * 7", WeeklyAt(0, 4, 0)),
        ("0 0 3 1 * *", MonthlyOnDay(1, 3, 0)),
    ],
)
def test_parse_supported_expressions(expression, expected) -> None:
    assert parse_schedule(expression) == expected


@pytest.mark.parametrize(
    "expression",
    ["", "not a cron", "0 */7 * * * *", "0 0 25 * * *", "0 0 1 1 1 *", "0 0 1 * * 1,3", "*/5 * * * *"],
)
def test_unrecognized_expressions_fall_back(expression) -> None:
    assert isinstance(parse_schedule(expression), Fallback)


def test_every_fifteen_minutes_from_mid_slot() -> None:
    descriptor = parse_schedule("0 */15 * * * *")
    assert compute_next_run(descriptor, datetime(2026, 3, 11, 10, 7, 0)) == datetime(2026, 3, 11, 10, 15)


def test_every_fifteen_minutes_now_is_exclusive() -> None:
    descriptor = parse_schedule("0 */15 * * * *")
    assert compute_next_run(descriptor, datetime(2026, 3, 11, 10, 15, 0)) == datetime(2026, 3, 11, 10, 30)


def test_every_thirty_minutes_crosses_the_hour() -> None:
    descriptor = parse_schedule("0 */30 * * * *")
    assert compute_next_run(descriptor, datetime(2026, 3, 11, 10, 45, 30)) == datetime(2026, 3, 11, 11, 0)


def test_daily_rolls_to_tomorrow_once_passed() -> None:
    descriptor = parse_schedule("0 0 1 * * *")
    assert compute_next_run(descriptor, datetime(2026, 3, 11, 0, 30)) == datetime(2026, 3, 11, 1, 0)
    assert compute_next_run(descriptor, datetime(2026, 3, 11, 1, 0)) == datetime(2026, 3, 12, 1, 0)


def test_weekly_runs_on_monday() -> None:
    descriptor = parse_schedule("0 0 2 * * 1")
    # 2026-03-11 is a Wednesday
    assert compute_next_run(descriptor, datetime(2026, 3, 11, 10, 0)) == datetime(2026, 3, 16, 2, 0)


def test_weekly_sunday() -> None:
    descriptor = parse_schedule("0 0 4 * * 0")
    assert compute_next_run(descriptor, datetime(2026, 3, 15, 3, 59)) == datetime(2026, 3, 15, 4, 0)
    assert compute_next_run(descriptor, datetime(2026, 3, 15, 4, 0)) == datetime(2026, 3, 22, 4, 0)


def test_monthly_first_of_month() -> None:
    descriptor = parse_schedule("0 0 3 1 * *")
    assert compute_next_run(descriptor, datetime(2026, 12, 1, 3, 0)) == datetime(2027, 1, 1, 3, 0)


def test_monthly_skips_months_without_the_day() -> None:
    descriptor = parse_schedule("0 0 3 31 * *")
    assert compute_next_run(descriptor, datetime(2026, 4, 2, 0, 0)) == datetime(2026, 5, 31, 3, 0)


def test_fallback_is_top_of_next_hour() -> None:
    descriptor = parse_schedule("whenever")
    assert compute_next_run(descriptor, datetime(2026, 3, 11, 10, 0, 0)) == datetime(2026, 3, 11, 11, 0)
    assert compute_next_run(descriptor, datetime(2026, 3, 11, 10, 59, 59)) == datetime(2026, 3, 11, 11, 0)


@pytest.mark.parametrize(
    "now",
    [
        datetime(2026, 1, 1, 0, 0, 0),
        datetime(2026, 2, 28, 23, 59, 59, 999999),
        datetime(2026, 3, 1, 1, 0, 0),
        datetime(2026, 3, 16, 2, 0, 0),
        datetime(2026, 12, 31, 23, 45, 0),
    ],
)
def test_next_run_is_strictly_after_now(now) -> None:
    expressions = [config.schedule for config in default_job_configs()] + ["0 0 3 31 * *", "garbage"]
    for expression in expressions:
        assert compute_next_run(parse_schedule(expression), now) > now, expression


def test_default_jobs_use_supported_schedules() -> None:
    for config in default_job_configs():
        assert not isinstance(config.descriptor, Fallback), config.id
