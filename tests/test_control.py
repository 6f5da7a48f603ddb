"""Tests for the job control surface."""

from datetime import datetime

import pytest

from scheduler.control import ControlSurface, overall_status
from scheduler.jobs import JobConfig, JobExecution, TransientExecutionError

DAILY = "aggregate-daily-data"
WEEKLY = "aggregate-weekly-data"
MONTHLY = "aggregate-monthly-data"


def _fail(config):
    raise TransientExecutionError("duckdb is locked: /var/data/analytics.duckdb")


@pytest.fixture
def scheduler(make_scheduler):
    return make_scheduler()


@pytest.fixture
def control(scheduler):
    return ControlSurface(scheduler)


def _execution(status):
    return JobExecution(id="e1", job_id=DAILY, status=status, started_at=datetime(2026, 3, 11))


@pytest.mark.parametrize(
    "enabled, retry_count, status, expected",
    [
        (False, 0, "completed", "disabled"),
        (True, 0, None, "pending"),
        (True, 0, "running", "running"),
        (True, 0, "completed", "healthy"),
        (True, 1, "failed", "retrying"),
        (True, 4, "failed", "failed"),
        (True, 1, "timeout", "timeout"),
    ],
)
def test_overall_status(enabled, retry_count, status, expected) -> None:
    config = JobConfig(id=DAILY, name="Daily", schedule="0 0 1 * * *", enabled=enabled,
                       retry_count=retry_count, max_retries=3)
    latest = _execution(status) if status else None
    assert overall_status(config, latest) == expected


def test_list_jobs(control) -> None:
    response = control.list_jobs()

    assert response["success"]
    assert response["total"] == 6
    by_id = {job["id"]: job for job in response["jobs"]}
    assert by_id[DAILY]["overall_status"] == "pending"
    assert by_id[DAILY]["latest_execution"] is None
    assert by_id[DAILY]["schedule_description"] == "daily at 01:00"


def test_get_job_includes_recent_executions(control, scheduler) -> None:
    for _ in range(12):
        scheduler.execute_job(DAILY)

    response = control.get_job(DAILY)

    assert response["success"]
    assert len(response["job"]["recent_executions"]) == 10
    assert response["job"]["overall_status"] == "healthy"


def test_get_missing_job(control) -> None:
    assert control.get_job("nope") == {"success": False, "error": "Job not found"}
    assert control.get_job("") == {"success": False, "error": "Job ID is required"}


def test_list_executions_limits(control, scheduler) -> None:
    for _ in range(25):
        scheduler.execute_job(DAILY)

    assert control.list_executions(DAILY)["total"] == 20
    assert control.list_executions(DAILY, 5)["total"] == 5
    assert not control.list_executions(DAILY, 0)["success"]
    assert not control.list_executions(DAILY, 101)["success"]


def test_trigger_job(control, store) -> None:
    response = control.trigger_job(DAILY)

    assert response["success"]
    assert response["execution_result"]["success"] is True
    assert store.count_executions(DAILY) == 1
    assert control.trigger_job("nope") == {"success": False, "error": "Job not found"}


def test_trigger_failure_is_reported_in_result_not_as_error(control, scheduler) -> None:
    scheduler.handlers.run = _fail

    response = control.trigger_job(DAILY)

    assert response["success"]
    assert response["execution_result"]["success"] is False


def test_enable_disable(control, store) -> None:
    assert control.disable_job(DAILY)["success"]
    assert store.get_job_config(DAILY)["enabled"] is False
    assert control.enable_job(DAILY)["success"]
    assert store.get_job_config(DAILY)["enabled"] is True


def test_failures_do_not_leak_internal_detail(control) -> None:
    response = control.enable_job("sync-website-analytics")

    assert response == {"success": False, "error": "Failed to enable job"}


def test_summary_healthy(control, scheduler) -> None:
    scheduler.execute_job(DAILY)

    summary = control.summary()["data"]

    assert summary["total_jobs"] == 6
    assert summary["enabled_jobs"] == 6
    assert summary["disabled_jobs"] == 0
    assert summary["jobs_with_errors"] == 0
    assert summary["last_activity"] == datetime(2026, 3, 11, 10, 7).isoformat()
    assert summary["system_health"] == "healthy"


def test_summary_warning_then_error(control, scheduler) -> None:
    scheduler.handlers.run = _fail
    scheduler.execute_job(DAILY)
    assert control.summary()["data"]["system_health"] == "warning"

    for job_id in (WEEKLY, MONTHLY, "cleanup-old-data"):
        scheduler.execute_job(job_id)
    summary = control.summary()["data"]

    assert summary["jobs_with_errors"] == 4
    assert summary["system_health"] == "error"


def test_health(control) -> None:
    response = control.health()
    assert response["success"]
    assert response["details"]["total_jobs"] == 6


def test_no_scheduler() -> None:
    control = ControlSurface(None)

    assert control.list_jobs() == {"success": False, "error": "Job scheduler not initialized"}
    assert control.health()["status"] == "unhealthy"
