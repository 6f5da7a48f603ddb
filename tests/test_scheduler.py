"""Tests for job execution, retries, timers and the job lifecycle."""

import threading
import time
from datetime import datetime, timedelta

import pytest

from analytics.config import ConfigurationError
from scheduler.jobs import (
    MAX_RETRY_DELAY_MS,
    JobConfig,
    TransientExecutionError,
    default_job_configs,
    retry_delay_ms,
)
from tests.conftest import FakePlatformService, raw_row

DAILY = "aggregate-daily-data"
SYNC = "sync-website-analytics"


def _always_fail(config):
    raise TransientExecutionError("store unavailable")


def _run_until_terminal(scheduler, clock, job_id):
    results = []
    while True:
        result = scheduler.execute_job(job_id)
        results.append(result)
        if result.retry_delay_ms is None:
            return results
        clock.advance(milliseconds=result.retry_delay_ms)


def _stored(store, job_id) -> JobConfig:
    return JobConfig.from_row(store.get_job_config(job_id))


# ============================================
# Bootstrap
# ============================================

def test_initialize_creates_default_jobs_once(store, make_scheduler) -> None:
    make_scheduler()
    store.update_job_config(DAILY, enabled=False)
    make_scheduler()

    assert len(store.list_job_configs()) == len(default_job_configs())
    assert _stored(store, DAILY).enabled is False


def test_jobs_without_a_registered_platform_are_not_scheduled(make_scheduler) -> None:
    scheduler = make_scheduler()

    assert SYNC not in scheduler.jobs
    assert DAILY in scheduler.jobs
    assert "cleanup-old-data" in scheduler.jobs


def test_start_arms_one_timer_per_active_job(make_scheduler) -> None:
    scheduler = make_scheduler()
    scheduler.start()

    assert set(scheduler.armed_timers()) == set(scheduler.jobs)
    assert _stored(scheduler.store, DAILY).next_run == datetime(2026, 3, 12, 1, 0)


# ============================================
# Execution
# ============================================

def test_successful_run_is_recorded(store, make_scheduler) -> None:
    store.insert_raw_metrics("user-1", [raw_row("views", 4, datetime(2026, 3, 10, 12))])
    scheduler = make_scheduler()

    result = scheduler.execute_job(DAILY)

    assert result.success
    assert result.data["records_processed"] == 1
    [execution] = scheduler.get_job_executions(DAILY)
    assert execution.status == "completed"
    assert execution.result["period_type"] == "daily"
    assert execution.completed_at is not None
    assert _stored(store, DAILY).last_run is not None
    assert store.list_aggregated("user-1", "daily")[0]["total_views"] == 4


def test_failing_sync_records_error_and_increments_retry_count(store, registry, make_scheduler) -> None:
    service = FakePlatformService(store, fetch_error="upstream 503")
    registry.register("website", "company_website", lambda _store: service)
    service.save_platform_config("user-1", {"apiKey": "k"})
    scheduler = make_scheduler()

    result = scheduler.execute_job(SYNC)

    assert not result.success
    [execution] = scheduler.get_job_executions(SYNC)
    assert execution.status == "failed"
    assert "upstream 503" in execution.error_message
    assert _stored(store, SYNC).retry_count == 1


def test_exception_in_job_logic_becomes_failed_execution(make_scheduler) -> None:
    scheduler = make_scheduler()

    def broken(config):
        raise KeyError("missing")

    scheduler.handlers.run = broken
    result = scheduler.execute_job(DAILY)

    assert not result.success
    assert scheduler.get_job_executions(DAILY)[0].status == "failed"


def test_timeout_is_recorded_and_retried(store, make_scheduler) -> None:
    scheduler = make_scheduler()
    scheduler.jobs[DAILY].timeout_ms = 50
    scheduler.handlers.run = lambda config: time.sleep(1)

    result = scheduler.execute_job(DAILY)

    assert not result.success
    assert result.retry_delay_ms == 2000
    execution = scheduler.get_job_executions(DAILY)[0]
    assert execution.status == "timeout"
    assert "timeout" in execution.error_message
    assert _stored(store, DAILY).retry_count == 1


def test_success_resets_retry_count(store, make_scheduler) -> None:
    scheduler = make_scheduler()
    real_run = scheduler.handlers.run
    scheduler.handlers.run = _always_fail
    scheduler.execute_job(DAILY)
    assert _stored(store, DAILY).retry_count == 1

    scheduler.handlers.run = real_run
    assert scheduler.execute_job(DAILY).success
    assert _stored(store, DAILY).retry_count == 0


def test_unknown_job_raises_configuration_error(make_scheduler) -> None:
    scheduler = make_scheduler()
    with pytest.raises(ConfigurationError):
        scheduler.execute_job("no-such-job")


def test_cleanup_deletes_raw_rows_past_retention(store, clock, make_scheduler) -> None:
    store.insert_raw_metrics("user-1", [
        raw_row("views", 1, clock.now - timedelta(days=91)),
        raw_row("views", 2, clock.now - timedelta(days=89)),
    ])
    scheduler = make_scheduler()

    result = scheduler.execute_job("cleanup-old-data")

    assert result.success
    assert result.data["records_deleted"] == 1
    assert result.data["cutoff_date"] == (clock.now - timedelta(days=90)).isoformat()
    remaining = store.fetch_raw_metrics("user-1", clock.now - timedelta(days=365), clock.now)
    assert [row["metric_value"] for row in remaining] == [2]


# ============================================
# Retries
# ============================================

def test_always_failing_job_runs_max_retries_plus_one_times(store, clock, notifier, make_scheduler) -> None:
    scheduler = make_scheduler()
    scheduler.handlers.run = _always_fail
    max_retries = scheduler.jobs[DAILY].max_retries

    results = _run_until_terminal(scheduler, clock, DAILY)

    assert len(results) == max_retries + 1
    assert store.count_executions(DAILY) == max_retries + 1
    assert [e.retry_attempt for e in reversed(scheduler.get_job_executions(DAILY))] == list(
        range(max_retries + 1)
    )
    assert _stored(store, DAILY).exhausted
    assert DAILY not in scheduler.armed_timers()

    [failure] = notifier.failures
    assert failure.job_id == DAILY
    assert failure.attempts == max_retries + 1
    assert failure.error_message == "store unavailable"


def test_retry_delays_are_non_decreasing_and_capped(clock, make_scheduler) -> None:
    scheduler = make_scheduler()
    scheduler.jobs[DAILY].max_retries = 12
    scheduler.handlers.run = _always_fail

    results = _run_until_terminal(scheduler, clock, DAILY)
    delays = [r.retry_delay_ms for r in results[:-1]]

    assert len(results) == 13
    assert delays[0] == 2000
    assert delays == sorted(delays)
    assert max(delays) == MAX_RETRY_DELAY_MS


def test_retry_delay_formula() -> None:
    assert [retry_delay_ms(n) for n in range(1, 5)] == [2000, 4000, 8000, 16000]
    assert retry_delay_ms(20) == MAX_RETRY_DELAY_MS


def test_retry_is_armed_in_the_job_timer_slot(make_scheduler) -> None:
    scheduler = make_scheduler()
    scheduler.handlers.run = _always_fail

    scheduler.execute_job(DAILY)
    scheduler.execute_job(DAILY)

    assert list(scheduler.armed_timers()) == [DAILY]


def test_terminal_job_still_runs_on_manual_trigger(store, clock, make_scheduler) -> None:
    scheduler = make_scheduler()
    real_run = scheduler.handlers.run
    scheduler.handlers.run = _always_fail
    _run_until_terminal(scheduler, clock, DAILY)
    executions = store.count_executions(DAILY)

    scheduler.handlers.run = real_run
    result = scheduler.trigger_job(DAILY)

    assert result.success
    assert store.count_executions(DAILY) == executions + 1
    assert _stored(store, DAILY).retry_count == 0


def test_start_does_not_arm_terminal_jobs(clock, make_scheduler) -> None:
    scheduler = make_scheduler()
    scheduler.handlers.run = _always_fail
    _run_until_terminal(scheduler, clock, DAILY)

    scheduler.start()

    assert DAILY not in scheduler.armed_timers()
    assert "cleanup-old-data" in scheduler.armed_timers()


# ============================================
# Enable / Disable
# ============================================

def test_enable_disable_cycles_keep_at_most_one_timer(make_scheduler) -> None:
    scheduler = make_scheduler()

    for _ in range(5):
        scheduler.enable_job(DAILY)
        scheduler.enable_job(DAILY)
        assert list(scheduler.armed_timers()) == [DAILY]
        assert len(scheduler._scheduler.get_jobs()) == 1

        scheduler.disable_job(DAILY)
        assert scheduler.armed_timers() == {}
        assert scheduler._scheduler.get_jobs() == []


def test_disabled_job_does_not_run_from_a_stale_timer(store, make_scheduler) -> None:
    scheduler = make_scheduler()
    scheduler.start()
    token = scheduler.armed_timers()[DAILY]

    scheduler.disable_job(DAILY)
    scheduler._fire(DAILY, "schedule", token)

    assert store.count_executions(DAILY) == 0
    assert _stored(store, DAILY).enabled is False


def test_disabled_job_can_be_triggered_manually(store, make_scheduler) -> None:
    scheduler = make_scheduler()
    scheduler.disable_job(DAILY)

    assert scheduler.trigger_job(DAILY).success
    assert store.count_executions(DAILY) == 1
    assert scheduler.armed_timers() == {}


def test_disabled_job_failure_counts_but_is_not_retried(store, make_scheduler) -> None:
    scheduler = make_scheduler()
    scheduler.disable_job(DAILY)
    scheduler.handlers.run = _always_fail

    result = scheduler.trigger_job(DAILY)

    assert result.retry_delay_ms is None
    assert _stored(store, DAILY).retry_count == 1
    assert scheduler.armed_timers() == {}


def test_enable_and_disable_unknown_job(make_scheduler) -> None:
    scheduler = make_scheduler()
    with pytest.raises(ConfigurationError):
        scheduler.enable_job("no-such-job")
    with pytest.raises(ConfigurationError):
        scheduler.disable_job("no-such-job")


def test_enabling_a_job_without_platform_service_fails(make_scheduler) -> None:
    scheduler = make_scheduler()
    with pytest.raises(ConfigurationError):
        scheduler.enable_job(SYNC)
    assert SYNC not in scheduler.armed_timers()


def test_enable_keeps_a_pending_retry(make_scheduler) -> None:
    scheduler = make_scheduler()
    scheduler.start()
    scheduler.handlers.run = _always_fail
    scheduler.execute_job(DAILY)
    token = scheduler.armed_timers()[DAILY]

    scheduler.enable_job(DAILY)

    assert scheduler.armed_timers() == {DAILY: token}
    assert scheduler._scheduler.get_job(token).args[1] == "retry"


def test_enable_does_not_arm_an_exhausted_job(store, clock, make_scheduler) -> None:
    scheduler = make_scheduler()
    scheduler.handlers.run = _always_fail
    _run_until_terminal(scheduler, clock, DAILY)

    assert scheduler.enable_job(DAILY) is None
    assert _stored(store, DAILY).enabled is True
    assert DAILY in scheduler.jobs
    assert DAILY not in scheduler.armed_timers()


# ============================================
# Timer callback
# ============================================

def test_fire_runs_the_job_and_rearms(store, clock, make_scheduler) -> None:
    scheduler = make_scheduler()
    scheduler.start()
    token = scheduler.armed_timers()[DAILY]
    clock.now = datetime(2026, 3, 12, 1, 0)

    scheduler._fire(DAILY, "schedule", token)

    assert store.count_executions(DAILY) == 1
    assert scheduler.armed_timers()[DAILY] != token
    assert _stored(store, DAILY).next_run == datetime(2026, 3, 13, 1, 0)


def test_early_wake_rearms_without_running(store, make_scheduler) -> None:
    scheduler = make_scheduler()
    scheduler.start()
    token = scheduler.armed_timers()[DAILY]

    scheduler._fire(DAILY, "schedule", token)

    assert store.count_executions(DAILY) == 0
    assert DAILY in scheduler.armed_timers()


def test_shutdown_disarms_everything(make_scheduler) -> None:
    scheduler = make_scheduler()
    scheduler.start()

    scheduler.shutdown(grace_seconds=0)

    assert scheduler.armed_timers() == {}
    assert scheduler.running is False


def _fire_in_background(scheduler, clock, handler):
    """Run the daily job from its timer callback on a separate thread."""
    started = threading.Event()

    def run(config):
        started.set()
        return handler(config)

    scheduler.handlers.run = run
    scheduler.start()
    token = scheduler.armed_timers()[DAILY]
    clock.now = datetime(2026, 3, 12, 1, 0)
    worker = threading.Thread(target=scheduler._fire, args=(DAILY, "schedule", token))
    worker.start()
    assert started.wait(5)
    return worker


def test_shutdown_waits_for_a_job_finishing_within_grace(make_scheduler, clock) -> None:
    scheduler = make_scheduler()

    def slow(config):
        time.sleep(0.3)
        return {"records_processed": 0}

    worker = _fire_in_background(scheduler, clock, slow)
    t0 = time.monotonic()
    scheduler.shutdown(grace_seconds=10)
    elapsed = time.monotonic() - t0
    worker.join(5)

    assert elapsed < 5
    assert scheduler.in_flight() == 0
    [execution] = scheduler.get_job_executions(DAILY)
    assert execution.status == "completed"
    assert scheduler.armed_timers() == {}


def test_shutdown_returns_at_the_grace_deadline(make_scheduler, clock) -> None:
    scheduler = make_scheduler()
    release = threading.Event()

    def stuck(config):
        release.wait(10)
        return {}

    worker = _fire_in_background(scheduler, clock, stuck)
    t0 = time.monotonic()
    scheduler.shutdown(grace_seconds=0.6)
    elapsed = time.monotonic() - t0

    try:
        assert 0.6 <= elapsed < 5
        assert scheduler.in_flight() == 1
        assert scheduler.get_job_executions(DAILY)[0].status == "running"
    finally:
        release.set()
        worker.join(10)
    assert scheduler.in_flight() == 0
