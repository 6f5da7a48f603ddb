#!/usr/bin/env python3
"""
Job Scheduler Runner for job_analytics

This module provides the scheduler that arms, executes, retries and records
the background analytics jobs.

Features:
- One-shot APScheduler timers, at most one armed per job
- Each attempt runs under a timeout race on a thread pool
- Exponential-backoff retries through the job's timer slot
- Permanent-failure alerts once retries are exhausted
- Manual trigger, enable / disable, status and history
- Best-effort drain on shutdown

Usage:
    # As a module
    from scheduler.runner import JobScheduler

    scheduler = JobScheduler(store, registry)
    scheduler.initialize()
    scheduler.start()

    # From command line
    python -m scheduler.runner --start
    python -m scheduler.runner --list-jobs
    python -m scheduler.runner --trigger aggregate-daily-data
    python -m scheduler.runner --disable sync-referrals
"""

import argparse
import itertools
import logging
import signal
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger

from analytics.aggregator import DataAggregator
from analytics.config import ConfigurationError, get_config, setup_logging
from analytics.registry import PlatformServiceRegistry, build_default_registry
from analytics.store import PersistentStore
from scheduler.jobs import (
    JobConfig,
    JobExecution,
    JobHandlers,
    JobResult,
    JobTimeoutError,
    PermanentFailure,
    default_job_configs,
    retry_delay_ms,
)
from scheduler.notifications import AlertNotifier
from scheduler.schedules import compute_next_run


logger = logging.getLogger(__name__)

# Longest delay a single timer is armed for; later runs wake early and re-arm
MAX_TIMER_DELAY_MS = 2 ** 31 - 1

SHUTDOWN_POLL_SECONDS = 0.5


class JobScheduler:
    """
    Scheduler for the analytics jobs.

    Only enabled jobs that pass validation are in the active set (self.jobs).
    Job configs and executions are persisted in the store; in-memory state
    is rebuilt from it by initialize().
    """

    def __init__(
        self,
        store: PersistentStore,
        registry: PlatformServiceRegistry,
        aggregator: Optional[DataAggregator] = None,
        notifier: Optional[AlertNotifier] = None,
        max_workers: int = 10,
        shutdown_grace_seconds: float = 30,
        raw_retention_days: int = 90,
        clock: Callable[[], datetime] = datetime.now
    ):
        """
        Initialize the job scheduler.

        Args:
            store: Persistent store for job configs and executions
            registry: Platform service registry used by sync jobs
            aggregator: Data aggregator (built on the store if omitted)
            notifier: Permanent-failure alert sink
            max_workers: Threads available to running jobs
            shutdown_grace_seconds: How long shutdown() waits for running jobs
            raw_retention_days: Retention of raw rows for the cleanup job
            clock: Source of the current time
        """
        self.store = store
        self.registry = registry
        self.clock = clock
        self.handlers = JobHandlers(
            store,
            registry,
            aggregator or DataAggregator(store),
            raw_retention_days=raw_retention_days,
            clock=clock,
        )
        self.notifier = notifier or AlertNotifier()
        self.shutdown_grace_seconds = shutdown_grace_seconds

        self.jobs: Dict[str, JobConfig] = {}
        self.running = False
        self._timers: Dict[str, str] = {}
        self._timer_tokens = itertools.count(1)
        self._in_flight: Set[str] = set()
        self._lock = threading.RLock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="job")
        self._scheduler = BackgroundScheduler(job_defaults={"misfire_grace_time": None})

    # ============================================
    # Loading
    # ============================================

    def initialize(self) -> int:
        """
        Create missing default jobs and load the active set from the store.

        Jobs that fail validation are logged and left unscheduled.

        Returns:
            Number of active jobs
        """
        for config in default_job_configs():
            if self.store.ensure_job_config(config.to_row()):
                logger.info(f"Created default job: {config.id} ({config.schedule})")
        return self.load_jobs()

    def load_jobs(self) -> int:
        active: Dict[str, JobConfig] = {}
        for row in self.store.list_job_configs():
            config = JobConfig.from_row(row)
            if not config.enabled:
                continue
            try:
                self.handlers.validate(config)
            except ConfigurationError as e:
                logger.error(f"Job {config.id} not scheduled: {e.message}")
                continue
            active[config.id] = config

        with self._lock:
            self.jobs = active
        logger.info(f"Loaded {len(active)} active jobs")
        return len(active)

    def _get_config(self, job_id: str) -> JobConfig:
        """Active config, or the stored one for jobs outside the active set."""
        with self._lock:
            if job_id in self.jobs:
                return self.jobs[job_id]
        row = self.store.get_job_config(job_id)
        if row is None:
            raise ConfigurationError(f"Job configuration not found: {job_id}")
        return JobConfig.from_row(row)

    # ============================================
    # Timers
    # ============================================

    def _arm(self, job_id: str, run_at: datetime, reason: str) -> None:
        """Arm the job's single timer, replacing any armed one."""
        now = self.clock()
        max_delay = timedelta(milliseconds=MAX_TIMER_DELAY_MS)
        fire_at = min(run_at, now + max_delay)
        # APScheduler fires on the wall clock
        wall_fire_at = datetime.now() + max(fire_at - now, timedelta(0))

        with self._lock:
            self._disarm(job_id)
            token = f"{job_id}#{next(self._timer_tokens)}"
            self._scheduler.add_job(
                self._fire,
                trigger=DateTrigger(run_date=wall_fire_at),
                args=[job_id, reason, token],
                id=token,
                name=f"{job_id} ({reason})",
            )
            self._timers[job_id] = token

    def _disarm(self, job_id: str) -> None:
        with self._lock:
            token = self._timers.pop(job_id, None)
            if token is None:
                return
            try:
                self._scheduler.remove_job(token)
            except JobLookupError:
                # Already fired
                pass

    def armed_timers(self) -> Dict[str, str]:
        """Job id -> timer id of every armed timer."""
        with self._lock:
            return dict(self._timers)

    def schedule_job(self, job_id: str) -> Optional[datetime]:
        """
        Arm the next regular run of an active job.

        Returns:
            The next run time, or None if the job is not active
        """
        with self._lock:
            config = self.jobs.get(job_id)
            if config is None or not config.enabled:
                return None

            next_run = compute_next_run(config.descriptor, self.clock())
            config.next_run = next_run
            self.store.update_job_config(job_id, next_run=next_run)
            self._arm(job_id, next_run, "schedule")

        logger.info(f"Scheduled job {config.name} to run at {next_run.isoformat()}")
        return next_run

    def _fire(self, job_id: str, reason: str, token: str) -> None:
        """Timer callback: run the job, then re-arm once the run has settled."""
        with self._lock:
            if self._timers.get(job_id) != token:
                return
            del self._timers[job_id]
            config = self.jobs.get(job_id)
            if config is None or not self.running:
                return

            if reason == "schedule" and config.next_run and self.clock() < config.next_run:
                # Woke at the delay cap, not at the run time
                self._arm(job_id, config.next_run, "schedule")
                return

        try:
            result = self.execute_job(job_id)
        except Exception as e:
            logger.error(f"Unexpected error running job {job_id}: {e}")
            result = JobResult(success=False, error=str(e))

        if result.retry_delay_ms is not None or not self.running:
            return
        if config.exhausted:
            logger.error(f"Job {config.name} is terminal until triggered manually")
            return
        self.schedule_job(job_id)

    # ============================================
    # Execution
    # ============================================

    def _new_execution_id(self, job_id: str, started_at: datetime) -> str:
        base = f"{job_id}-{int(started_at.timestamp() * 1000)}"
        candidate = base
        for n in itertools.count(1):
            if self.store.get_execution(candidate) is None:
                return candidate
            candidate = f"{base}-{n}"

    def execute_job(self, job_id: str) -> JobResult:
        """
        Run one attempt of a job and record it.

        The job logic races its timeout on the thread pool; a timed-out
        attempt is abandoned (not cancelled) and recorded as 'timeout'.
        Failures go through the retry policy.

        Raises:
            ConfigurationError: If the job does not exist
        """
        config = self._get_config(job_id)
        started_at = self.clock()

        with self._lock:
            execution_id = self._new_execution_id(job_id, started_at)
            self.store.insert_execution({
                "id": execution_id,
                "job_id": job_id,
                "status": "running",
                "started_at": started_at,
                "retry_attempt": config.retry_count,
            })
            self._in_flight.add(execution_id)

        logger.info(f"Starting job execution: {config.name} ({execution_id})")
        t0 = time.monotonic()

        try:
            try:
                future = self._executor.submit(self.handlers.run, config)
                data = future.result(timeout=config.timeout_ms / 1000)
            except FuturesTimeoutError:
                raise JobTimeoutError(f"Job execution timeout after {config.timeout_ms}ms")

            elapsed_ms = int((time.monotonic() - t0) * 1000)
            completed_at = self.clock()
            self.store.finalize_execution(
                execution_id,
                status="completed",
                completed_at=completed_at,
                result=data,
                execution_time_ms=elapsed_ms,
            )
            config.last_run = completed_at
            config.retry_count = 0
            self.store.update_job_config(job_id, last_run=completed_at, retry_count=0)

            logger.info(f"Job completed successfully: {config.name} ({elapsed_ms}ms)")
            return JobResult(success=True, data=data, execution_time_ms=elapsed_ms)

        except Exception as e:
            elapsed_ms = int((time.monotonic() - t0) * 1000)
            message = str(e) or e.__class__.__name__
            status = "timeout" if isinstance(e, JobTimeoutError) else "failed"
            logger.error(f"Job failed: {config.name} - {message}")

            self.store.finalize_execution(
                execution_id,
                status=status,
                completed_at=self.clock(),
                error_message=message,
                execution_time_ms=elapsed_ms,
            )
            delay = self._handle_retry(config, message)
            return JobResult(
                success=False,
                error=message,
                execution_time_ms=elapsed_ms,
                retry_delay_ms=delay,
            )

        finally:
            with self._lock:
                self._in_flight.discard(execution_id)

    def _handle_retry(self, config: JobConfig, message: str) -> Optional[int]:
        """
        Count the failure and arm a retry while retries remain.

        Returns:
            Retry delay in ms, or None when no retry was armed
        """
        config.retry_count += 1
        self.store.update_job_config(config.id, retry_count=config.retry_count)

        if config.retry_count <= config.max_retries:
            with self._lock:
                active = config.id in self.jobs
            if not active:
                logger.warning(f"Job {config.name} is not active; no retry armed")
                return None

            delay = retry_delay_ms(config.retry_count)
            self._arm(config.id, self.clock() + timedelta(milliseconds=delay), "retry")
            logger.warning(
                f"Retrying job {config.name} in {delay}ms "
                f"(attempt {config.retry_count}/{config.max_retries})"
            )
            return delay

        self._disarm(config.id)
        failure = PermanentFailure(config.id, message, attempts=config.retry_count)
        logger.error(f"Job {config.name} failed after {config.max_retries} retries: {message}")
        try:
            self.notifier.job_failed_permanently(failure)
        except Exception as e:
            logger.error(f"Failed to send failure alert for {config.id}: {e}")
        return None

    # ============================================
    # Management
    # ============================================

    def trigger_job(self, job_id: str) -> JobResult:
        """Run a job now, outside its schedule, with the same retry bookkeeping."""
        logger.info(f"Running job manually: {job_id}")
        # Supersedes any armed run or retry
        self._disarm(job_id)
        result = self.execute_job(job_id)

        with self._lock:
            rearm = (
                self.running
                and job_id in self.jobs
                and result.retry_delay_ms is None
                and not self.jobs[job_id].exhausted
            )
        if rearm:
            self.schedule_job(job_id)
        return result

    def enable_job(self, job_id: str) -> Optional[datetime]:
        """
        Persist enabled=True, reload the job and arm its timer.

        An active job with an armed timer (regular run or pending retry) is
        left as is. Exhausted jobs are enabled but not armed.

        Returns:
            The next regular run time, or None if no timer was armed

        Raises:
            ConfigurationError: If the job does not exist or cannot run
        """
        if self.store.get_job_config(job_id) is None:
            raise ConfigurationError(f"Job configuration not found: {job_id}")

        with self._lock:
            active = self.jobs.get(job_id)
            if active is not None and job_id in self._timers:
                logger.info(f"Job {job_id} is already enabled and armed")
                return active.next_run

        self.store.update_job_config(job_id, enabled=True)
        config = JobConfig.from_row(self.store.get_job_config(job_id))
        self.handlers.validate(config)

        with self._lock:
            self.jobs[job_id] = config
        logger.info(f"Enabled job: {job_id}")

        if config.exhausted:
            logger.warning(f"Job {job_id} is terminal until triggered manually; not scheduled")
            return None
        return self.schedule_job(job_id)

    def disable_job(self, job_id: str) -> None:
        """
        Persist enabled=False and disarm the job's timer.

        A running execution is not interrupted.
        """
        if self.store.get_job_config(job_id) is None:
            raise ConfigurationError(f"Job configuration not found: {job_id}")

        self.store.update_job_config(job_id, enabled=False)
        with self._lock:
            self._disarm(job_id)
            self.jobs.pop(job_id, None)
        logger.info(f"Disabled job: {job_id}")

    # ============================================
    # Status
    # ============================================

    def get_job_status(self, job_id: str) -> Optional[JobConfig]:
        row = self.store.get_job_config(job_id)
        return JobConfig.from_row(row) if row else None

    def get_all_jobs(self) -> List[JobConfig]:
        return [JobConfig.from_row(row) for row in self.store.list_job_configs()]

    def get_job_executions(self, job_id: str, limit: int = 10) -> List[JobExecution]:
        return [JobExecution.from_row(row) for row in self.store.list_executions(job_id, limit)]

    def in_flight(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def list_jobs(self) -> None:
        """Print list of configured jobs."""
        print("\nConfigured Jobs:")
        print("-" * 60)

        for config in self.get_all_jobs():
            status = "enabled" if config.enabled else "disabled"
            print(f"  {config.id}")
            print(f"    Name: {config.name}")
            print(f"    Schedule: {config.schedule} ({config.descriptor.describe()})")
            print(f"    Status: {status}")
            print(f"    Retries: {config.retry_count}/{config.max_retries}")
            if config.last_run:
                print(f"    Last Run: {config.last_run}")
            if config.next_run:
                print(f"    Next Run: {config.next_run}")

            executions = self.get_job_executions(config.id, limit=1)
            if executions:
                latest = executions[0]
                print(f"    Latest Execution: {latest.started_at} ({latest.status.upper()})")
            print()

    # ============================================
    # Lifecycle
    # ============================================

    def start(self) -> None:
        """Start the timer thread and arm every active job (non-blocking)."""
        if self.running:
            logger.info("Job scheduler is already running")
            return

        logger.info("Starting job scheduler...")
        self.running = True
        self._scheduler.start()

        with self._lock:
            job_ids = list(self.jobs)
        for job_id in job_ids:
            if self.jobs[job_id].exhausted:
                logger.warning(f"Job {job_id} is terminal until triggered manually; not scheduled")
                continue
            self.schedule_job(job_id)

        logger.info(f"Job scheduler started with {len(self._timers)} armed jobs")

    def shutdown(self, grace_seconds: Optional[float] = None) -> None:
        """
        Disarm all timers, then wait up to the grace period for running jobs.

        Returns after the grace period even if jobs are still running.
        """
        grace = self.shutdown_grace_seconds if grace_seconds is None else grace_seconds
        logger.info("Shutting down job scheduler...")
        self.running = False

        with self._lock:
            for job_id in list(self._timers):
                self._disarm(job_id)
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)

        deadline = time.monotonic() + grace
        while self.in_flight() and time.monotonic() < deadline:
            time.sleep(SHUTDOWN_POLL_SECONDS)

        if self.in_flight():
            logger.warning(f"Shutdown grace period elapsed with {self.in_flight()} jobs still running")
        self._executor.shutdown(wait=False)
        logger.info("Job scheduler shutdown complete")

    def stop(self) -> None:
        self.shutdown()

    def run_forever(self) -> None:
        """Start and block until SIGINT / SIGTERM."""
        stop_event = threading.Event()

        def _handle_shutdown(signum, frame):
            logger.info(f"Received signal {signum}, shutting down...")
            stop_event.set()

        signal.signal(signal.SIGINT, _handle_shutdown)
        signal.signal(signal.SIGTERM, _handle_shutdown)

        self.start()
        logger.info("Scheduler started. Press Ctrl+C to stop.")
        try:
            while not stop_event.wait(1):
                pass
        finally:
            self.stop()


def build_scheduler(config=None) -> JobScheduler:
    """Wire store, registry, notifier and scheduler from the app config."""
    config = config or get_config()
    store = PersistentStore(config.duckdb_path)
    registry = build_default_registry(store, lookback_days=config.sync_lookback_days)
    scheduler = JobScheduler(
        store,
        registry,
        notifier=AlertNotifier(config.slack_webhook_url),
        max_workers=config.scheduler_max_workers,
        shutdown_grace_seconds=config.shutdown_grace_seconds,
        raw_retention_days=config.raw_retention_days,
    )
    scheduler.initialize()
    return scheduler


def main():
    """Command-line interface for the scheduler."""
    parser = argparse.ArgumentParser(
        description="job_analytics Job Scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m scheduler.runner --list-jobs                     # List configured jobs
  python -m scheduler.runner --trigger aggregate-daily-data  # Run a job now
  python -m scheduler.runner --disable sync-referrals        # Disable a job
  python -m scheduler.runner --status                        # Summary health
  python -m scheduler.runner --start                         # Start the scheduler daemon
        """
    )

    group = parser.add_mutually_exclusive_group()
    group.add_argument("--start", action="store_true", help="Start the scheduler daemon")
    group.add_argument("--list-jobs", action="store_true", help="List all configured jobs")
    group.add_argument("--trigger", metavar="JOB_ID", help="Run a job immediately")
    group.add_argument("--enable", metavar="JOB_ID", help="Enable a job")
    group.add_argument("--disable", metavar="JOB_ID", help="Disable a job")
    group.add_argument("--status", action="store_true", help="Print summary health")

    args = parser.parse_args()

    try:
        config = get_config()
    except ConfigurationError as e:
        print(f"\nConfiguration error:\n{e}")
        return 1

    setup_logging(config)
    scheduler = build_scheduler(config)

    if args.list_jobs:
        scheduler.list_jobs()
        return 0

    if args.trigger:
        try:
            result = scheduler.trigger_job(args.trigger)
        except ConfigurationError as e:
            print(f"\n{e}")
            return 1
        finally:
            scheduler.shutdown(grace_seconds=0)

        if result.success:
            print(f"\nJob completed successfully in {result.execution_time_ms}ms")
            return 0
        print(f"\nJob failed: {result.error}")
        return 1

    if args.enable or args.disable:
        try:
            if args.enable:
                scheduler.enable_job(args.enable)
                print(f"\nEnabled job: {args.enable}")
            else:
                scheduler.disable_job(args.disable)
                print(f"\nDisabled job: {args.disable}")
        except ConfigurationError as e:
            print(f"\n{e}")
            return 1
        finally:
            scheduler.shutdown(grace_seconds=0)
        return 0

    if args.status:
        from scheduler.control import ControlSurface

        summary = ControlSurface(scheduler).summary()["data"]
        print("\nScheduler Summary:")
        print("-" * 60)
        for key, value in summary.items():
            print(f"  {key}: {value}")
        return 0

    if args.start:
        print("Starting scheduler daemon...")
        scheduler.run_forever()
        return 0

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
