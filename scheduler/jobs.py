"""
Job Definitions for the job_analytics Scheduler

This module defines job configurations, execution records and the logic
each built-in job runs.

Features:
- JobConfig / JobExecution / JobResult records
- Error taxonomy for job execution (transient, timeout, permanent)
- Exponential backoff for retries
- The default job set created at bootstrap
- JobHandlers: dispatch by job id to platform sync, aggregation or cleanup

Usage:
    from scheduler.jobs import JobHandlers, default_job_configs

    handlers = JobHandlers(store, registry, aggregator)
    for config in default_job_configs():
        handlers.validate(config)
        handlers.run(config)
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from analytics.aggregator import DataAggregator
from analytics.config import ConfigurationError
from analytics.registry import PlatformServiceRegistry
from analytics.store import PersistentStore
from analytics.utils import previous_period_range
from scheduler.schedules import Schedule, parse_schedule


logger = logging.getLogger(__name__)

BASE_RETRY_DELAY_MS = 1000
MAX_RETRY_DELAY_MS = 300000


# ============================================
# Errors
# ============================================

class TransientExecutionError(Exception):
    """A job run failed (network, store, platform); it is retried with backoff."""


class JobTimeoutError(TransientExecutionError):
    """A job run exceeded its timeout_ms."""


class PermanentFailure(Exception):
    """
    Retries are exhausted; the job waits for a manual trigger.

    Attributes:
        job_id: Job that failed
        error_message: Last error
        attempts: Number of attempts made
    """

    def __init__(self, job_id: str, error_message: str, attempts: int):
        self.job_id = job_id
        self.error_message = error_message
        self.attempts = attempts
        super().__init__(
            f"Job {job_id} failed permanently after {attempts} attempts: {error_message}"
        )


def retry_delay_ms(retry_count: int) -> int:
    """Backoff before retry number retry_count (1-based), capped at 5 minutes."""
    return min(BASE_RETRY_DELAY_MS * 2 ** retry_count, MAX_RETRY_DELAY_MS)


# ============================================
# Records
# ============================================

@dataclass
class JobConfig:
    """
    Configuration and scheduling state of a job.

    Attributes:
        id: Unique job id (also selects the built-in job kind)
        name: Display name
        schedule: Six-field schedule expression
        enabled: Disabled jobs are never armed
        platform_type / platform_name: Platform binding for sync jobs
        last_run: Last successful run
        next_run: Next scheduled run
        retry_count: Consecutive failures; reset to 0 on success
        max_retries: Retries allowed before the job goes terminal
        timeout_ms: Per-attempt timeout
    """
    id: str
    name: str
    schedule: str
    enabled: bool = True
    platform_type: Optional[str] = None
    platform_name: Optional[str] = None
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    retry_count: int = 0
    max_retries: int = 3
    timeout_ms: int = 300000
    descriptor: Schedule = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        self.descriptor = parse_schedule(self.schedule)

    @property
    def exhausted(self) -> bool:
        """True once retries are used up (terminal until a manual trigger)."""
        return self.retry_count > self.max_retries

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "JobConfig":
        return cls(
            id=row["id"],
            name=row.get("name") or row["id"],
            schedule=row["schedule"],
            enabled=bool(row.get("enabled")),
            platform_type=row.get("platform_type"),
            platform_name=row.get("platform_name"),
            last_run=row.get("last_run"),
            next_run=row.get("next_run"),
            retry_count=row.get("retry_count") or 0,
            max_retries=row.get("max_retries") if row.get("max_retries") is not None else 3,
            timeout_ms=row.get("timeout_ms") or 300000,
        )

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        row.pop("descriptor", None)
        return row

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view for logging and the control surface."""
        row = self.to_row()
        row["last_run"] = self.last_run.isoformat() if self.last_run else None
        row["next_run"] = self.next_run.isoformat() if self.next_run else None
        row["schedule_description"] = self.descriptor.describe()
        return row


@dataclass
class JobExecution:
    """
    One attempt of a job. Finalized once, never changed afterwards.

    status is one of running, completed, failed, timeout.
    """
    id: str
    job_id: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    retry_attempt: int = 0
    execution_time_ms: Optional[int] = None
    result: Any = None

    @property
    def duration(self) -> Optional[timedelta]:
        if self.completed_at:
            return self.completed_at - self.started_at
        return None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "JobExecution":
        return cls(
            id=row["id"],
            job_id=row["job_id"],
            status=row["status"],
            started_at=row["started_at"],
            completed_at=row.get("completed_at"),
            error_message=row.get("error_message"),
            retry_attempt=row.get("retry_attempt") or 0,
            execution_time_ms=row.get("execution_time_ms"),
            result=row.get("result"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'job_id': self.job_id,
            'status': self.status,
            'started_at': self.started_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'error_message': self.error_message,
            'retry_attempt': self.retry_attempt,
            'execution_time_ms': self.execution_time_ms,
            'result': self.result,
        }


@dataclass
class JobResult:
    """
    Outcome of execute_job().

    retry_delay_ms is set when a retry has been armed for the job.
    """
    success: bool
    data: Any = None
    error: Optional[str] = None
    execution_time_ms: int = 0
    retry_delay_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ============================================
# Default Jobs
# ============================================

def default_job_configs() -> List[JobConfig]:
    """
    Built-in jobs created at bootstrap (only when missing from the store).

    - Website analytics sync: every 15 minutes
    - Referral sync: every 30 minutes
    - Daily / weekly / monthly aggregation: 01:00 / Monday 02:00 / 1st 03:00
    - Raw data cleanup: Sunday 04:00
    """
    return [
        JobConfig(
            id='sync-website-analytics',
            name='Sync Website Analytics',
            schedule='0 */15 * * * *',
            platform_type='website',
            platform_name='company_website',
            max_retries=3,
            timeout_ms=300000,
        ),
        JobConfig(
            id='sync-referrals',
            name='Sync Referral Data',
            schedule='0 */30 * * * *',
            platform_type='referral',
            platform_name='internal_referrals',
            max_retries=3,
            timeout_ms=180000,
        ),
        JobConfig(
            id='aggregate-daily-data',
            name='Aggregate Daily Analytics',
            schedule='0 0 1 * * *',
            max_retries=2,
            timeout_ms=600000,
        ),
        JobConfig(
            id='aggregate-weekly-data',
            name='Aggregate Weekly Analytics',
            schedule='0 0 2 * * 1',
            max_retries=2,
            timeout_ms=900000,
        ),
        JobConfig(
            id='aggregate-monthly-data',
            name='Aggregate Monthly Analytics',
            schedule='0 0 3 1 * *',
            max_retries=2,
            timeout_ms=1800000,
        ),
        JobConfig(
            id='cleanup-old-data',
            name='Cleanup Old Raw Data',
            schedule='0 0 4 * * 0',
            max_retries=1,
            timeout_ms=1200000,
        ),
    ]


AGGREGATION_JOBS = {
    'aggregate-daily-data': 'daily',
    'aggregate-weekly-data': 'weekly',
    'aggregate-monthly-data': 'monthly',
}

CLEANUP_JOB = 'cleanup-old-data'


# ============================================
# Job Logic
# ============================================

class JobHandlers:
    """
    Runs the logic of a job, dispatched by job id.

    Any exception raised from run() is a failed attempt for the scheduler.
    """

    def __init__(
        self,
        store: PersistentStore,
        registry: PlatformServiceRegistry,
        aggregator: DataAggregator,
        raw_retention_days: int = 90,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.store = store
        self.registry = registry
        self.aggregator = aggregator
        self.raw_retention_days = raw_retention_days
        self.clock = clock

    def validate(self, config: JobConfig) -> None:
        """
        Check that a job can run at all.

        Raises:
            ConfigurationError: Unknown job kind or unregistered platform
        """
        if config.id in AGGREGATION_JOBS or config.id == CLEANUP_JOB:
            return

        if not (config.platform_type and config.platform_name):
            raise ConfigurationError(
                message=f"Unknown job type: {config.id}",
                fix="Give the job a platform binding (platform_type/platform_name) "
                    "or use one of the built-in job ids."
            )

        if not self.registry.is_registered(config.platform_type, config.platform_name):
            raise ConfigurationError(
                message=f"No platform service registered for "
                        f"{config.platform_type}:{config.platform_name} (job {config.id})",
                fix="Register the platform service in build_default_registry() "
                    "or disable the job."
            )

    def run(self, config: JobConfig) -> Dict[str, Any]:
        if config.id in AGGREGATION_JOBS:
            return self.aggregate_for_all_users(AGGREGATION_JOBS[config.id])
        if config.id == CLEANUP_JOB:
            return self.cleanup_old_data()

        self.validate(config)
        return self.sync_platform_data(config.platform_type, config.platform_name)

    def sync_platform_data(self, platform_type: str, platform_name: str) -> Dict[str, Any]:
        """
        Incremental sync of one platform for every configured user.

        Raises:
            TransientExecutionError: If any user's sync failed
        """
        summary = self.registry.sync_platform_for_all_users(
            platform_type, platform_name, now=self.clock()
        )
        logger.info(
            f"Sync {platform_type}:{platform_name}: {summary['succeeded']}/{summary['users']} users, "
            f"{summary['records_processed']} records"
        )

        if summary["failed"]:
            first_user, first_error = next(iter(summary["errors"].items()))
            raise TransientExecutionError(
                f"Sync failed for {summary['failed']} of {summary['users']} users "
                f"(user {first_user}: {first_error})"
            )
        return summary

    def aggregate_for_all_users(self, period_type: str) -> Dict[str, Any]:
        """Aggregate the previous full period (yesterday / last week / last month)."""
        window = previous_period_range(period_type, self.clock())
        response = self.aggregator.aggregate_all_data(window, period_types=[period_type])
        if not response.success:
            raise TransientExecutionError(response.error or f"{period_type} aggregation failed")

        results = response.data
        return {
            "period_type": period_type,
            "date_range": window.to_dict(),
            "users": response.metadata.get("users", 0),
            "failures": response.metadata.get("failures", 0),
            "records_processed": sum(r.processed for r in results),
            "results": [r.to_dict() for r in results],
        }

    def cleanup_old_data(self) -> Dict[str, Any]:
        """Delete raw metric rows recorded before the retention cutoff."""
        cutoff = self.clock() - timedelta(days=self.raw_retention_days)
        deleted = self.store.delete_raw_before(cutoff)
        logger.info(f"Deleted {deleted} raw rows recorded before {cutoff:%Y-%m-%d %H:%M}")
        return {"cutoff_date": cutoff.isoformat(), "records_deleted": deleted}
