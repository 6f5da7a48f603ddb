"""
Scheduler Module for job_analytics

This module provides scheduled execution of the analytics jobs:
- Platform data sync (website analytics, referrals)
- Daily / weekly / monthly aggregation
- Raw data cleanup
- Retry with exponential backoff, timeouts and failure alerts
- A control surface for job management

Usage:
    from scheduler import JobScheduler, ControlSurface

    scheduler = JobScheduler(store, registry)
    scheduler.initialize()
    scheduler.start()

For command-line usage:
    python -m scheduler.runner --start
    python -m scheduler.runner --trigger aggregate-daily-data
"""

from scheduler.control import ControlSurface
from scheduler.jobs import (
    JobConfig,
    JobExecution,
    JobHandlers,
    JobResult,
    JobTimeoutError,
    PermanentFailure,
    TransientExecutionError,
    default_job_configs,
    retry_delay_ms,
)
from scheduler.notifications import AlertNotifier
from scheduler.runner import JobScheduler, build_scheduler
from scheduler.schedules import compute_next_run, parse_schedule

__all__ = [
    'AlertNotifier',
    'ControlSurface',
    'JobConfig',
    'JobExecution',
    'JobHandlers',
    'JobResult',
    'JobScheduler',
    'JobTimeoutError',
    'PermanentFailure',
    'TransientExecutionError',
    'build_scheduler',
    'compute_next_run',
    'default_job_configs',
    'parse_schedule',
    'retry_delay_ms',
]
