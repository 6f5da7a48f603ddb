"""
Control Surface for the job_analytics Scheduler

Plain-dict operations for an outer HTTP or CLI layer: list and inspect
jobs, page through executions, trigger, enable / disable, and summary
health.

Every response carries success. Failures carry a fixed human-readable
error; exception detail is logged, never returned.

Usage:
    from scheduler.control import ControlSurface

    control = ControlSurface(scheduler)
    control.list_jobs()
    control.trigger_job("aggregate-daily-data")
    control.summary()["data"]["system_health"]
"""

import logging
from typing import Any, Dict, Optional

from analytics.config import ConfigurationError
from scheduler.jobs import JobConfig, JobExecution
from scheduler.runner import JobScheduler


logger = logging.getLogger(__name__)

DEFAULT_EXECUTION_LIMIT = 20
MAX_EXECUTION_LIMIT = 100
RECENT_EXECUTIONS = 10

ERROR_STATUSES = ("failed", "timeout")


def overall_status(config: JobConfig, latest: Optional[JobExecution]) -> str:
    """Single status tag for a job from its config and latest execution."""
    if not config.enabled:
        return "disabled"
    if latest is None:
        return "pending"
    if latest.status == "running":
        return "running"
    if latest.status == "completed":
        return "healthy"
    if latest.status == "failed":
        return "failed" if config.exhausted else "retrying"
    if latest.status == "timeout":
        return "timeout"
    return "unknown"


def _failure(error: str) -> Dict[str, Any]:
    return {"success": False, "error": error}


class ControlSurface:
    """Structured job management operations on top of a JobScheduler."""

    def __init__(self, scheduler: Optional[JobScheduler]):
        self.scheduler = scheduler

    def _job_view(self, config: JobConfig, executions) -> Dict[str, Any]:
        latest = executions[0] if executions else None
        view = config.to_dict()
        view["latest_execution"] = latest.to_dict() if latest else None
        view["overall_status"] = overall_status(config, latest)
        return view

    def list_jobs(self) -> Dict[str, Any]:
        if self.scheduler is None:
            return _failure("Job scheduler not initialized")
        try:
            jobs = [
                self._job_view(config, self.scheduler.get_job_executions(config.id, 1))
                for config in self.scheduler.get_all_jobs()
            ]
            return {"success": True, "jobs": jobs, "total": len(jobs)}
        except Exception as e:
            logger.error(f"Error fetching jobs: {e}")
            return _failure("Failed to fetch jobs")

    def get_job(self, job_id: str) -> Dict[str, Any]:
        if not job_id:
            return _failure("Job ID is required")
        if self.scheduler is None:
            return _failure("Job scheduler not initialized")
        try:
            config = self.scheduler.get_job_status(job_id)
            if config is None:
                return _failure("Job not found")

            executions = self.scheduler.get_job_executions(job_id, RECENT_EXECUTIONS)
            job = self._job_view(config, executions)
            job["recent_executions"] = [execution.to_dict() for execution in executions]
            return {"success": True, "job": job}
        except Exception as e:
            logger.error(f"Error fetching job {job_id}: {e}")
            return _failure("Failed to fetch job")

    def list_executions(self, job_id: str, limit: Optional[int] = None) -> Dict[str, Any]:
        if not job_id:
            return _failure("Job ID is required")
        if limit is None:
            limit = DEFAULT_EXECUTION_LIMIT
        if not isinstance(limit, int) or not 1 <= limit <= MAX_EXECUTION_LIMIT:
            return _failure(f"Limit must be between 1 and {MAX_EXECUTION_LIMIT}")
        if self.scheduler is None:
            return _failure("Job scheduler not initialized")
        try:
            executions = [e.to_dict() for e in self.scheduler.get_job_executions(job_id, limit)]
            return {"success": True, "executions": executions, "total": len(executions)}
        except Exception as e:
            logger.error(f"Error fetching executions for {job_id}: {e}")
            return _failure("Failed to fetch job executions")

    def trigger_job(self, job_id: str) -> Dict[str, Any]:
        if not job_id:
            return _failure("Job ID is required")
        if self.scheduler is None:
            return _failure("Job scheduler not initialized")
        try:
            if self.scheduler.get_job_status(job_id) is None:
                return _failure("Job not found")
            result = self.scheduler.trigger_job(job_id)
            return {
                "success": True,
                "message": "Job triggered successfully",
                "execution_result": result.to_dict(),
            }
        except Exception as e:
            logger.error(f"Error triggering job {job_id}: {e}")
            return _failure("Failed to trigger job")

    def enable_job(self, job_id: str) -> Dict[str, Any]:
        if not job_id:
            return _failure("Job ID is required")
        if self.scheduler is None:
            return _failure("Job scheduler not initialized")
        try:
            self.scheduler.enable_job(job_id)
            return {"success": True, "message": "Job enabled successfully"}
        except ConfigurationError as e:
            logger.error(f"Cannot enable job {job_id}: {e.message}")
            return _failure("Failed to enable job")
        except Exception as e:
            logger.error(f"Error enabling job {job_id}: {e}")
            return _failure("Failed to enable job")

    def disable_job(self, job_id: str) -> Dict[str, Any]:
        if not job_id:
            return _failure("Job ID is required")
        if self.scheduler is None:
            return _failure("Job scheduler not initialized")
        try:
            self.scheduler.disable_job(job_id)
            return {"success": True, "message": "Job disabled successfully"}
        except Exception as e:
            logger.error(f"Error disabling job {job_id}: {e}")
            return _failure("Failed to disable job")

    def summary(self) -> Dict[str, Any]:
        """
        Job counts and overall health.

        A job is in error when its latest execution failed or timed out.
        system_health is 'error' when more than half of the enabled jobs are
        in error, 'warning' when any are, 'healthy' otherwise.
        """
        if self.scheduler is None:
            return _failure("Job scheduler not initialized")
        try:
            jobs = self.scheduler.get_all_jobs()
            enabled = sum(1 for job in jobs if job.enabled)
            with_errors = 0
            last_activity = None

            for job in jobs:
                executions = self.scheduler.get_job_executions(job.id, 1)
                if not executions:
                    continue
                latest = executions[0]
                if last_activity is None or latest.started_at > last_activity:
                    last_activity = latest.started_at
                if latest.status in ERROR_STATUSES:
                    with_errors += 1

            health = "healthy"
            if with_errors:
                health = "error" if with_errors > enabled / 2 else "warning"

            return {
                "success": True,
                "data": {
                    "total_jobs": len(jobs),
                    "enabled_jobs": enabled,
                    "disabled_jobs": len(jobs) - enabled,
                    "jobs_with_errors": with_errors,
                    "last_activity": last_activity.isoformat() if last_activity else None,
                    "system_health": health,
                },
            }
        except Exception as e:
            logger.error(f"Error fetching job summary: {e}")
            return _failure("Failed to fetch job summary")

    def health(self) -> Dict[str, Any]:
        if self.scheduler is None:
            return {
                "success": False,
                "status": "unhealthy",
                "message": "Job scheduler not initialized",
            }
        try:
            jobs = self.scheduler.get_all_jobs()
            return {
                "success": True,
                "status": "healthy",
                "message": "Job system is operational",
                "details": {
                    "total_jobs": len(jobs),
                    "enabled_jobs": sum(1 for job in jobs if job.enabled),
                    "scheduler_running": self.scheduler.running,
                    "armed_timers": len(self.scheduler.armed_timers()),
                },
            }
        except Exception as e:
            logger.error(f"Job system health check failed: {e}")
            return {
                "success": False,
                "status": "unhealthy",
                "message": "Job system health check failed",
            }
