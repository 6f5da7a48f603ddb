"""
Configuration Loader for job_analytics

This module provides centralized configuration management with:
- Environment variable loading via python-dotenv
- Validation on first access
- Human-readable error messages with actionable fixes

Usage:
    from analytics.config import get_config

    config = get_config()
    print(config.duckdb_path)

If validation fails, a ConfigurationError is raised with a clear explanation
of what's wrong and how to fix it.
"""

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# ============================================
# Custom Exception
# ============================================


class ConfigurationError(Exception):
    """
    Raised when configuration is invalid or incomplete.

    Also used by the scheduler for job configurations it cannot run
    (unknown job kind, unbound platform). Such jobs are never scheduled.

    Attributes:
        message: Human-readable description of the error
        fix: Actionable instructions to resolve the issue
    """

    def __init__(self, message: str, fix: str = ""):
        self.message = message
        self.fix = fix
        super().__init__(self._format_error())

    def _format_error(self) -> str:
        """Format error message with fix instructions."""
        if not self.fix:
            return self.message
        return f"{self.message}\n\nHOW TO FIX:\n{self.fix}"


# ============================================
# Configuration Data Class
# ============================================


@dataclass
class Config:
    """
    Validated configuration container.

    Attributes:
        duckdb_path: Path to the DuckDB database file
        log_dir: Directory for log files
        log_level: Logging level string (DEBUG, INFO, etc.)
        raw_retention_days: Days of raw metric rows kept by the cleanup job
        sync_lookback_days: Window used for a platform's first sync
        shutdown_grace_seconds: How long shutdown waits for running jobs
        scheduler_max_workers: Size of the job execution thread pool
        slack_webhook_url: Optional webhook for permanent-failure alerts
    """

    duckdb_path: Path
    log_dir: Path
    log_level: str
    raw_retention_days: int
    sync_lookback_days: int
    shutdown_grace_seconds: int
    scheduler_max_workers: int
    slack_webhook_url: Optional[str]


# ============================================
# Configuration Loader
# ============================================

_config_instance: Optional[Config] = None

PROJECT_ROOT = Path(__file__).parent.parent


def _resolve(path_str: str) -> Path:
    path = Path(path_str)
    if not path.is_absolute():
        path = (PROJECT_ROOT / path).resolve()
    return path


def _positive_int(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        value = int(raw)
        if value < 1:
            raise ValueError("must be positive")
    except ValueError:
        raise ConfigurationError(
            message=f"Invalid {name} value: {raw}",
            fix=f"{name} must be a positive integer (default: {default})"
        )
    return value


def get_config(force_reload: bool = False) -> Config:
    """
    Load and validate configuration from environment variables.

    The configuration is cached after first load. Use force_reload=True
    to reload from environment (useful for testing).

    Args:
        force_reload: If True, reload configuration even if already cached

    Returns:
        Validated Config object

    Raises:
        ConfigurationError: If any configuration value is invalid
    """
    global _config_instance

    if _config_instance is not None and not force_reload:
        return _config_instance

    env_locations = [
        Path.cwd() / ".env",
        PROJECT_ROOT / ".env",
    ]

    for env_path in env_locations:
        if env_path.exists():
            load_dotenv(env_path)
            break

    logger = logging.getLogger("config")

    # ============================================
    # Storage and Logging
    # ============================================

    duckdb_path = _resolve(os.getenv("DUCKDB_PATH", "./data/analytics.duckdb"))
    if not duckdb_path.parent.exists():
        try:
            duckdb_path.parent.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created data directory: {duckdb_path.parent}")
        except PermissionError:
            raise ConfigurationError(
                message=f"Cannot create DuckDB directory: {duckdb_path.parent}",
                fix=(
                    f"1. Create the directory manually: mkdir -p {duckdb_path.parent}\n"
                    "2. Or set DUCKDB_PATH to a writable location in .env"
                )
            )

    log_dir = _resolve(os.getenv("LOG_DIR", "./logs"))

    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if log_level not in valid_log_levels:
        raise ConfigurationError(
            message=f"Invalid LOG_LEVEL: {log_level}",
            fix=f"LOG_LEVEL must be one of: {', '.join(sorted(valid_log_levels))}"
        )

    # ============================================
    # Scheduler Settings
    # ============================================

    raw_retention_days = _positive_int("RAW_RETENTION_DAYS", "90")
    sync_lookback_days = _positive_int("SYNC_LOOKBACK_DAYS", "30")
    shutdown_grace_seconds = _positive_int("SHUTDOWN_GRACE_SECONDS", "30")
    scheduler_max_workers = _positive_int("SCHEDULER_MAX_WORKERS", "10")

    slack_webhook_url = os.getenv("SLACK_WEBHOOK_URL") or None
    if slack_webhook_url and not slack_webhook_url.startswith("https://"):
        raise ConfigurationError(
            message="SLACK_WEBHOOK_URL must be an https:// URL.",
            fix=(
                "Create an incoming webhook in Slack and set:\n"
                "   SLACK_WEBHOOK_URL=https://hooks.slack.com/services/...\n"
                "Or leave it unset to log alerts only."
            )
        )

    _config_instance = Config(
        duckdb_path=duckdb_path,
        log_dir=log_dir,
        log_level=log_level,
        raw_retention_days=raw_retention_days,
        sync_lookback_days=sync_lookback_days,
        shutdown_grace_seconds=shutdown_grace_seconds,
        scheduler_max_workers=scheduler_max_workers,
        slack_webhook_url=slack_webhook_url,
    )

    logger.info("Configuration loaded and validated successfully")
    logger.info(f"  DuckDB Path: {duckdb_path}")
    logger.info(f"  Raw Retention: {raw_retention_days} days")
    logger.info(f"  Log Level: {log_level}")
    logger.info(f"  Slack Alerts: {'Enabled' if slack_webhook_url else 'Disabled'}")

    return _config_instance


def setup_logging(config: Config) -> logging.Logger:
    """
    Configure application logging based on Config settings.

    Creates a logger with both console and file handlers.
    Log files are rotated daily.

    Args:
        config: Validated configuration object

    Returns:
        Configured application logger
    """
    from logging.handlers import TimedRotatingFileHandler

    logger = logging.getLogger("job_analytics")
    logger.setLevel(getattr(logging, config.log_level))
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, config.log_level))
    console_handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    ))
    logger.addHandler(console_handler)

    config.log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = TimedRotatingFileHandler(
        config.log_dir / "job_analytics.log",
        when="midnight",
        interval=1,
        backupCount=30,
        encoding="utf-8"
    )
    file_handler.setLevel(getattr(logging, config.log_level))
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"
    ))
    logger.addHandler(file_handler)

    # Package loggers (analytics.*, scheduler.*) propagate to the root,
    # route them through the same handlers.
    for name in ("analytics", "scheduler"):
        package_logger = logging.getLogger(name)
        package_logger.setLevel(getattr(logging, config.log_level))
        package_logger.handlers = list(logger.handlers)
        package_logger.propagate = False

    return logger
