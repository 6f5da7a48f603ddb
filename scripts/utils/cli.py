"""
Command-Line Interface Utilities for job_analytics Scripts

This module provides standardized CLI argument parsing and output:
- Common argument definitions (--start-date, --lookback-days, etc.)
- Date range calculation from arguments
- Logging setup on top of the application config
- Banner / step / completion printing

Usage:
    from scripts.utils.cli import create_run_parser, get_date_range_from_args

    parser = create_run_parser("Aggregation Runner", default_lookback_days=7)
    parser.add_argument("--user-id", help="Single user")
    args = parser.parse_args()

    start, end = get_date_range_from_args(args)
"""

import argparse
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from analytics.config import Config, setup_logging


def create_run_parser(
    description: str,
    default_lookback_days: int = 30,
    script: str = "script.py"
) -> argparse.ArgumentParser:
    """
    Create a standardized argument parser for runner scripts.

    Includes common arguments:
    - --start-date / --end-date: Explicit window (YYYY-MM-DD)
    - --lookback-days: Number of days to look back
    - --verbose/-v: Enable verbose logging
    - --dry-run: Validate only, don't write

    Args:
        description: Description for the argument parser
        default_lookback_days: Default lookback period
        script: Script path shown in the examples

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        description=description,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python {script}                           # Last {days} days (default)
  python {script} --lookback-days 90        # Last 90 days
  python {script} --start-date 2026-01-01   # From specific date
  python {script} --dry-run                 # Validate config only
        """.format(script=script, days=default_lookback_days)
    )

    date_group = parser.add_argument_group('Date Range Options')

    date_group.add_argument(
        "--start-date",
        type=str,
        metavar="YYYY-MM-DD",
        help="Start date in YYYY-MM-DD format"
    )

    date_group.add_argument(
        "--end-date",
        type=str,
        metavar="YYYY-MM-DD",
        help="End date in YYYY-MM-DD format (defaults to yesterday)"
    )

    date_group.add_argument(
        "--lookback-days",
        type=int,
        default=default_lookback_days,
        metavar="N",
        help=f"Number of days to look back (default: {default_lookback_days})"
    )

    exec_group = parser.add_argument_group('Execution Options')

    exec_group.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging"
    )

    exec_group.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate configuration only, don't write data"
    )

    return parser


def get_date_range_from_args(
    args: argparse.Namespace,
    now: Optional[datetime] = None
) -> Tuple[str, str]:
    """
    Calculate date range from parsed command-line arguments.

    Priority:
    1. --start-date/--end-date explicit dates
    2. --lookback-days ending yesterday

    Returns:
        Tuple of (start_date, end_date) in YYYY-MM-DD format

    Raises:
        ValueError: If a date is malformed or the range is inverted
    """
    # Today is still accumulating raw rows
    yesterday = (now or datetime.now()) - timedelta(days=1)
    yesterday_str = yesterday.strftime('%Y-%m-%d')

    if args.start_date:
        start, end = args.start_date, args.end_date or yesterday_str
        if datetime.strptime(end, '%Y-%m-%d') < datetime.strptime(start, '%Y-%m-%d'):
            raise ValueError(f"--end-date {end} is before --start-date {start}")
        return start, end

    if args.lookback_days < 1:
        raise ValueError("--lookback-days must be at least 1")

    start = yesterday - timedelta(days=args.lookback_days - 1)
    return start.strftime('%Y-%m-%d'), yesterday_str


def setup_script_logging(config: Config, verbose: bool = False) -> logging.Logger:
    """Application logging, switched to DEBUG when --verbose is given."""
    logger = setup_logging(config)
    if verbose:
        for name in ("job_analytics", "analytics", "scheduler"):
            package_logger = logging.getLogger(name)
            package_logger.setLevel(logging.DEBUG)
            for handler in package_logger.handlers:
                handler.setLevel(logging.DEBUG)
    return logger


def print_banner(title: str, timestamp: bool = True) -> None:
    """
    Print a formatted banner for script startup.

    Example:
        >>> print_banner("Aggregation Runner")
        ============================================================
        job_analytics - Aggregation Runner
        Started at: 2026-02-02 10:30:00
        ============================================================
    """
    print("=" * 60)
    print(f"job_analytics - {title}")
    if timestamp:
        print(f"Started at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("=" * 60)


def print_step(step_num: int, description: str) -> None:
    print(f"\nStep {step_num}: {description}...")


def print_completion(title: str, success: bool, stats: Optional[Dict[str, object]] = None) -> None:
    """
    Print a completion summary.

    Args:
        title: What ran (e.g. "AGGREGATION")
        success: Whether the run was successful
        stats: Counters to list on success
    """
    print("\n" + "=" * 60)

    if success:
        print(f"{title} COMPLETED SUCCESSFULLY")
        print("=" * 60)
        for key, value in (stats or {}).items():
            label = key.replace("_", " ").capitalize()
            print(f"{label}: {value:,}" if isinstance(value, int) else f"{label}: {value}")
    else:
        print(f"{title} FAILED")
        print("=" * 60)
        print("Check the logs for error details.")

    print(f"Finished at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("=" * 60)
