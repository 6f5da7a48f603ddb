#!/usr/bin/env python3
"""
Aggregation Runner for job_analytics

Rebuilds aggregated analytics from raw metric rows for a date window:
1. Validates configuration at startup (fail-fast)
2. Opens the DuckDB store
3. Recomputes daily / weekly / monthly buckets for one user or all users

Aggregation is a full recompute, so re-running over the same window is safe.

Usage:
    # Last 30 days, all users, all periods
    python scripts/run_aggregation.py

    # One user, weekly only
    python scripts/run_aggregation.py --user-id u-123 --period weekly

    # Explicit window
    python scripts/run_aggregation.py --start-date 2026-01-01 --end-date 2026-01-31

Exit Codes:
    0 - Success
    1 - Configuration or argument error
    2 - Aggregation error
"""

import sys
from pathlib import Path

# Add project root to path for imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from analytics.aggregator import DataAggregator
from analytics.config import ConfigurationError, get_config
from analytics.store import PersistentStore
from analytics.utils import PERIOD_TYPES
from scripts.utils.cli import (
    create_run_parser,
    get_date_range_from_args,
    print_banner,
    print_completion,
    print_step,
    setup_script_logging,
)


def parse_args():
    parser = create_run_parser(
        "Rebuild job_analytics aggregates from raw metrics",
        script="scripts/run_aggregation.py",
    )
    parser.add_argument("--user-id", help="Aggregate a single user (default: all users)")
    parser.add_argument(
        "--period",
        choices=PERIOD_TYPES,
        action="append",
        help="Period type to rebuild; repeatable (default: all)"
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    print_banner("Aggregation Runner")

    print_step(1, "Loading configuration")
    try:
        config = get_config()
    except ConfigurationError as e:
        print(f"\nConfiguration error:\n{e}")
        return 1

    logger = setup_script_logging(config, args.verbose)

    try:
        start, end = get_date_range_from_args(args)
    except ValueError as e:
        logger.error(f"Invalid date range: {e}")
        return 1

    period_types = args.period or list(PERIOD_TYPES)
    logger.info(f"Window: {start} to {end}, periods: {', '.join(period_types)}")

    if args.dry_run:
        logger.info("DRY RUN - Configuration is valid, nothing aggregated")
        return 0

    print_step(2, f"Opening store at {config.duckdb_path}")
    store = PersistentStore(config.duckdb_path)
    aggregator = DataAggregator(store, default_lookback_days=args.lookback_days)

    print_step(3, "Aggregating")
    processed = failures = 0
    try:
        if args.user_id:
            for period_type in period_types:
                response = aggregator.aggregate_data(args.user_id, period_type, start, end)
                if response.success:
                    processed += response.data.processed
                else:
                    failures += 1
                    logger.error(f"{period_type} aggregation failed: {response.error}")
        else:
            response = aggregator.aggregate_all_data({"start": start, "end": end}, period_types)
            if not response.success:
                logger.error(f"Aggregation failed: {response.error}")
                print_completion("AGGREGATION", False)
                return 2
            processed = sum(result.processed for result in response.data)
            failures = response.metadata.get("failures", 0)
    finally:
        store.close()

    print_completion(
        "AGGREGATION",
        failures == 0,
        {"records_processed": processed, "failures": failures},
    )
    return 0 if failures == 0 else 2


if __name__ == "__main__":
    sys.exit(main())
