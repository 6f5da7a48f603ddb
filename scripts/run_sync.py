#!/usr/bin/env python3
"""
Platform Sync Runner for job_analytics

Pulls analytics from the configured platforms into platform_analytics_raw:
1. Validates configuration at startup (fail-fast)
2. Opens the DuckDB store and builds the platform registry
3. Syncs one user (every active platform, or one platform), or one
   platform for every configured user

Raw rows are inserted only when absent, so overlapping windows are safe.

Usage:
    # Incremental sync of the website platform for every configured user
    python scripts/run_sync.py --platform website:company_website

    # Every active platform of one user, last 7 days
    python scripts/run_sync.py --user-id u-123 --lookback-days 7

    # List registered platforms
    python scripts/run_sync.py --list-platforms

Exit Codes:
    0 - Success
    1 - Configuration or argument error
    2 - One or more syncs failed
"""

import sys
from datetime import datetime, timedelta
from pathlib import Path

# Add project root to path for imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from analytics.config import ConfigurationError, get_config
from analytics.registry import build_default_registry
from analytics.store import PersistentStore
from analytics.utils import DateRange
from scripts.utils.cli import (
    create_run_parser,
    print_banner,
    print_completion,
    print_step,
    setup_script_logging,
)


def parse_args():
    parser = create_run_parser(
        "Sync job_analytics platform data",
        default_lookback_days=30,
        script="scripts/run_sync.py",
    )
    parser.add_argument("--user-id", help="Sync a single user")
    parser.add_argument(
        "--platform",
        metavar="TYPE:NAME",
        help="Platform to sync, e.g. website:company_website or referral:internal_referrals"
    )
    parser.add_argument(
        "--list-platforms",
        action="store_true",
        help="List registered platforms and exit"
    )
    return parser.parse_args()


def _window(args) -> DateRange:
    """Explicit dates, else a trailing window ending now."""
    if args.start_date:
        return DateRange.from_values(args.start_date, args.end_date or datetime.now())
    return DateRange(datetime.now() - timedelta(days=args.lookback_days), datetime.now())


def main() -> int:
    args = parse_args()
    print_banner("Platform Sync")

    print_step(1, "Loading configuration")
    try:
        config = get_config()
    except ConfigurationError as e:
        print(f"\nConfiguration error:\n{e}")
        return 1

    logger = setup_script_logging(config, args.verbose)

    platform = None
    if args.platform:
        platform_type, _, platform_name = args.platform.partition(":")
        if not platform_name:
            logger.error("--platform must look like TYPE:NAME")
            return 1
        platform = (platform_type, platform_name)

    if not args.user_id and platform is None and not args.list_platforms:
        logger.error("Give --user-id, --platform, or both")
        return 1

    print_step(2, f"Opening store at {config.duckdb_path}")
    store = PersistentStore(config.duckdb_path)
    registry = build_default_registry(store, lookback_days=config.sync_lookback_days)

    try:
        if args.list_platforms:
            print("\nRegistered Platforms:")
            print("-" * 60)
            for entry in registry.registered_platforms():
                print(f"  {entry['platform_type']}:{entry['platform_name']}")
            return 0

        if platform and not registry.is_registered(*platform):
            logger.error(f"Platform not registered: {args.platform}")
            return 1

        if args.dry_run:
            logger.info("DRY RUN - Configuration is valid, nothing synced")
            return 0

        print_step(3, "Syncing")

        if args.user_id is None:
            summary = registry.sync_platform_for_all_users(*platform)
            for user_id, error in summary["errors"].items():
                logger.error(f"User {user_id}: {error}")
            print_completion("SYNC", summary["failed"] == 0, {
                "users": summary["users"],
                "succeeded": summary["succeeded"],
                "records_processed": summary["records_processed"],
            })
            return 0 if summary["failed"] == 0 else 2

        try:
            window = _window(args)
        except ValueError as e:
            logger.error(f"Invalid date range: {e}")
            return 1

        if platform:
            responses = [registry.sync_platform(args.user_id, *platform, window)]
        else:
            responses = registry.sync_all_platforms(args.user_id, window)

        failed = [r for r in responses if not r.success]
        for response in failed:
            logger.error(
                f"{response.metadata.get('platform_type')}:{response.metadata.get('platform_name')} "
                f"failed: {response.error}"
            )
        print_completion("SYNC", not failed, {
            "platforms": len(responses),
            "failed": len(failed),
            "records_processed": sum(r.data["records_processed"] for r in responses if r.success),
        })
        return 0 if not failed else 2

    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
