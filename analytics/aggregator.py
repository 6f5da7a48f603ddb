"""
Data Aggregator for job_analytics

Rolls raw metric rows (platform_analytics_raw) up into daily, weekly and
monthly records (platform_analytics_aggregated).

Each aggregated record is recomputed from raw rows every time and upserted
on its full period key, so re-running an aggregation never double counts.
The real-time path follows the same rule: it appends one raw event row and
recomputes today's daily bucket.

Metric aliases rolled into totals:
    applications | total_applications -> total_applications
    views        | total_views        -> total_views
    clicks       | total_clicks       -> total_clicks

Other metric names are not summed, but their metadata is still merged
(last write wins, in recorded_at order).

Usage:
    from analytics.aggregator import DataAggregator

    aggregator = DataAggregator(store)
    aggregator.aggregate_data("user-1", "daily", "2026-01-01", "2026-01-31")
    aggregator.aggregate_all_data({"start": "2026-01-01", "end": "2026-01-31"})
"""

import logging
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from analytics.base import ServiceResponse
from analytics.store import PersistentStore
from analytics.utils import PERIOD_TYPES, DateLike, DateRange, coerce_range, period_bounds


logger = logging.getLogger(__name__)

METRIC_ALIASES = {
    "applications": "total_applications",
    "total_applications": "total_applications",
    "views": "total_views",
    "total_views": "total_views",
    "clicks": "total_clicks",
    "total_clicks": "total_clicks",
}

TOTAL_FIELDS = ("total_applications", "total_views", "total_clicks")

GROUP_KEY = ["user_id", "platform_type", "platform_name", "job_key", "period_start"]


@dataclass
class AggregationResult:
    """Counters of one aggregate_data() run."""

    processed: int
    errors: int
    skipped: int
    duration_ms: int
    period_type: str
    start_date: str
    end_date: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def conversion_rate(applications: float, views: float) -> float:
    """applications / views * 100, 0 when there are no views, clamped to [0, 100]."""
    if views <= 0:
        return 0.0
    return min(100.0, max(0.0, applications / views * 100))


def build_aggregate(group: pd.DataFrame, period_type: str) -> Dict[str, Any]:
    """
    Build one aggregated record from the raw rows of a single group.

    The group must already be ordered by recorded_at.
    """
    first = group.iloc[0]

    sums = group.dropna(subset=["total_field"]).groupby("total_field")["metric_value"].sum()
    totals = {name: max(0.0, float(sums.get(name, 0.0))) for name in TOTAL_FIELDS}

    metadata: Dict[str, Any] = {}
    for value in group["metadata"]:
        if isinstance(value, dict):
            metadata.update(value)

    return {
        "user_id": first["user_id"],
        "platform_type": first["platform_type"],
        "platform_name": first["platform_name"],
        "job_posting_id": first["job_key"] or None,
        "period_type": period_type,
        "period_start": first["period_start"],
        "period_end": first["period_end"],
        **totals,
        "conversion_rate": conversion_rate(totals["total_applications"], totals["total_views"]),
        "metadata": metadata,
    }


class DataAggregator:
    """
    Groups raw metric rows into period buckets and upserts aggregated records.

    Never raises for expected failures; every operation returns a
    ServiceResponse.
    """

    def __init__(self, store: PersistentStore, default_lookback_days: int = 30):
        self.store = store
        self.default_lookback_days = default_lookback_days

    def _default_range(self, now: Optional[datetime] = None) -> DateRange:
        today = (now or datetime.now()).date()
        return DateRange.from_values(today - timedelta(days=self.default_lookback_days), today)

    # ============================================
    # Batch Aggregation
    # ============================================

    def _bucketed_frame(self, user_id: str, period_type: str, window: DateRange) -> pd.DataFrame:
        df = self.store.fetch_raw_metrics_df(user_id, window.start, window.end)
        if df.empty:
            return df

        df = df.sort_values(["recorded_at", "created_at"], kind="stable").reset_index(drop=True)
        # Bucket from each row's own timestamp, not clamped to the window
        bounds = df["recorded_at"].apply(lambda ts: period_bounds(ts, period_type))
        df["period_start"] = bounds.map(lambda b: b[0])
        df["period_end"] = bounds.map(lambda b: b[1])
        df["job_key"] = df["job_posting_id"].fillna("").astype(str)
        df["total_field"] = df["metric_name"].map(METRIC_ALIASES)
        df["metric_value"] = pd.to_numeric(df["metric_value"], errors="coerce").fillna(0.0)
        return df

    def aggregate_data(
        self,
        user_id: str,
        period_type: str,
        start: DateLike,
        end: DateLike
    ) -> ServiceResponse:
        """
        Recompute and upsert every aggregated record of a user in [start, end].

        Args:
            user_id: User whose raw rows are aggregated
            period_type: 'daily', 'weekly' or 'monthly'
            start: Start of the raw-row window
            end: End of the raw-row window (a date covers the whole day)

        Returns:
            ServiceResponse with an AggregationResult
        """
        started = time.monotonic()
        processed = errors = skipped = 0

        if period_type not in PERIOD_TYPES:
            return ServiceResponse.fail(f"Unsupported period type: {period_type}")

        try:
            window = DateRange.from_values(start, end)
            logger.info(
                f"Starting {period_type} aggregation for user {user_id} "
                f"from {window.start:%Y-%m-%d} to {window.end:%Y-%m-%d}"
            )

            df = self._bucketed_frame(user_id, period_type, window)
            logger.debug(f"Found {len(df)} raw rows to process")

            if not df.empty:
                for _, group in df.groupby(GROUP_KEY, sort=True):
                    try:
                        record = build_aggregate(group, period_type)
                        self.store.upsert_aggregated(record)
                        processed += 1
                    except Exception as e:
                        errors += 1
                        logger.error(f"Failed to upsert aggregation group for user {user_id}: {e}")

            result = AggregationResult(
                processed=processed,
                errors=errors,
                skipped=skipped,
                duration_ms=int((time.monotonic() - started) * 1000),
                period_type=period_type,
                start_date=window.start.date().isoformat(),
                end_date=window.end.date().isoformat(),
            )
            logger.info(f"Aggregation completed: {result.to_dict()}")
            return ServiceResponse.ok(result)

        except Exception as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.error(f"Aggregation failed after {duration_ms}ms: {e}")
            return ServiceResponse.fail(
                str(e) or "Unknown aggregation error",
                processed=processed, errors=errors, skipped=skipped, duration_ms=duration_ms
            )

    def aggregate_all_data(self, date_range: Any = None, period_types: Sequence[str] = PERIOD_TYPES) -> ServiceResponse:
        """
        Aggregate every user with raw rows in range, for every period type.

        A failing (user, period) combination is logged and skipped.

        Args:
            date_range: Raw-row window (defaults to the last 30 days)
            period_types: Period types to rebuild. Scheduled runs pass only
                their own period so a one-day window never overwrites a
                weekly or monthly bucket with partial totals.

        Returns:
            ServiceResponse with a list of AggregationResult and metadata
            users / failures
        """
        try:
            window = coerce_range(date_range) or self._default_range()
            users = self.store.distinct_raw_users(window.start, window.end)
            logger.info(f"Found {len(users)} users with analytics data to aggregate")

            results: List[AggregationResult] = []
            failures = 0
            for user_id in users:
                for period_type in period_types:
                    response = self.aggregate_data(user_id, period_type, window.start, window.end)
                    if response.success:
                        results.append(response.data)
                    else:
                        failures += 1
                        logger.error(
                            f"Failed to aggregate {period_type} data for user {user_id}: {response.error}"
                        )

            return ServiceResponse.ok(results, users=len(users), failures=failures)

        except Exception as e:
            logger.error(f"aggregate_all_data failed: {e}")
            return ServiceResponse.fail(str(e) or "Unknown error in aggregate_all_data")

    # ============================================
    # Real-Time Updates
    # ============================================

    def update_real_time_analytics(
        self,
        user_id: str,
        platform_type: str,
        platform_name: str,
        metric_name: str,
        value: float,
        job_posting_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> ServiceResponse:
        """
        Record a single event and refresh today's daily bucket.

        Each call appends its own raw row (every call counts once), then the
        daily record is recomputed from raw rows, so batch runs over the same
        day produce the same totals.
        """
        now = now or datetime.now()
        try:
            self.store.insert_raw_metrics(user_id, [{
                "platform_type": platform_type,
                "platform_name": platform_name,
                "job_posting_id": job_posting_id,
                "metric_name": metric_name,
                "metric_value": value,
                "metadata": {"source": "real_time", "event_id": str(uuid.uuid4())},
                "recorded_at": now,
            }])

            today = now.date()
            response = self.aggregate_data(user_id, "daily", today, today)
            if not response.success:
                return response

            period_start, period_end = period_bounds(now, "daily")
            record = self.store.get_aggregated(
                user_id=user_id,
                platform_type=platform_type,
                platform_name=platform_name,
                job_posting_id=job_posting_id,
                period_type="daily",
                period_start=period_start,
                period_end=period_end,
            )
            return ServiceResponse.ok(record)

        except Exception as e:
            logger.error(f"Real-time update failed for user {user_id}: {e}")
            return ServiceResponse.fail(str(e) or "Failed to update real-time analytics")

    # ============================================
    # Read Paths
    # ============================================

    def get_aggregated_analytics(self, user_id: str, period_type: str, date_range: Any = None) -> ServiceResponse:
        try:
            window = coerce_range(date_range) or self._default_range()
            rows = self.store.list_aggregated(
                user_id, period_type, window.start.date(), window.end.date()
            )
            return ServiceResponse.ok(rows)
        except Exception as e:
            logger.error(f"Failed to get aggregated analytics: {e}")
            return ServiceResponse.fail("Failed to get aggregated analytics")

    def get_platform_breakdown(self, user_id: str, date_range: Any = None) -> ServiceResponse:
        """Applications per platform from daily records, with percentage share."""
        try:
            window = coerce_range(date_range) or self._default_range()
            rows = self.store.list_aggregated(
                user_id, "daily", window.start.date(), window.end.date()
            )
            if not rows:
                return ServiceResponse.ok([])

            df = pd.DataFrame(rows)
            per_platform = df.groupby("platform_name")["total_applications"].sum()
            total = float(per_platform.sum())

            breakdown = [
                {
                    "platform_name": name,
                    "applications": float(applications),
                    "percentage": (float(applications) / total * 100) if total > 0 else 0.0,
                }
                for name, applications in per_platform.items()
            ]
            breakdown.sort(key=lambda item: item["applications"], reverse=True)
            return ServiceResponse.ok(breakdown)

        except Exception as e:
            logger.error(f"Failed to get platform breakdown: {e}")
            return ServiceResponse.fail("Failed to get platform breakdown")
