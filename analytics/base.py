"""
Base Platform Service for job_analytics

This module provides the base class and shared plumbing for every platform
service (company website, referrals, ...). Concrete services only implement
the three platform-specific operations; persistence helpers are shared and
parameterized by (platform_type, platform_name).

Features:
- Sliding-window RateLimiter per user
- Uniform ServiceResponse envelope (services never raise for expected failures)
- Platform config / sync job / raw metric persistence through PersistentStore

Usage:
    from analytics.base import BasePlatformService, ServiceResponse

    class MyService(BasePlatformService):
        def initialize(self, config) -> ServiceResponse: ...
        def fetch_analytics(self, user_id, date_range=None) -> ServiceResponse: ...
        def validate_config(self, config) -> ServiceResponse: ...
"""

import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time
from typing import Any, Callable, Deque, Dict, List, Optional

from analytics.store import PersistentStore
from analytics.utils import DateLike, parse_datetime


class ValidationError(Exception):
    """Raised when a platform configuration is malformed at save time."""


# ============================================
# Service Response
# ============================================

@dataclass
class ServiceResponse:
    """
    Result envelope returned by every platform service and the aggregator.

    Attributes:
        success: Whether the operation succeeded
        data: Operation payload
        error: Human-readable error message on failure
        metadata: Extra context (platform, operation, counters)
    """

    success: bool
    data: Any = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, data: Any = None, **metadata: Any) -> "ServiceResponse":
        return cls(success=True, data=data, metadata=metadata)

    @classmethod
    def fail(cls, error: str, data: Any = None, **metadata: Any) -> "ServiceResponse":
        return cls(success=False, data=data, error=error, metadata=metadata)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": self.success}
        if self.data is not None:
            result["data"] = self.data
        if self.error:
            result["error"] = self.error
        if self.metadata:
            result["metadata"] = self.metadata
        return result


# ============================================
# Rate Limiter
# ============================================

class RateLimiter:
    """
    Per-key sliding-window request counter.

    At most max_requests timestamps are held per key within the trailing
    window_ms; older entries are purged on every check. State is in memory
    and resets on restart.
    """

    def __init__(
        self,
        max_requests: int = 100,
        window_ms: int = 60000,
        clock: Callable[[], float] = time.monotonic
    ):
        self.max_requests = max_requests
        self.window_ms = window_ms
        self._clock = clock
        self._requests: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def _purge(self, key: str, now: float) -> Deque[float]:
        window_start = now - self.window_ms / 1000.0
        timestamps = self._requests[key]
        while timestamps and timestamps[0] <= window_start:
            timestamps.popleft()
        return timestamps

    def check_limit(self, key: str) -> bool:
        """Record a request for key and return False if the window is full."""
        with self._lock:
            now = self._clock()
            timestamps = self._purge(key, now)
            if len(timestamps) >= self.max_requests:
                return False
            timestamps.append(now)
            return True

    def get_remaining_requests(self, key: str) -> int:
        with self._lock:
            timestamps = self._purge(key, self._clock())
            return max(0, self.max_requests - len(timestamps))


# ============================================
# Base Platform Service
# ============================================

class BasePlatformService(ABC):
    """
    Abstract base class for all platform services.

    Provides common functionality:
    - Rate limiting per user
    - Platform config persistence with validation before save
    - Raw metric persistence (idempotent inserts)
    - Sync job bookkeeping
    - Consistent error envelopes via handle_error()

    Subclasses must implement:
    - initialize(): Open/validate the external connection for a config
    - fetch_analytics(): Return normalized raw metric rows
    - validate_config(): Structural validation of a config
    """

    def __init__(
        self,
        store: PersistentStore,
        platform_type: str,
        platform_name: str,
        max_requests: int = 100,
        window_ms: int = 60000,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the base service.

        Args:
            store: Persistent store shared by all services
            platform_type: Platform family (e.g. 'website', 'referral')
            platform_name: Platform instance (e.g. 'company_website')
            max_requests: Rate limit per user within the window
            window_ms: Rate limit window in milliseconds
            clock: Monotonic clock used by the rate limiter
            logger: Optional custom logger
        """
        self.store = store
        self.platform_type = platform_type
        self.platform_name = platform_name
        self.rate_limiter = RateLimiter(max_requests, window_ms, clock)
        self.logger = logger or logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @abstractmethod
    def initialize(self, config: Dict[str, Any]) -> ServiceResponse:
        raise NotImplementedError("Subclasses must implement initialize()")

    @abstractmethod
    def fetch_analytics(self, user_id: str, date_range: Any = None) -> ServiceResponse:
        """
        Fetch raw metric rows for a user.

        Args:
            user_id: User whose analytics are fetched
            date_range: DateRange, {'start','end'} mapping or None (last 30 days)

        Returns:
            ServiceResponse whose data is a list of raw metric row dicts
        """
        raise NotImplementedError("Subclasses must implement fetch_analytics()")

    @abstractmethod
    def validate_config(self, config: Dict[str, Any]) -> ServiceResponse:
        raise NotImplementedError("Subclasses must implement validate_config()")

    # ============================================
    # Rate Limiting
    # ============================================

    def check_rate_limit(self, user_id: str) -> bool:
        return self.rate_limiter.check_limit(user_id)

    def get_remaining_requests(self, user_id: str) -> int:
        return self.rate_limiter.get_remaining_requests(user_id)

    def rate_limit_exceeded(self, user_id: str) -> ServiceResponse:
        return ServiceResponse.fail(
            "Rate limit exceeded",
            remaining_requests=self.get_remaining_requests(user_id)
        )

    # ============================================
    # Row Helpers
    # ============================================

    def make_metric(
        self,
        metric_name: str,
        metric_value: float,
        recorded_at: DateLike,
        job_posting_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        snapshot: bool = False,
        identity: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Build a raw metric row for this platform.

        Args:
            snapshot: The value is a daily total that a later fetch may
                restate; storing it again overwrites the stored value
            identity: Metadata keys that identify the row (default: all of
                metadata for events, none for snapshots)
        """
        if isinstance(recorded_at, date) and not isinstance(recorded_at, datetime):
            recorded_at = datetime.combine(recorded_at, dt_time.min)
        row = {
            "platform_type": self.platform_type,
            "platform_name": self.platform_name,
            "job_posting_id": job_posting_id,
            "metric_name": metric_name,
            "metric_value": float(metric_value),
            "metadata": metadata or {},
            "recorded_at": parse_datetime(recorded_at),
        }
        if snapshot:
            row["snapshot"] = True
            row["identity"] = identity or {}
        elif identity is not None:
            row["identity"] = identity
        return row

    # ============================================
    # Persistence Helpers
    # ============================================

    def save_platform_config(
        self,
        user_id: str,
        config_data: Dict[str, Any],
        is_active: bool = True
    ) -> ServiceResponse:
        """
        Validate and persist a user's config for this platform.

        Invalid configs are rejected before anything is written.
        """
        try:
            validation = self.validate_config(config_data)
            if not validation.success:
                raise ValidationError(validation.error or "Invalid configuration")

            row = self.store.upsert_platform_config({
                "user_id": user_id,
                "platform_type": self.platform_type,
                "platform_name": self.platform_name,
                "config_data": config_data,
                "is_active": is_active,
            })
            self.logger.info(f"Saved {self.platform_name} config for user {user_id}")
            return ServiceResponse.ok(row)

        except ValidationError as e:
            self.logger.warning(f"Rejected {self.platform_name} config for user {user_id}: {e}")
            return ServiceResponse.fail(str(e), data=False, platform=self.platform_name)
        except Exception as e:
            return self.handle_error(e, "save_platform_config")

    def get_platform_config(self, user_id: str) -> ServiceResponse:
        try:
            row = self.store.get_platform_config(user_id, self.platform_type, self.platform_name)
            return ServiceResponse.ok(row)
        except Exception as e:
            return self.handle_error(e, "get_platform_config")

    def save_analytics_data(self, user_id: str, rows: List[Dict[str, Any]]) -> ServiceResponse:
        """
        Persist fetched raw metric rows.

        Rows already stored (same observation) are skipped, so the same
        batch can be written more than once without duplicates.
        """
        try:
            if not self.check_rate_limit(user_id):
                return self.rate_limit_exceeded(user_id)

            inserted = self.store.insert_raw_metrics(user_id, rows)
            self.logger.debug(
                f"{self.platform_name}: stored {inserted}/{len(rows)} raw rows for user {user_id}"
            )
            return ServiceResponse.ok({"received": len(rows), "inserted": inserted})
        except Exception as e:
            return self.handle_error(e, "save_analytics_data")

    def update_last_sync(self, user_id: str, synced_at: Optional[datetime] = None) -> ServiceResponse:
        try:
            synced_at = synced_at or datetime.now()
            self.store.update_last_sync(user_id, self.platform_type, self.platform_name, synced_at)
            return ServiceResponse.ok({"last_sync_at": synced_at})
        except Exception as e:
            return self.handle_error(e, "update_last_sync")

    def create_sync_job(self, user_id: str, job_data: Optional[Dict[str, Any]] = None) -> ServiceResponse:
        try:
            config = self.store.get_platform_config(user_id, self.platform_type, self.platform_name)
            if not config:
                return ServiceResponse.fail(
                    f"Platform configuration not found for {self.platform_type}/{self.platform_name}"
                )

            now = datetime.now()
            sync_job = self.store.insert_sync_job({
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "platform_config_id": config["id"],
                "job_type": "sync",
                "status": "pending",
                "metadata": job_data or {},
                "result": None,
                "error_message": None,
                "created_at": now,
                "updated_at": now,
                "completed_at": None,
            })
            return ServiceResponse.ok(sync_job)
        except Exception as e:
            return self.handle_error(e, "create_sync_job")

    def update_sync_job(
        self,
        sync_job_id: str,
        status: str,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None
    ) -> ServiceResponse:
        try:
            now = datetime.now()
            fields: Dict[str, Any] = {"status": status, "updated_at": now}
            if result is not None:
                fields["result"] = result
            if error:
                fields["error_message"] = error
            if status in ("completed", "failed"):
                fields["completed_at"] = now

            return ServiceResponse.ok(self.store.update_sync_job(sync_job_id, **fields))
        except Exception as e:
            return self.handle_error(e, "update_sync_job")

    def get_sync_job_status(self, user_id: str) -> ServiceResponse:
        """Latest sync job for this user and platform, or None."""
        try:
            config = self.store.get_platform_config(user_id, self.platform_type, self.platform_name)
            if not config:
                return ServiceResponse.ok(None)
            return ServiceResponse.ok(self.store.latest_sync_job(user_id, config["id"]))
        except Exception as e:
            return self.handle_error(e, "get_sync_job_status")

    def handle_error(self, error: Exception, operation: str) -> ServiceResponse:
        """Log an error and convert it into a failed ServiceResponse."""
        self.logger.error(f"{self.platform_name} - {operation} error: {error}")
        return ServiceResponse.fail(
            str(error) or error.__class__.__name__,
            platform=self.platform_name,
            operation=operation,
            timestamp=datetime.now().isoformat()
        )

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.platform_type}/{self.platform_name})"
