"""
Platform Service Registry for job_analytics

Maps (platform_type, platform_name) to a service factory and lazily keeps
one service instance per key. Drives the per-user sync workflow:

    create sync job -> initialize -> fetch -> save raw rows
        -> update last sync -> close sync job (completed / failed)

The registry is an explicit object built once at startup and handed to the
scheduler, so tests can register fake services on a fresh registry.

Usage:
    from analytics.registry import build_default_registry

    registry = build_default_registry(store)
    results = registry.sync_all_platforms("user-1")
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from analytics.base import BasePlatformService, ServiceResponse
from analytics.referrals import ReferralsService
from analytics.store import PersistentStore
from analytics.utils import DateRange, coerce_range
from analytics.website import CompanyWebsiteService


logger = logging.getLogger(__name__)

ServiceKey = Tuple[str, str]
ServiceFactory = Callable[[PersistentStore], BasePlatformService]


class PlatformServiceRegistry:
    """
    Registry of platform services keyed by (platform_type, platform_name).
    """

    def __init__(self, store: PersistentStore, lookback_days: int = 30):
        """
        Args:
            store: Persistent store handed to every service factory
            lookback_days: Window of a platform's first sync for a user
        """
        self.store = store
        self.lookback_days = lookback_days
        self._factories: Dict[ServiceKey, ServiceFactory] = {}
        self._instances: Dict[ServiceKey, BasePlatformService] = {}
        self._lock = threading.RLock()
        # initialize() + fetch_analytics() run under the key's lock
        self._sync_locks: Dict[ServiceKey, threading.Lock] = {}

    # ============================================
    # Registration
    # ============================================

    def register(self, platform_type: str, platform_name: str, factory: ServiceFactory) -> None:
        key = (platform_type, platform_name)
        with self._lock:
            self._factories[key] = factory
            self._instances.pop(key, None)
            self._sync_locks.setdefault(key, threading.Lock())
        logger.debug(f"Registered platform service {platform_type}:{platform_name}")

    def get_service(self, platform_type: str, platform_name: str) -> Optional[BasePlatformService]:
        """Return the singleton service for a key, creating it on first use."""
        key = (platform_type, platform_name)
        with self._lock:
            if key in self._instances:
                return self._instances[key]
            factory = self._factories.get(key)
            if factory is None:
                return None
            instance = factory(self.store)
            self._instances[key] = instance
            return instance

    def registered_platforms(self) -> List[Dict[str, str]]:
        with self._lock:
            return [
                {"platform_type": platform_type, "platform_name": platform_name}
                for platform_type, platform_name in self._factories
            ]

    def is_registered(self, platform_type: str, platform_name: str) -> bool:
        return (platform_type, platform_name) in self._factories

    def clear_instances(self) -> None:
        with self._lock:
            self._instances.clear()

    def validate_platform_config(
        self,
        platform_type: str,
        platform_name: str,
        config: Dict[str, Any]
    ) -> ServiceResponse:
        service = self.get_service(platform_type, platform_name)
        if service is None:
            return ServiceResponse.fail(
                f"Service not found for platform: {platform_type}:{platform_name}", data=False
            )
        return service.validate_config(config)

    # ============================================
    # Sync Workflow
    # ============================================

    def sync_platform(
        self,
        user_id: str,
        platform_type: str,
        platform_name: str,
        date_range: Any = None
    ) -> ServiceResponse:
        """
        Sync one platform for one user.

        Returns a failed response (never raises) when the platform is not
        registered, not configured, inactive, or any workflow step fails.
        The sync job record is closed as failed with the captured error.
        """
        meta = {"platform_type": platform_type, "platform_name": platform_name, "user_id": user_id}

        service = self.get_service(platform_type, platform_name)
        if service is None:
            return ServiceResponse.fail(f"Service not found for platform: {platform_type}:{platform_name}", **meta)

        config = service.get_platform_config(user_id)
        if not config.success:
            return ServiceResponse.fail(config.error, **meta)
        if not config.data or not config.data.get("is_active"):
            return ServiceResponse.fail("Platform is not configured or inactive", **meta)

        window = coerce_range(date_range) or DateRange.last_days(self.lookback_days)
        sync_job = service.create_sync_job(user_id, {"date_range": window.to_dict()})
        if not sync_job.success:
            return ServiceResponse.fail(sync_job.error, **meta)
        sync_job_id = sync_job.data["id"]
        service.update_sync_job(sync_job_id, "running")

        def fail(error: str) -> ServiceResponse:
            service.update_sync_job(sync_job_id, "failed", error=error)
            logger.warning(f"Sync {platform_type}:{platform_name} failed for user {user_id}: {error}")
            return ServiceResponse.fail(error, sync_job_id=sync_job_id, **meta)

        try:
            with self._sync_locks[(platform_type, platform_name)]:
                init = service.initialize(config.data.get("config_data") or {})
                if not init.success:
                    return fail(init.error or "Failed to initialize platform service")

                fetched = service.fetch_analytics(user_id, window)
            if not fetched.success:
                return fail(fetched.error or "Failed to fetch analytics")

            rows = fetched.data or []
            saved = service.save_analytics_data(user_id, rows)
            if not saved.success:
                return fail(saved.error or "Failed to save analytics")

            service.update_last_sync(user_id, window.end)
            result = {"records_processed": len(rows), "records_inserted": saved.data["inserted"]}
            service.update_sync_job(sync_job_id, "completed", result=result)

            logger.info(
                f"Synced {platform_type}:{platform_name} for user {user_id}: "
                f"{len(rows)} rows ({saved.data['inserted']} new)"
            )
            return ServiceResponse.ok(result, sync_job_id=sync_job_id, **meta)

        except Exception as e:
            return fail(str(e) or e.__class__.__name__)

    def _active_platforms_for_user(self, user_id: str) -> List[ServiceKey]:
        configs = self.store.list_platform_configs(user_id=user_id, active_only=True)
        configured = {(c["platform_type"], c["platform_name"]) for c in configs}
        with self._lock:
            return [key for key in self._factories if key in configured]

    def sync_all_platforms(self, user_id: str, date_range: Any = None) -> List[ServiceResponse]:
        """
        Sync every active, configured platform for a user.

        Each platform gets its own result entry; one failing never stops the rest.
        """
        results = []
        for platform_type, platform_name in self._active_platforms_for_user(user_id):
            try:
                results.append(self.sync_platform(user_id, platform_type, platform_name, date_range))
            except Exception as e:
                logger.error(f"Unexpected error syncing {platform_type}:{platform_name}: {e}")
                results.append(ServiceResponse.fail(
                    str(e), platform_type=platform_type, platform_name=platform_name, user_id=user_id
                ))
        return results

    def sync_platform_for_all_users(
        self,
        platform_type: str,
        platform_name: str,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Incremental sync of one platform for every user with an active config.

        Each user's window runs from their last_sync_at (or lookback_days
        back) to now.

        Returns:
            Summary with users, succeeded, failed, records and per-user errors
        """
        now = now or datetime.now()
        configs = self.store.list_platform_configs(
            platform_type=platform_type, platform_name=platform_name, active_only=True
        )

        summary: Dict[str, Any] = {
            "platform_type": platform_type,
            "platform_name": platform_name,
            "users": len(configs),
            "succeeded": 0,
            "failed": 0,
            "records_processed": 0,
            "errors": {},
        }

        for config in configs:
            start = config.get("last_sync_at") or now - timedelta(days=self.lookback_days)
            response = self.sync_platform(
                config["user_id"], platform_type, platform_name, DateRange(min(start, now), now)
            )
            if response.success:
                summary["succeeded"] += 1
                summary["records_processed"] += response.data["records_processed"]
            else:
                summary["failed"] += 1
                summary["errors"][config["user_id"]] = response.error

        return summary

    def get_all_sync_statuses(self, user_id: str) -> List[ServiceResponse]:
        results = []
        for platform in self.registered_platforms():
            service = self.get_service(platform["platform_type"], platform["platform_name"])
            status = service.get_sync_job_status(user_id)
            status.metadata.update(platform)
            results.append(status)
        return results

    def initialize_user_services(self, user_id: str) -> List[ServiceResponse]:
        """Initialize every registered service the user has an active config for."""
        results = []
        for platform_type, platform_name in self._active_platforms_for_user(user_id):
            service = self.get_service(platform_type, platform_name)
            config = self.store.get_platform_config(user_id, platform_type, platform_name)
            with self._sync_locks[(platform_type, platform_name)]:
                response = service.initialize(config.get("config_data") or {})
            response.metadata.update({"platform_type": platform_type, "platform_name": platform_name})
            results.append(response)
        return results


def build_default_registry(store: PersistentStore, lookback_days: int = 30) -> PlatformServiceRegistry:
    """Registry with the company website and internal referrals services."""
    registry = PlatformServiceRegistry(store, lookback_days=lookback_days)
    registry.register("website", "company_website", CompanyWebsiteService)
    registry.register("referral", "internal_referrals", ReferralsService)
    return registry
