"""
Referrals Service for job_analytics

Internal employee-referral program: referral lifecycle management plus the
daily referral metrics synced into platform_analytics_raw.

Configuration (config_data of the platform config):
    {
        "enableReferralProgram": true,
        "referralReward": 500,
        "referralCurrency": "USD",
        "maxReferralsPerUser": 10,
        "referralExpiryDays": 30,
        "autoApproveReferrals": false
    }

Raw metrics emitted per closed day (by referral created_at):
    total_referrals, approved_referrals, applications (= approved),
    pending_referrals, rewards_paid, source_referrals (one per source)

These are daily snapshots: a later sync restates a day's values in place
when a referral created that day changes status.

Usage:
    from analytics.referrals import ReferralsService

    service = ReferralsService(store)
    service.initialize(config_data)
    service.create_referral("user-2", referrer_user_id="user-1", referral_source="email")
"""

import secrets
import string
import uuid
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from analytics.base import BasePlatformService, ServiceResponse
from analytics.store import PersistentStore
from analytics.utils import DateRange, closed_days, coerce_range, parse_datetime, safe_float

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 8


def _is_positive_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


class ReferralsService(BasePlatformService):
    """Platform service for the internal referral program."""

    def __init__(self, store: PersistentStore, **kwargs: Any):
        kwargs.setdefault("max_requests", 200)
        kwargs.setdefault("window_ms", 60000)
        super().__init__(store, "referral", "internal_referrals", **kwargs)
        self.config: Optional[Dict[str, Any]] = None

    # ============================================
    # Platform Operations
    # ============================================

    def initialize(self, config: Dict[str, Any]) -> ServiceResponse:
        validation = self.validate_config(config)
        if not validation.success:
            return validation
        self.config = config
        return ServiceResponse.ok()

    def validate_config(self, config: Dict[str, Any]) -> ServiceResponse:
        if not isinstance(config, dict):
            return ServiceResponse.fail("Configuration must be an object", data=False)

        if not isinstance(config.get("enableReferralProgram"), bool):
            return ServiceResponse.fail("enableReferralProgram must be a boolean", data=False)

        if config["enableReferralProgram"]:
            if not _is_positive_number(config.get("referralReward")):
                return ServiceResponse.fail(
                    "referralReward must be a positive number when referral program is enabled",
                    data=False
                )
            currency = config.get("referralCurrency")
            if not isinstance(currency, str) or len(currency) != 3:
                return ServiceResponse.fail(
                    "referralCurrency must be a valid 3-letter currency code", data=False
                )
            if not _is_positive_number(config.get("maxReferralsPerUser")):
                return ServiceResponse.fail("maxReferralsPerUser must be a positive number", data=False)
            if not _is_positive_number(config.get("referralExpiryDays")):
                return ServiceResponse.fail("referralExpiryDays must be a positive number", data=False)

        return ServiceResponse.ok(True)

    def fetch_analytics(self, user_id: str, date_range: Any = None) -> ServiceResponse:
        """
        Daily referral metrics for every closed day in the window.

        Days are bucketed by referral created_at. A referral approved or
        rejected inside the window also restates the counts of the day it
        was created on, so incremental syncs pick up late status changes.
        """
        if self.config is None:
            return ServiceResponse.fail("Service not initialized. Call initialize() first.")

        try:
            window = coerce_range(date_range) or DateRange.last_days(30)
            today = datetime.now().date()
            days = set(closed_days(window))
            days.update(
                day for day in self.store.referral_days_updated(user_id, window.start, window.end)
                if day < today
            )
            if not days:
                return ServiceResponse.ok([], window=window.to_dict())

            start = datetime.combine(min(days), datetime.min.time())
            end = datetime.combine(max(days), datetime.max.time())
            referrals = self.store.list_referrals_for_user(user_id, start, end)

            by_day: Dict[Any, List[Dict[str, Any]]] = defaultdict(list)
            for referral in referrals:
                created = referral["created_at"].date()
                if created in days:
                    by_day[created].append(referral)

            rows: List[Dict[str, Any]] = []
            for day in sorted(by_day):
                rows.extend(self._daily_rows(day, by_day[day]))

            self.logger.info(f"Fetched {len(rows)} referral rows for user {user_id}")
            return ServiceResponse.ok(rows, window=window.to_dict())

        except Exception as e:
            return self.handle_error(e, "fetch_analytics")

    def _daily_rows(self, day, referrals: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        approved = [r for r in referrals if r["status"] == "approved"]
        pending = [r for r in referrals if r["status"] == "pending"]
        rewards = sum(safe_float(r.get("reward_amount")) for r in approved)

        rows = [
            self.make_metric("total_referrals", len(referrals), day, snapshot=True),
            self.make_metric("approved_referrals", len(approved), day, snapshot=True),
            self.make_metric("applications", len(approved), day, snapshot=True),
            self.make_metric("pending_referrals", len(pending), day, snapshot=True),
            self.make_metric("rewards_paid", rewards, day, snapshot=True),
        ]

        sources: Dict[str, Dict[str, int]] = defaultdict(lambda: {"count": 0, "approved": 0})
        for referral in referrals:
            entry = sources[referral.get("referral_source") or "unknown"]
            entry["count"] += 1
            if referral["status"] == "approved":
                entry["approved"] += 1

        for source, stats in sorted(sources.items()):
            rows.append(self.make_metric(
                "source_referrals",
                stats["count"],
                day,
                metadata={
                    "source": source,
                    "conversion_rate": stats["approved"] / stats["count"] * 100,
                },
                snapshot=True,
                identity={"source": source},
            ))
        return rows

    # ============================================
    # Referral Lifecycle
    # ============================================

    def _generate_referral_code(self) -> str:
        while True:
            code = "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
            if not self.store.referral_code_exists(code):
                return code

    def create_referral(
        self,
        user_id: str,
        referral_source: str,
        referrer_user_id: Optional[str] = None,
        job_posting_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ServiceResponse:
        """
        Create a referral for user_id.

        Enforces the rate limit and the per-referrer cap. The referral gets a
        unique code and an expiry; it is approved immediately when the
        program auto-approves.
        """
        try:
            if not self.config or not self.config.get("enableReferralProgram"):
                return ServiceResponse.fail("Referral program is not enabled")

            if not self.check_rate_limit(user_id):
                return self.rate_limit_exceeded(user_id)

            if referrer_user_id:
                existing = self.store.count_referrals_by_referrer(referrer_user_id)
                if existing >= self.config["maxReferralsPerUser"]:
                    return ServiceResponse.fail("Maximum referrals per user exceeded")

            now = datetime.now()
            auto_approve = bool(self.config.get("autoApproveReferrals"))
            referral = self.store.insert_referral({
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "referrer_user_id": referrer_user_id,
                "referral_code": self._generate_referral_code(),
                "referral_source": referral_source,
                "job_posting_id": job_posting_id,
                "status": "approved" if auto_approve else "pending",
                "reward_amount": float(self.config["referralReward"]),
                "reward_currency": self.config["referralCurrency"],
                "metadata": metadata or {},
                "referred_at": now,
                "approved_at": now if auto_approve else None,
                "expires_at": now + timedelta(days=self.config["referralExpiryDays"]),
                "created_at": now,
                "updated_at": now,
            })
            self.logger.info(f"Created referral {referral['referral_code']} for user {user_id}")
            return ServiceResponse.ok(referral)

        except Exception as e:
            return self.handle_error(e, "create_referral")

    def get_referral_by_code(self, referral_code: str) -> ServiceResponse:
        try:
            return ServiceResponse.ok(self.store.get_referral_by_code(referral_code))
        except Exception as e:
            return self.handle_error(e, "get_referral_by_code")

    def get_user_referrals(self, referrer_user_id: str, status: Optional[str] = None) -> ServiceResponse:
        try:
            return ServiceResponse.ok(self.store.list_referrals_by_referrer(referrer_user_id, status))
        except Exception as e:
            return self.handle_error(e, "get_user_referrals")

    def update_referral_status(self, referral_id: str, status: str, admin_user_id: str) -> ServiceResponse:
        if status not in ("approved", "rejected"):
            return ServiceResponse.fail("Status must be 'approved' or 'rejected'")

        try:
            now = datetime.now()
            fields: Dict[str, Any] = {"status": status, "updated_at": now}
            if status == "approved":
                fields["approved_at"] = now

            referral = self.store.update_referral(referral_id, **fields)
            if referral is None:
                return ServiceResponse.fail("Referral not found")

            self.logger.info(f"Referral {referral_id} {status} by {admin_user_id}")
            return ServiceResponse.ok(referral)
        except Exception as e:
            return self.handle_error(e, "update_referral_status")

    def get_referral_analytics(self, user_id: str, start: Any, end: Any) -> ServiceResponse:
        """Program analytics: status counts, rewards, top referrers, sources, monthly trend."""
        try:
            window = DateRange.from_values(start, end)
            referrals = self.store.list_referrals_for_user(user_id, window.start, window.end)

            total = len(referrals)
            approved = [r for r in referrals if r["status"] == "approved"]

            referrers: Dict[str, Dict[str, float]] = defaultdict(lambda: {"referrals": 0, "rewards": 0.0})
            sources: Dict[str, Dict[str, int]] = defaultdict(lambda: {"count": 0, "approved": 0})
            months: Dict[str, Dict[str, int]] = defaultdict(lambda: {"referrals": 0, "conversions": 0})

            for referral in referrals:
                is_approved = referral["status"] == "approved"
                if referral.get("referrer_user_id"):
                    entry = referrers[referral["referrer_user_id"]]
                    entry["referrals"] += 1
                    if is_approved:
                        entry["rewards"] += safe_float(referral.get("reward_amount"))

                source = sources[referral.get("referral_source") or "unknown"]
                source["count"] += 1
                month = months[referral["created_at"].strftime("%Y-%m")]
                month["referrals"] += 1
                if is_approved:
                    source["approved"] += 1
                    month["conversions"] += 1

            top_referrers = sorted(
                ({"user_id": uid, **stats} for uid, stats in referrers.items()),
                key=lambda item: item["referrals"],
                reverse=True
            )[:10]

            analytics = {
                "total_referrals": total,
                "approved_referrals": len(approved),
                "pending_referrals": sum(1 for r in referrals if r["status"] == "pending"),
                "rejected_referrals": sum(1 for r in referrals if r["status"] == "rejected"),
                "total_rewards_paid": sum(safe_float(r.get("reward_amount")) for r in approved),
                "conversion_rate": (len(approved) / total * 100) if total else 0.0,
                "top_referrers": top_referrers,
                "referral_sources": sorted(
                    (
                        {
                            "source": name,
                            "count": stats["count"],
                            "conversion_rate": stats["approved"] / stats["count"] * 100,
                        }
                        for name, stats in sources.items()
                    ),
                    key=lambda item: item["count"],
                    reverse=True
                ),
                "monthly_trends": [{"month": m, **months[m]} for m in sorted(months)],
            }
            return ServiceResponse.ok(analytics)

        except Exception as e:
            return self.handle_error(e, "get_referral_analytics")

    def generate_referral_url(self, base_url: str, referral_code: str, job_posting_id: Optional[str] = None) -> str:
        parts = urlsplit(base_url)
        params = dict(parse_qsl(parts.query))
        params.update({
            "ref": referral_code,
            "utm_source": "referral",
            "utm_medium": "referral_link",
            "utm_campaign": "employee_referral",
        })
        if job_posting_id:
            params["job_id"] = job_posting_id
        return urlunsplit(parts._replace(query=urlencode(params)))

    def process_referral_from_url(
        self,
        user_id: str,
        url_params: Dict[str, str],
        job_posting_id: Optional[str] = None
    ) -> ServiceResponse:
        """Create a referral for user_id from a referral link's query parameters."""
        referral_code = url_params.get("ref")
        if not referral_code:
            return ServiceResponse.fail("No referral code found in URL parameters")

        lookup = self.get_referral_by_code(referral_code)
        if not lookup.success or not lookup.data:
            return ServiceResponse.fail("Invalid referral code")

        original = lookup.data
        expires_at = original.get("expires_at")
        if expires_at and parse_datetime(expires_at) < datetime.now():
            return ServiceResponse.fail("Referral code has expired")

        return self.create_referral(
            user_id,
            referral_source="referral_link",
            referrer_user_id=original.get("referrer_user_id"),
            job_posting_id=job_posting_id,
            metadata={
                "original_referral_code": referral_code,
                "utm_source": url_params.get("utm_source"),
                "utm_medium": url_params.get("utm_medium"),
                "utm_campaign": url_params.get("utm_campaign"),
            },
        )
