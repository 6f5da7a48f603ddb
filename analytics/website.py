"""
Company Website Service for job_analytics

Collects website analytics for a company's careers site from two sources:
- Google Analytics 4 (optional): daily sessions/views/users/conversions and
  job-posting UTM campaign traffic via the GA4 Data API
- First-party website events tracked with track_website_event()

Configuration (config_data of the platform config):
    {
        "customDomains": ["careers.example.com"],
        "utmTracking": true,
        "googleAnalytics": {                      # optional
            "propertyId": "123456789",
            "serviceAccountEmail": "sa@project.iam.gserviceaccount.com",
            "serviceAccountKey": "<base64 of the service account JSON>"
        }
    }

Usage:
    from analytics.website import CompanyWebsiteService

    service = CompanyWebsiteService(store)
    service.initialize(config_data)
    response = service.fetch_analytics("user-1", {"start": "2026-01-01", "end": "2026-01-31"})
"""

import base64
import binascii
import json
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from analytics.base import BasePlatformService, ServiceResponse
from analytics.store import PersistentStore
from analytics.utils import DateRange, closed_days, coerce_range, safe_float

GA_SCOPES = ["https://www.googleapis.com/auth/analytics.readonly"]

# GA4 metric -> raw metric name
GA_DAILY_METRICS = {
    "sessions": "sessions",
    "screenPageViews": "views",
    "totalUsers": "users",
    "conversions": "applications",
}

UTM_JOB_POSTING_MEDIUM = "job_posting"

# GA4 keeps processing a day for up to 48 hours; recent days are refetched
GA_RESTATEMENT_DAYS = 3


def decode_service_account_key(encoded: str) -> Dict[str, Any]:
    """
    Decode a base64 service account key into its JSON payload.

    Raises:
        ValueError: If the key is not base64 encoded JSON
    """
    try:
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
        payload = json.loads(decoded)
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError, TypeError) as e:
        raise ValueError("Service account key must be valid base64 encoded JSON") from e
    if not isinstance(payload, dict):
        raise ValueError("Service account key must be valid base64 encoded JSON")
    return payload


def build_ga_client(service_account_info: Dict[str, Any]):
    """Create a GA4 Data API client authenticated as the given service account."""
    from google.analytics.data_v1beta import BetaAnalyticsDataClient
    from google.oauth2 import service_account

    credentials = service_account.Credentials.from_service_account_info(
        service_account_info, scopes=GA_SCOPES
    )
    return BetaAnalyticsDataClient(credentials=credentials)


class CompanyWebsiteService(BasePlatformService):
    """Platform service for the company careers website."""

    def __init__(
        self,
        store: PersistentStore,
        ga_client_factory: Callable[[Dict[str, Any]], Any] = build_ga_client,
        **kwargs: Any
    ):
        kwargs.setdefault("max_requests", 50)
        kwargs.setdefault("window_ms", 60000)
        super().__init__(store, "website", "company_website", **kwargs)
        self._ga_client_factory = ga_client_factory
        self._ga_client = None
        self.config: Optional[Dict[str, Any]] = None

    # ============================================
    # Platform Operations
    # ============================================

    def initialize(self, config: Dict[str, Any]) -> ServiceResponse:
        """
        Store the config and, when GA4 is configured, open and test a client.
        """
        try:
            self.config = config
            self._ga_client = None

            ga_config = config.get("googleAnalytics")
            if not ga_config:
                return ServiceResponse.ok()

            try:
                key_data = decode_service_account_key(ga_config["serviceAccountKey"])
            except (KeyError, ValueError):
                return ServiceResponse.fail(
                    "Invalid service account key format. Must be base64 encoded JSON."
                )

            client = self._ga_client_factory(key_data)
            try:
                client.get_metadata(name=f"properties/{ga_config['propertyId']}/metadata")
            except Exception as e:
                return ServiceResponse.fail(f"Failed to connect to Google Analytics: {e}")

            self._ga_client = client
            self.logger.info(f"Connected to GA4 property {ga_config['propertyId']}")
            return ServiceResponse.ok()

        except Exception as e:
            return self.handle_error(e, "initialize")

    def validate_config(self, config: Dict[str, Any]) -> ServiceResponse:
        if not isinstance(config, dict):
            return ServiceResponse.fail("Configuration must be an object", data=False)

        domains = config.get("customDomains")
        if not domains or not isinstance(domains, list):
            return ServiceResponse.fail("At least one custom domain is required", data=False)

        ga_config = config.get("googleAnalytics")
        if ga_config:
            required = ("propertyId", "serviceAccountEmail", "serviceAccountKey")
            if not all(ga_config.get(name) for name in required):
                return ServiceResponse.fail(
                    "Google Analytics configuration requires propertyId, "
                    "serviceAccountEmail, and serviceAccountKey",
                    data=False
                )
            try:
                key_data = decode_service_account_key(ga_config["serviceAccountKey"])
            except ValueError as e:
                return ServiceResponse.fail(str(e), data=False)
            if not key_data.get("private_key") or not key_data.get("client_email"):
                return ServiceResponse.fail("Invalid service account key format", data=False)

        return ServiceResponse.ok(True)

    def fetch_analytics(self, user_id: str, date_range: Any = None) -> ServiceResponse:
        """
        Fetch GA4 daily metrics (closed days only) and tracked website events.
        """
        if self.config is None:
            return ServiceResponse.fail("Service not initialized. Call initialize() first.")

        try:
            window = coerce_range(date_range) or DateRange.last_days(30)
            rows: List[Dict[str, Any]] = []

            if self._ga_client is not None:
                rows.extend(self._fetch_ga_rows(window))

            rows.extend(self._fetch_event_rows(user_id, window))

            self.logger.info(f"Fetched {len(rows)} website rows for user {user_id}")
            return ServiceResponse.ok(rows, window=window.to_dict())

        except Exception as e:
            return self.handle_error(e, "fetch_analytics")

    # ============================================
    # Google Analytics
    # ============================================

    def _run_report(self, days, dimensions: List[str], metrics: List[str], dimension_filter=None):
        from google.analytics.data_v1beta.types import (
            DateRange as GADateRange,
            Dimension,
            Metric,
            RunReportRequest,
        )

        request = RunReportRequest(
            property=f"properties/{self.config['googleAnalytics']['propertyId']}",
            dimensions=[Dimension(name=name) for name in dimensions],
            metrics=[Metric(name=name) for name in metrics],
            date_ranges=[GADateRange(
                start_date=days[0].isoformat(),
                end_date=days[-1].isoformat()
            )],
            limit=100000,
        )
        if dimension_filter is not None:
            request.dimension_filter = dimension_filter
        response = self._ga_client.run_report(request)

        records = []
        for row in response.rows:
            record = {}
            for i, dim_value in enumerate(row.dimension_values):
                record[dimensions[i]] = dim_value.value
            for i, metric_value in enumerate(row.metric_values):
                record[metrics[i]] = metric_value.value
            records.append(record)
        return records

    def _fetch_ga_rows(self, window: DateRange) -> List[Dict[str, Any]]:
        from google.analytics.data_v1beta.types import Filter, FilterExpression

        restate_from = datetime.combine(
            date.today() - timedelta(days=GA_RESTATEMENT_DAYS), datetime.min.time()
        )
        days = closed_days(DateRange(min(window.start, restate_from), window.end))
        if not days:
            return []

        rows = []
        for record in self._run_report(days, ["date"], list(GA_DAILY_METRICS)):
            day = datetime.strptime(record["date"], "%Y%m%d")
            for ga_name, metric_name in GA_DAILY_METRICS.items():
                rows.append(self.make_metric(
                    metric_name, safe_float(record.get(ga_name)), day, snapshot=True
                ))

        utm_filter = FilterExpression(filter=Filter(
            field_name="sessionMedium",
            string_filter=Filter.StringFilter(
                match_type=Filter.StringFilter.MatchType.EXACT,
                value=UTM_JOB_POSTING_MEDIUM,
            ),
        ))
        utm_records = self._run_report(
            days,
            ["date", "sessionSource", "sessionMedium", "sessionCampaignName"],
            ["sessions", "conversions"],
            dimension_filter=utm_filter,
        )
        for record in utm_records:
            campaign = {
                "source": record.get("sessionSource") or "Unknown",
                "medium": record.get("sessionMedium") or "Unknown",
                "campaign": record.get("sessionCampaignName") or "Unknown",
            }
            rows.append(self.make_metric(
                "clicks",
                safe_float(record.get("sessions")),
                datetime.strptime(record["date"], "%Y%m%d"),
                metadata=dict(campaign, conversions=safe_float(record.get("conversions"))),
                snapshot=True,
                identity=campaign,
            ))

        self.logger.debug(f"GA4 returned {len(rows)} rows for {days[0]} to {days[-1]}")
        return rows

    # ============================================
    # First-Party Events
    # ============================================

    def _fetch_event_rows(self, user_id: str, window: DateRange) -> List[Dict[str, Any]]:
        rows = []
        for event in self.store.list_website_events(user_id, window.start, window.end):
            metadata = dict(event.get("metadata") or {})
            metadata["event_id"] = event["id"]
            rows.append(self.make_metric(
                event["metric_name"],
                event["metric_value"],
                event["recorded_at"],
                job_posting_id=event.get("job_posting_id"),
                metadata=metadata,
            ))
        return rows

    def track_website_event(
        self,
        user_id: str,
        event_name: str,
        event_value: float = 1,
        metadata: Optional[Dict[str, Any]] = None,
        job_posting_id: Optional[str] = None
    ) -> ServiceResponse:
        """Record a first-party website event (view, click, application)."""
        try:
            if not self.check_rate_limit(user_id):
                return self.rate_limit_exceeded(user_id)

            event = self.store.insert_website_event({
                "user_id": user_id,
                "job_posting_id": job_posting_id,
                "metric_name": event_name,
                "metric_value": float(event_value),
                "metadata": metadata or {},
                "recorded_at": datetime.now(),
            })
            return ServiceResponse.ok(event)
        except Exception as e:
            return self.handle_error(e, "track_website_event")

    def generate_utm_url(
        self,
        base_url: str,
        source: str,
        medium: str,
        campaign: str,
        term: Optional[str] = None,
        content: Optional[str] = None,
        job_posting_id: Optional[str] = None
    ) -> str:
        """Add UTM tracking parameters (and optionally job_id) to a URL."""
        parts = urlsplit(base_url)
        params = dict(parse_qsl(parts.query))
        params.update({"utm_source": source, "utm_medium": medium, "utm_campaign": campaign})
        if term:
            params["utm_term"] = term
        if content:
            params["utm_content"] = content
        if job_posting_id:
            params["job_id"] = job_posting_id
        return urlunsplit(parts._replace(query=urlencode(params)))

    def get_analytics_summary(self, user_id: str, date_range: Any = None) -> ServiceResponse:
        """Totals over the fetched rows plus a per-campaign UTM breakdown."""
        response = self.fetch_analytics(user_id, date_range)
        if not response.success:
            return response

        totals = {"sessions": 0.0, "views": 0.0, "users": 0.0, "applications": 0.0, "clicks": 0.0}
        campaigns: Dict[str, Dict[str, float]] = {}

        for row in response.data:
            name = row["metric_name"]
            if name in totals:
                totals[name] += row["metric_value"]
            campaign = (row.get("metadata") or {}).get("campaign")
            if name == "clicks" and campaign:
                entry = campaigns.setdefault(campaign, {"clicks": 0.0, "conversions": 0.0})
                entry["clicks"] += row["metric_value"]
                entry["conversions"] += safe_float(row["metadata"].get("conversions"))

        sessions = totals["sessions"]
        summary = {
            "total_sessions": sessions,
            "total_views": totals["views"],
            "total_users": totals["users"],
            "total_applications": totals["applications"],
            "total_clicks": totals["clicks"],
            "conversion_rate": (totals["applications"] / sessions * 100) if sessions > 0 else 0.0,
            "utm_campaigns": campaigns,
        }
        return ServiceResponse.ok(summary, **response.metadata)
