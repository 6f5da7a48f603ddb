"""
Pytest fixtures for job_analytics.

Every test gets a fresh in-memory DuckDB store. Platform services that
would talk to external APIs are replaced by FakePlatformService on a fresh
registry.
"""
from datetime import datetime, timedelta

import pytest

from analytics.aggregator import DataAggregator
from analytics.base import BasePlatformService, ServiceResponse
from analytics.registry import PlatformServiceRegistry
from analytics.store import PersistentStore
from scheduler.runner import JobScheduler


class FakeClock:
    """Settable clock; call it to read the time."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakePlatformService(BasePlatformService):
    """Platform service returning canned rows, or failing on fetch."""

    def __init__(self, store, platform_type="website", platform_name="company_website",
                 rows=None, fetch_error=None, init_error=None):
        super().__init__(store, platform_type, platform_name)
        self.rows = rows or []
        self.fetch_error = fetch_error
        self.init_error = init_error
        self.fetch_calls = []

    def initialize(self, config):
        if self.init_error:
            return ServiceResponse.fail(self.init_error)
        return ServiceResponse.ok()

    def fetch_analytics(self, user_id, date_range=None):
        self.fetch_calls.append((user_id, date_range))
        if self.fetch_error:
            return ServiceResponse.fail(self.fetch_error)
        return ServiceResponse.ok([dict(row) for row in self.rows])

    def validate_config(self, config):
        if not isinstance(config, dict) or not config.get("apiKey"):
            return ServiceResponse.fail("apiKey is required", data=False)
        return ServiceResponse.ok(True)


class RecordingNotifier:
    def __init__(self) -> None:
        self.failures = []

    def job_failed_permanently(self, failure) -> bool:
        self.failures.append(failure)
        return True


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 11, 10, 7, 0))


@pytest.fixture
def store():
    store = PersistentStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def registry(store):
    return PlatformServiceRegistry(store)


@pytest.fixture
def aggregator(store):
    return DataAggregator(store)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_scheduler(store, registry, notifier, clock):
    """Build an initialized (not started) scheduler; shut down after the test."""
    created = []

    def _make(**kwargs):
        kwargs.setdefault("notifier", notifier)
        kwargs.setdefault("clock", clock)
        scheduler = JobScheduler(store, registry, **kwargs)
        scheduler.initialize()
        created.append(scheduler)
        return scheduler

    yield _make

    for scheduler in created:
        scheduler.shutdown(grace_seconds=0)


def raw_row(metric_name, value, recorded_at, platform_type="website",
            platform_name="company_website", job_posting_id=None, metadata=None):
    return {
        "platform_type": platform_type,
        "platform_name": platform_name,
        "job_posting_id": job_posting_id,
        "metric_name": metric_name,
        "metric_value": value,
        "metadata": metadata or {},
        "recorded_at": recorded_at,
    }
