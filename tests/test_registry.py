"""Tests for the platform service registry and the per-user sync workflow."""

from datetime import datetime, timedelta

from analytics.registry import build_default_registry
from tests.conftest import FakePlatformService, raw_row

YESTERDAY = datetime.now().replace(microsecond=0) - timedelta(days=1)


def _register(registry, store, platform_type="website", platform_name="company_website", **kwargs):
    service = FakePlatformService(store, platform_type, platform_name, **kwargs)
    registry.register(platform_type, platform_name, lambda _store: service)
    return service


def _configure(service, user_id="user-1"):
    response = service.save_platform_config(user_id, {"apiKey": "k"})
    assert response.success
    return response.data


def test_default_registry_has_both_platforms(store) -> None:
    registry = build_default_registry(store)

    assert registry.registered_platforms() == [
        {"platform_type": "website", "platform_name": "company_website"},
        {"platform_type": "referral", "platform_name": "internal_referrals"},
    ]
    assert registry.get_service("website", "company_website") is registry.get_service(
        "website", "company_website"
    )
    assert registry.get_service("social", "nowhere") is None


def test_sync_platform_stores_rows_and_closes_sync_job(store, registry) -> None:
    service = _register(registry, store, rows=[raw_row("views", 12, YESTERDAY)])
    _configure(service)

    response = registry.sync_platform("user-1", "website", "company_website")

    assert response.success
    assert response.data == {"records_processed": 1, "records_inserted": 1}
    assert store.count_raw_metrics("user-1") == 1
    sync_job = store.latest_sync_job("user-1", store.get_platform_config(
        "user-1", "website", "company_website")["id"])
    assert sync_job["status"] == "completed"
    assert sync_job["completed_at"] is not None
    assert store.get_platform_config("user-1", "website", "company_website")["last_sync_at"] is not None


def test_syncing_twice_does_not_duplicate_rows(store, registry) -> None:
    service = _register(registry, store, rows=[raw_row("views", 12, YESTERDAY)])
    _configure(service)

    registry.sync_platform("user-1", "website", "company_website")
    second = registry.sync_platform("user-1", "website", "company_website")

    assert second.data == {"records_processed": 1, "records_inserted": 0}
    assert store.count_raw_metrics("user-1") == 1


def test_unregistered_or_unconfigured_platform_fails(store, registry) -> None:
    _register(registry, store)

    missing = registry.sync_platform("user-1", "social", "nowhere")
    unconfigured = registry.sync_platform("user-1", "website", "company_website")

    assert not missing.success
    assert "Service not found" in missing.error
    assert not unconfigured.success
    assert unconfigured.error == "Platform is not configured or inactive"


def test_fetch_failure_marks_sync_job_failed(store, registry) -> None:
    service = _register(registry, store, fetch_error="upstream 503")
    config = _configure(service)

    response = registry.sync_platform("user-1", "website", "company_website")

    assert not response.success
    assert response.error == "upstream 503"
    sync_job = store.latest_sync_job("user-1", config["id"])
    assert sync_job["status"] == "failed"
    assert sync_job["error_message"] == "upstream 503"
    assert store.get_platform_config("user-1", "website", "company_website")["last_sync_at"] is None


def test_one_failing_platform_does_not_stop_the_others(store, registry) -> None:
    broken = _register(registry, store, "website", "company_website", init_error="bad credentials")
    healthy = _register(
        registry, store, "referral", "internal_referrals",
        rows=[raw_row("total_referrals", 2, YESTERDAY, "referral", "internal_referrals")],
    )
    _configure(broken)
    _configure(healthy)

    results = registry.sync_all_platforms("user-1")

    by_platform = {r.metadata["platform_name"]: r for r in results}
    assert not by_platform["company_website"].success
    assert by_platform["company_website"].error == "bad credentials"
    assert by_platform["internal_referrals"].success
    assert store.count_raw_metrics("user-1") == 1


def test_sync_for_all_users_isolates_failures(store, registry) -> None:
    service = _register(registry, store, rows=[raw_row("views", 1, YESTERDAY)])
    _configure(service, "user-1")
    _configure(service, "user-2")
    store.upsert_platform_config({
        "user_id": "user-3",
        "platform_type": "website",
        "platform_name": "company_website",
        "config_data": {"apiKey": "k"},
        "is_active": False,
    })

    summary = registry.sync_platform_for_all_users("website", "company_website")

    assert summary["users"] == 2
    assert summary["succeeded"] == 2
    assert summary["failed"] == 0
    assert summary["records_processed"] == 2


def test_incremental_window_starts_at_last_sync(store, registry) -> None:
    service = _register(registry, store)
    _configure(service)
    last_sync = datetime(2026, 3, 1, 12, 0)
    store.update_last_sync("user-1", "website", "company_website", last_sync)
    now = datetime(2026, 3, 2, 12, 0)

    registry.sync_platform_for_all_users("website", "company_website", now=now)

    [(user_id, window)] = service.fetch_calls
    assert user_id == "user-1"
    assert (window.start, window.end) == (last_sync, now)
    assert store.get_platform_config("user-1", "website", "company_website")["last_sync_at"] == now


def test_validate_platform_config_through_registry(store, registry) -> None:
    _register(registry, store)

    assert registry.validate_platform_config("website", "company_website", {"apiKey": "k"}).success
    assert not registry.validate_platform_config("website", "company_website", {}).success
    assert not registry.validate_platform_config("social", "nowhere", {}).success
