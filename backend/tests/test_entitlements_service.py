from __future__ import annotations

from datetime import timedelta
from typing import Dict, Optional

import pytest

from backend.app.entitlements import (
    EntitlementRecord,
    EntitlementService,
    EntitlementStatus,
    InMemoryEntitlementCache,
)


class FakeRecordRepository:
    def __init__(self) -> None:
        self.records: Dict[str, EntitlementRecord] = {}
        self.calls = 0
        self.down = False

    def get_record(self, user_id: str) -> Optional[EntitlementRecord]:
        self.calls += 1
        if self.down:
            raise ConnectionError("database unavailable")
        return self.records.get(user_id)


@pytest.fixture
def repository() -> FakeRecordRepository:
    return FakeRecordRepository()


@pytest.fixture
def cache(clock) -> InMemoryEntitlementCache:
    return InMemoryEntitlementCache(clock=clock)


def _service(repository, cache, clock, **kwargs) -> EntitlementService:
    return EntitlementService(repository, cache, clock=clock, ttl_seconds=30, **kwargs)


def _active(clock) -> EntitlementRecord:
    return EntitlementRecord(
        user_id="user-1",
        status=EntitlementStatus.ACTIVE,
        subscription_end=clock.now + timedelta(days=30),
        is_premium=True,
    )


def test_records_are_cached_until_ttl(repository, cache, clock) -> None:
    repository.records["user-1"] = _active(clock)
    service = _service(repository, cache, clock)

    service.get_record("user-1")
    service.get_record("user-1")
    assert repository.calls == 1

    clock.advance(seconds=31)
    service.get_record("user-1")
    assert repository.calls == 2


def test_missing_records_are_not_cached(repository, cache, clock) -> None:
    service = _service(repository, cache, clock)

    assert service.get_record("nobody") is None
    assert service.get_record("nobody") is None
    assert repository.calls == 2


def test_invalidate_user_drops_cached_record(repository, cache, clock) -> None:
    repository.records["user-1"] = _active(clock)
    service = _service(repository, cache, clock)
    service.get_record("user-1")

    service.invalidate_user("user-1")
    service.get_record("user-1")

    assert repository.calls == 2


def test_get_access_fails_closed_on_store_outage(repository, cache, clock) -> None:
    repository.records["user-1"] = _active(clock)
    service = _service(repository, cache, clock)
    service.get_record("user-1")
    clock.advance(seconds=31)
    repository.down = True

    decision = service.get_access("user-1")

    assert decision.has_access is False
    assert decision.status is None


def test_fail_open_serves_stale_premium_record(repository, cache, clock) -> None:
    repository.records["user-1"] = _active(clock)
    service = _service(repository, cache, clock, fail_open_for_premium=True)
    service.get_record("user-1")
    clock.advance(seconds=31)
    repository.down = True

    decision = service.get_access("user-1")

    assert decision.has_access is True
    assert decision.is_premium is True


def test_fail_open_never_extends_trials(repository, cache, clock) -> None:
    repository.records["user-1"] = EntitlementRecord(
        user_id="user-1",
        status=EntitlementStatus.TRIAL,
        trial_start=clock.now,
        trial_end=clock.now + timedelta(days=3),
    )
    service = _service(repository, cache, clock, fail_open_for_premium=True)
    service.get_record("user-1")
    clock.advance(seconds=31)
    repository.down = True

    assert service.get_access("user-1").has_access is False


def test_cache_ignores_entries_that_are_already_expired(cache, clock) -> None:
    cache.set("entitlement:user-1", _active(clock), clock.now, {"user:user-1"})

    assert cache.get("entitlement:user-1") is None
    assert cache.get_stale("entitlement:user-1") is None


def test_cache_invalidation_by_tag(cache, clock) -> None:
    record = _active(clock)
    cache.set("entitlement:user-1", record, clock.now + timedelta(seconds=30), {"user:user-1"})
    cache.set("entitlement:user-2", record, clock.now + timedelta(seconds=30), {"user:user-2"})

    cache.invalidate({"user:user-1"})

    assert cache.get("entitlement:user-1") is None
    assert cache.get("entitlement:user-2") == record
