from __future__ import annotations

import pathlib
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.app.billing import (  # noqa: E402
    BillingAuditEvent,
    BillingConfig,
    BillingService,
    InMemoryEntitlementRepository,
    ProviderSnapshot,
    ProviderUnavailable,
    ReconciliationEngine,
)
from backend.app.billing.models import BindingConflict  # noqa: E402
from backend.app.entitlements import (  # noqa: E402
    EntitlementRecord,
    EntitlementService,
    InMemoryEntitlementCache,
    StaticPlanCatalog,
)

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


class RecordingEventLogger:
    def __init__(self) -> None:
        self.events: List[BillingAuditEvent] = []

    def log(self, event: BillingAuditEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> List[str]:
        return [event.event_type.value for event in self.events]


class RecordingNotifier:
    def __init__(self) -> None:
        self.payment_failures: List[EntitlementRecord] = []
        self.expirations: List[EntitlementRecord] = []
        self.conflicts: List[BindingConflict] = []

    def notify_payment_failure(self, record: EntitlementRecord) -> None:
        self.payment_failures.append(record)

    def notify_subscription_expired(self, record: EntitlementRecord) -> None:
        self.expirations.append(record)

    def notify_identity_conflict(self, conflict: BindingConflict) -> None:
        self.conflicts.append(conflict)


class FakeProvider:
    """Provider double returning canned snapshots, optionally failing first."""

    def __init__(self) -> None:
        self.snapshots: Dict[str, ProviderSnapshot] = {}
        self.failures_remaining = 0
        self.unavailable = False
        self.calls: List[str] = []

    def fetch_entitlements(self, billing_provider_user_id: str) -> ProviderSnapshot:
        self.calls.append(billing_provider_user_id)
        if self.unavailable:
            raise ProviderUnavailable("provider down")
        if self.failures_remaining > 0:
            self.failures_remaining -= 1
            raise ProviderUnavailable("transient provider failure")
        return self.snapshots.get(
            billing_provider_user_id,
            ProviderSnapshot(billing_provider_user_id=billing_provider_user_id),
        )


@dataclass
class BillingHarness:
    clock: FakeClock
    repository: InMemoryEntitlementRepository
    engine: ReconciliationEngine
    service: BillingService
    entitlements: EntitlementService
    provider: FakeProvider
    events: RecordingEventLogger
    notifier: RecordingNotifier
    sleeps: List[float] = field(default_factory=list)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(T0)


@pytest.fixture
def billing_config() -> BillingConfig:
    return BillingConfig(store="memory", backoff_seconds=0.01)


@pytest.fixture
def harness(clock: FakeClock, billing_config: BillingConfig) -> BillingHarness:
    sleeps: List[float] = []
    repository = InMemoryEntitlementRepository()
    catalog = StaticPlanCatalog()
    engine = ReconciliationEngine(
        repository,
        config=billing_config,
        catalog=catalog,
        clock=clock,
        sleep=sleeps.append,
    )
    entitlements = EntitlementService(repository, InMemoryEntitlementCache(clock=clock), clock=clock)
    provider = FakeProvider()
    events = RecordingEventLogger()
    notifier = RecordingNotifier()
    service = BillingService(
        engine=engine,
        repository=repository,
        catalog=catalog,
        provider=provider,
        access_reader=entitlements,
        notifier=notifier,
        event_logger=events,
        entitlement_invalidator=entitlements,
        config=billing_config,
        clock=clock,
        sleep=sleeps.append,
    )
    return BillingHarness(
        clock=clock,
        repository=repository,
        engine=engine,
        service=service,
        entitlements=entitlements,
        provider=provider,
        events=events,
        notifier=notifier,
        sleeps=sleeps,
    )


def _ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


@pytest.fixture
def webhook():
    """Builder for provider webhook bodies with millisecond timestamps."""

    def build(
        event_type: str,
        app_user_id: str = "rc-user-1",
        *,
        purchased_at: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
        transaction_id: Optional[str] = None,
        product_id: Optional[str] = "premium_monthly",
        **extra: Any,
    ) -> Dict[str, Any]:
        event: Dict[str, Any] = {"type": event_type, "app_user_id": app_user_id}
        if product_id is not None:
            event["product_id"] = product_id
        if purchased_at is not None:
            event["purchased_at_ms"] = _ms(purchased_at)
        if expires_at is not None:
            event["expiration_at_ms"] = _ms(expires_at)
        if transaction_id is not None:
            event["transaction_id"] = transaction_id
        event.update(extra)
        return {"api_version": "1.0", "event": event}

    return build
