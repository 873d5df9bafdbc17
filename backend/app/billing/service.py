"""Core service coordinating webhook ingestion, on-demand sync, and access checks."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, List, Optional, Protocol

from ..entitlements.access import compute_access
from ..entitlements.catalog import PlanCatalog
from ..entitlements.models import AccessDecision, EntitlementRecord, EntitlementStatus, utc_now
from .config import BillingConfig
from .exceptions import ProviderUnavailable, ReconciliationFailed, UnresolvedIdentity
from .ingestor import normalize_webhook_payload
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    BillingEventType,
    BindingConflict,
    BindingResult,
    IngestResult,
    IngestStatus,
    MergeOutcome,
    OnDemandResult,
    ProviderSnapshot,
    ReconciliationResult,
)
from .provider import BillingProviderClient
from .reconciliation import ReconciliationEngine
from .repository import EntitlementRepository

logger = logging.getLogger("billing")


class BillingNotifier(Protocol):
    """Dispatches billing related notifications to end users or operators."""

    def notify_payment_failure(self, record: EntitlementRecord) -> None:
        ...

    def notify_subscription_expired(self, record: EntitlementRecord) -> None:
        ...

    def notify_identity_conflict(self, conflict: BindingConflict) -> None:
        ...


class BillingEventLogger(Protocol):
    """Captures structured billing audit events."""

    def log(self, event: BillingAuditEvent) -> None:
        ...


class EntitlementInvalidator(Protocol):
    """Invalidates access caches affected by billing changes."""

    def invalidate_user(self, user_id: str) -> None:
        ...


class AccessReader(Protocol):
    """Answers access questions for a user id."""

    def get_access(self, user_id: str, *, now: Optional[datetime] = None) -> AccessDecision:
        ...


_INGEST_STATUS = {
    MergeOutcome.APPLIED: IngestStatus.PROCESSED,
    MergeOutcome.NO_CHANGE: IngestStatus.NO_CHANGE,
    MergeOutcome.DUPLICATE: IngestStatus.DUPLICATE,
    MergeOutcome.STALE: IngestStatus.STALE,
    MergeOutcome.IGNORED: IngestStatus.IGNORED,
}

_PAID = {EntitlementStatus.ACTIVE, EntitlementStatus.PAST_DUE, EntitlementStatus.CANCELLED}


def audit_events_for_transition(
    previous: Optional[EntitlementRecord], current: EntitlementRecord
) -> List[BillingAuditEventType]:
    """Audit categories implied by moving from ``previous`` to ``current``."""

    if previous is None:
        return []
    before, after = previous.status, current.status
    events: List[BillingAuditEventType] = []
    if after == EntitlementStatus.ACTIVE:
        if before == EntitlementStatus.CANCELLED:
            events.append(BillingAuditEventType.SUBSCRIPTION_UNCANCELLED)
        elif before == EntitlementStatus.PAST_DUE:
            events.append(BillingAuditEventType.PAYMENT_RECOVERED)
        elif before not in _PAID:
            events.append(BillingAuditEventType.SUBSCRIPTION_ACTIVATED)
        elif current.subscription_end != previous.subscription_end:
            events.append(BillingAuditEventType.SUBSCRIPTION_RENEWED)
    elif after == EntitlementStatus.CANCELLED and before != EntitlementStatus.CANCELLED:
        events.append(BillingAuditEventType.SUBSCRIPTION_CANCELLED)
    elif after == EntitlementStatus.PAST_DUE and before != EntitlementStatus.PAST_DUE:
        events.append(BillingAuditEventType.PAYMENT_FAILED)
    elif after == EntitlementStatus.EXPIRED and before != EntitlementStatus.EXPIRED:
        events.append(BillingAuditEventType.SUBSCRIPTION_EXPIRED)
    return events


@dataclass(slots=True)
class BillingService:
    """Entry points for webhooks, client sync requests, and access checks."""

    engine: ReconciliationEngine
    repository: EntitlementRepository
    catalog: PlanCatalog
    provider: BillingProviderClient
    access_reader: AccessReader
    notifier: BillingNotifier
    event_logger: BillingEventLogger
    entitlement_invalidator: EntitlementInvalidator
    config: BillingConfig = field(default_factory=BillingConfig)
    clock: Callable[[], datetime] = utc_now
    sleep: Callable[[float], None] = time.sleep

    def ingest(self, raw_payload: Any) -> IngestResult:
        """Normalize and apply one webhook payload.

        ``ValidationError`` propagates for malformed payloads. Unbound
        identities are parked, not failed. ``ReconciliationFailed`` and
        ``PersistenceError`` propagate so the provider retries.
        """

        event = normalize_webhook_payload(
            raw_payload,
            catalog=self.catalog,
            product_plan_map=self.config.product_plan_map,
            received_at=self.clock(),
        )
        base = {
            "event_type": event.event_type,
            "billing_provider_user_id": event.billing_provider_user_id,
            "idempotency_key": event.idempotency_key,
        }

        if event.event_type == BillingEventType.UNKNOWN:
            logger.warning("Ignoring unhandled billing event type %s", event.raw_type)
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.EVENT_UNHANDLED,
                    metadata={"raw_type": event.raw_type or "", "billing_provider_user_id": event.billing_provider_user_id},
                )
            )
            return IngestResult(status=IngestStatus.IGNORED, **base)

        try:
            result = self.engine.apply_event(event)
        except UnresolvedIdentity:
            newly_parked = self.repository.park_event(event, parked_at=self.clock())
            logger.warning(
                "Parked %s event for unbound billing identity %s",
                event.event_type.value,
                event.billing_provider_user_id,
            )
            if newly_parked:
                self.event_logger.log(
                    BillingAuditEvent(
                        event_type=BillingAuditEventType.EVENT_PARKED,
                        metadata={
                            "billing_provider_user_id": event.billing_provider_user_id,
                            "idempotency_key": event.idempotency_key,
                        },
                    )
                )
            return IngestResult(status=IngestStatus.PARKED, **base)

        self.publish_result(result)
        return IngestResult(
            status=_INGEST_STATUS[result.outcome],
            user_id=result.user_id,
            record=result.record,
            **base,
        )

    def compute_access(self, user_id: str) -> AccessDecision:
        """Never raises; fails closed."""

        try:
            return self.access_reader.get_access(user_id, now=self.clock())
        except Exception:
            logger.exception("Access evaluation failed for %s", user_id)
            return AccessDecision.denied(evaluated_at=self.clock())

    def _billing_identity_for(self, user_id: str, record: Optional[EntitlementRecord]) -> str:
        if record is not None and record.billing_provider_user_id:
            return record.billing_provider_user_id
        bindings = self.repository.list_bindings_for_user(user_id)
        if bindings:
            return bindings[0].billing_provider_user_id
        return user_id

    def fetch_snapshot(self, billing_provider_user_id: str) -> ProviderSnapshot:
        """Query the provider with bounded retries; raises ``ProviderUnavailable``."""

        last_error: Optional[ProviderUnavailable] = None
        for attempt in range(1, self.config.max_attempts + 1):
            try:
                return self.provider.fetch_entitlements(billing_provider_user_id)
            except ProviderUnavailable as exc:
                last_error = exc
                logger.warning(
                    "Provider query %s/%s for %s failed: %s",
                    attempt,
                    self.config.max_attempts,
                    billing_provider_user_id,
                    exc,
                )
            if attempt < self.config.max_attempts:
                self.sleep(self.config.backoff_seconds * (2 ** (attempt - 1)))
        raise last_error or ProviderUnavailable("Billing provider query was not attempted")

    def reconcile_on_demand(self, user_id: str) -> OnDemandResult:
        """Sync ``user_id`` against the provider's current entitlements.

        When the provider is unreachable the persisted record is returned
        untouched. ``ReconciliationFailed`` propagates when the write fails.
        """

        record = self.repository.get_record(user_id)
        billing_id = self._billing_identity_for(user_id, record)
        try:
            snapshot = self.fetch_snapshot(billing_id)
        except ProviderUnavailable:
            logger.warning("Provider unavailable; serving persisted entitlement for %s", user_id)
            return OnDemandResult(
                user_id=user_id,
                access=compute_access(record, self.clock()),
                record=record,
                provider_reachable=False,
            )

        result = self.engine.apply_snapshot(user_id, snapshot)
        self.publish_result(result)
        return OnDemandResult(
            user_id=user_id,
            access=compute_access(result.record, self.clock()),
            record=result.record,
            outcome=result.outcome,
        )

    def start_trial(self, user_id: str) -> EntitlementRecord:
        """Create the user's record at first sign-in; existing records are returned as-is."""

        record, created = self.engine.ensure_record(user_id)
        if created:
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.TRIAL_STARTED,
                    user_id=user_id,
                    metadata={"trial_end": record.trial_end.isoformat() if record.trial_end else ""},
                )
            )
            self.entitlement_invalidator.invalidate_user(user_id)
        return record

    def bind_identity(self, user_id: str, billing_provider_user_id: str) -> BindingResult:
        """Associate a billing identity with ``user_id`` and re-apply the provider snapshot."""

        result = self.engine.bind_identity(user_id, billing_provider_user_id)
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.IDENTITY_BOUND,
                user_id=user_id,
                metadata={
                    "billing_provider_user_id": billing_provider_user_id,
                    "replayed_events": str(result.replayed_events),
                },
            )
        )
        if result.conflict is not None:
            self.notifier.notify_identity_conflict(result.conflict)
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.IDENTITY_CONFLICT,
                    user_id=user_id,
                    metadata={
                        "billing_provider_user_id": billing_provider_user_id,
                        "previous_user_id": result.conflict.previous_user_id,
                    },
                )
            )
            self.entitlement_invalidator.invalidate_user(result.conflict.previous_user_id)
        self.entitlement_invalidator.invalidate_user(user_id)

        try:
            snapshot = self.fetch_snapshot(billing_provider_user_id)
            synced = self.engine.apply_snapshot(user_id, snapshot)
        except (ProviderUnavailable, ReconciliationFailed) as exc:
            logger.info("Skipped snapshot re-apply after binding %s: %s", billing_provider_user_id, exc)
            return result
        self.publish_result(synced)
        return result.model_copy(update={"record": synced.record})

    def publish_result(self, result: ReconciliationResult) -> None:
        """Invalidate caches and emit audit events for an applied change."""

        if result.outcome != MergeOutcome.APPLIED:
            return
        self.entitlement_invalidator.invalidate_user(result.user_id)
        for event_type in audit_events_for_transition(result.previous, result.record):
            metadata = {"status": result.record.status.value}
            if result.record.subscription_end is not None:
                metadata["subscription_end"] = result.record.subscription_end.isoformat()
            if result.idempotency_key:
                metadata["idempotency_key"] = result.idempotency_key
            self.event_logger.log(BillingAuditEvent(event_type=event_type, user_id=result.user_id, metadata=metadata))
            if event_type == BillingAuditEventType.PAYMENT_FAILED:
                self.notifier.notify_payment_failure(result.record)
            elif event_type == BillingAuditEventType.SUBSCRIPTION_EXPIRED:
                self.notifier.notify_subscription_expired(result.record)


__all__ = [
    "AccessReader",
    "BillingEventLogger",
    "BillingNotifier",
    "BillingService",
    "EntitlementInvalidator",
    "audit_events_for_transition",
]
