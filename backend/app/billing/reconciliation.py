"""Reconciliation engine: the only writer of entitlement records."""
from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple, TypeVar

from ..entitlements.catalog import PlanCatalog, StaticPlanCatalog, resolve_plan_id
from ..entitlements.models import EntitlementRecord, utc_now
from .config import BillingConfig
from .exceptions import (
    ConcurrencyConflict,
    DuplicateTransaction,
    PersistenceError,
    ReconciliationFailed,
    UnresolvedIdentity,
)
from .merge import advance_record, merge_event, new_lapsed_record, new_trial_record
from .models import (
    AppliedTransaction,
    BillingEventType,
    BindingConflict,
    BindingResult,
    CanonicalBillingEvent,
    EventSource,
    IdentityBinding,
    MergeOutcome,
    ProviderEntitlement,
    ProviderSnapshot,
    ReconciliationResult,
)
from .repository import EntitlementRepository

logger = logging.getLogger("billing.reconcile")
identity_logger = logging.getLogger("billing.identity")

T = TypeVar("T")

_RETRYABLE = (ConcurrencyConflict, PersistenceError)


def snapshot_transaction_id(entitlement: ProviderEntitlement) -> str:
    """Deterministic id so the same provider snapshot is applied once."""

    expires_ms = int(entitlement.expires_at.timestamp() * 1000) if entitlement.expires_at else 0
    return f"snapshot:{entitlement.identifier}:{entitlement.product_id or '-'}:{expires_ms}"


class ReconciliationEngine:
    """Merges billing events and provider snapshots into entitlement records.

    Writes use optimistic concurrency: each attempt re-reads the record,
    merges, and saves with a compare-and-swap on ``version``. Conflicts and
    store failures are retried with exponential backoff inside a total time
    budget, after which :class:`ReconciliationFailed` is raised.
    """

    def __init__(
        self,
        repository: EntitlementRepository,
        *,
        config: Optional[BillingConfig] = None,
        catalog: Optional[PlanCatalog] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._repository = repository
        self._config = config or BillingConfig()
        self._catalog = catalog or StaticPlanCatalog()
        self._clock = clock
        self._sleep = sleep
        self._monotonic = monotonic

    @property
    def repository(self) -> EntitlementRepository:
        return self._repository

    @property
    def grace_period(self) -> timedelta:
        return timedelta(days=self._config.grace_period_days)

    def _retry(self, operation: Callable[[int], T], *, user_id: str, retry_on: Tuple[type, ...] = _RETRYABLE) -> T:
        deadline = self._monotonic() + self._config.reconcile_timeout_seconds
        last_error: Optional[Exception] = None
        for attempt in range(1, self._config.max_attempts + 1):
            try:
                return operation(attempt)
            except retry_on as exc:
                last_error = exc
                logger.warning(
                    "Reconciliation attempt %s/%s for %s failed: %s",
                    attempt,
                    self._config.max_attempts,
                    user_id,
                    exc,
                )
            if attempt >= self._config.max_attempts:
                break
            delay = self._config.backoff_seconds * (2 ** (attempt - 1))
            if self._monotonic() + delay >= deadline:
                logger.warning("Reconciliation budget exhausted for %s", user_id)
                break
            self._sleep(delay)
        raise ReconciliationFailed(f"Reconciliation for {user_id} failed: {last_error}") from last_error

    def ensure_record(self, user_id: str) -> Tuple[EntitlementRecord, bool]:
        """Return the user's record, starting the free trial on first sign-in."""

        record = self._repository.get_record(user_id)
        if record is not None:
            return record, False
        record, created = self._repository.create_record(
            new_trial_record(user_id, now=self._clock(), trial_days=self._config.trial_duration_days)
        )
        if created:
            logger.info("Started trial for %s ending %s", user_id, record.trial_end)
        return record, created

    def _load_for_event(self, user_id: str) -> EntitlementRecord:
        record = self._repository.get_record(user_id)
        if record is not None:
            return record
        record, _created = self._repository.create_record(new_lapsed_record(user_id, now=self._clock()))
        return record

    def apply_event(self, event: CanonicalBillingEvent) -> ReconciliationResult:
        """Route ``event`` to its bound user and merge it.

        Raises :class:`UnresolvedIdentity` when the billing identity is unbound.
        """

        user_id = self._repository.resolve_user_id(event.billing_provider_user_id)
        if user_id is None:
            raise UnresolvedIdentity(event.billing_provider_user_id)
        return self.apply_event_for_user(user_id, event)

    def apply_event_for_user(self, user_id: str, event: CanonicalBillingEvent) -> ReconciliationResult:
        return self._retry(lambda attempt: self._apply_once(user_id, event, attempt), user_id=user_id)

    def _apply_once(self, user_id: str, event: CanonicalBillingEvent, attempt: int) -> ReconciliationResult:
        key = event.idempotency_key
        if self._repository.has_applied(key):
            logger.info("Duplicate billing event %s for %s", key, user_id)
            record = self._load_for_event(user_id)
            return ReconciliationResult(
                user_id=user_id, outcome=MergeOutcome.DUPLICATE, record=record, attempts=attempt, idempotency_key=key
            )

        record = self._load_for_event(user_id)
        now = self._clock()
        result = merge_event(record, event, now=now, grace_period=self.grace_period)
        applied = AppliedTransaction.from_event(event, user_id=user_id, applied_at=now)

        if not result.changed:
            if result.outcome == MergeOutcome.STALE:
                logger.info("Discarded stale %s event %s for %s", event.event_type.value, key, user_id)
            self._repository.record_applied_transaction(applied)
            return ReconciliationResult(
                user_id=user_id, outcome=result.outcome, record=record, attempts=attempt, idempotency_key=key
            )

        try:
            saved = self._repository.save_record(
                result.record.model_copy(update={"updated_at": now}),
                expected_version=record.version,
                applied=applied,
            )
        except DuplicateTransaction:
            logger.info("Billing event %s applied concurrently for %s", key, user_id)
            return ReconciliationResult(
                user_id=user_id,
                outcome=MergeOutcome.DUPLICATE,
                record=self._load_for_event(user_id),
                attempts=attempt,
                idempotency_key=key,
            )
        logger.info(
            "Applied %s event %s for %s: %s -> %s",
            event.event_type.value,
            key,
            user_id,
            record.status.value,
            saved.status.value,
        )
        return ReconciliationResult(
            user_id=user_id,
            outcome=MergeOutcome.APPLIED,
            record=saved,
            previous=record,
            attempts=attempt,
            idempotency_key=key,
        )

    def refresh(self, user_id: str) -> Optional[EntitlementRecord]:
        """Persist time-driven transitions for ``user_id``; ``None`` when no record exists."""

        result = self.refresh_record(user_id)
        return result.record if result else None

    def refresh_record(self, user_id: str) -> Optional[ReconciliationResult]:
        return self._retry(lambda attempt: self._refresh_once(user_id, attempt), user_id=user_id)

    def _refresh_once(self, user_id: str, attempt: int) -> Optional[ReconciliationResult]:
        record = self._repository.get_record(user_id)
        if record is None:
            return None
        now = self._clock()
        advanced = advance_record(record, now)
        if advanced == record:
            return ReconciliationResult(user_id=user_id, outcome=MergeOutcome.NO_CHANGE, record=record, attempts=attempt)
        saved = self._repository.save_record(advanced.model_copy(update={"updated_at": now}), expected_version=record.version)
        return ReconciliationResult(
            user_id=user_id, outcome=MergeOutcome.APPLIED, record=saved, previous=record, attempts=attempt
        )

    def _snapshot_event(
        self,
        snapshot: ProviderSnapshot,
        entitlement: ProviderEntitlement,
        record: EntitlementRecord,
        now: datetime,
    ) -> CanonicalBillingEvent:
        purchased_at = entitlement.purchased_at or record.latest_purchase_at or now
        return CanonicalBillingEvent(
            event_type=BillingEventType.RENEWAL,
            billing_provider_user_id=snapshot.billing_provider_user_id,
            transaction_id=snapshot_transaction_id(entitlement),
            purchased_at=purchased_at,
            received_at=now,
            product_id=entitlement.product_id,
            plan_id=resolve_plan_id(
                entitlement.product_id, catalog=self._catalog, product_plan_map=self._config.product_plan_map
            ),
            expires_at=entitlement.expires_at,
            will_auto_renew=entitlement.will_renew,
            store=entitlement.store,
            environment="SANDBOX" if entitlement.is_sandbox else None,
            source=EventSource.SNAPSHOT,
        )

    def apply_snapshot(self, user_id: str, snapshot: ProviderSnapshot) -> ReconciliationResult:
        """Merge the snapshot's strongest active entitlement as a renewal-shaped event."""

        return self._retry(
            lambda attempt: self._apply_snapshot_once(user_id, snapshot, attempt),
            user_id=user_id,
            retry_on=_RETRYABLE + (DuplicateTransaction,),
        )

    def _apply_snapshot_once(self, user_id: str, snapshot: ProviderSnapshot, attempt: int) -> ReconciliationResult:
        record, _created = self.ensure_record(user_id)
        now = self._clock()
        entitlement = snapshot.strongest_active(now, preferred=self._config.entitlement_id)

        outcome = MergeOutcome.NO_CHANGE
        candidate = advance_record(record, now)
        applied: Optional[AppliedTransaction] = None
        key: Optional[str] = None
        if entitlement is not None:
            event = self._snapshot_event(snapshot, entitlement, record, now)
            key = event.idempotency_key
            if self._repository.has_applied(key):
                outcome = MergeOutcome.DUPLICATE
            else:
                result = merge_event(record, event, now=now, grace_period=self.grace_period)
                outcome = result.outcome
                candidate = result.record
                if result.changed:
                    applied = AppliedTransaction.from_event(event, user_id=user_id, applied_at=now)

        changed = candidate.state_fields() != record.state_fields()
        saved = self._repository.save_record(
            candidate.model_copy(update={"last_synced_at": now, "updated_at": now}),
            expected_version=record.version,
            applied=applied,
        )
        return ReconciliationResult(
            user_id=user_id,
            outcome=MergeOutcome.APPLIED if changed else outcome,
            record=saved,
            previous=record if changed else None,
            attempts=attempt,
            idempotency_key=key,
        )

    def _set_provider_pointer(self, user_id: str, value: Optional[str], *, only_if: Optional[str] = None) -> EntitlementRecord:
        def attempt_once(attempt: int) -> EntitlementRecord:
            record = self._repository.get_record(user_id)
            if record is None:
                record, _created = self.ensure_record(user_id)
            if only_if is not None and record.billing_provider_user_id != only_if:
                return record
            if record.billing_provider_user_id == value:
                return record
            return self._repository.save_record(
                record.model_copy(update={"billing_provider_user_id": value, "updated_at": self._clock()}),
                expected_version=record.version,
            )

        return self._retry(attempt_once, user_id=user_id)

    def bind_identity(self, user_id: str, billing_provider_user_id: str) -> BindingResult:
        """Bind a billing identity to ``user_id`` and replay events parked for it.

        The later claim wins when another user held the binding; the conflict
        is recorded and the previous user's record drops the pointer.
        """

        self.ensure_record(user_id)
        now = self._clock()
        previous_user = self._repository.bind_identity(
            IdentityBinding(billing_provider_user_id=billing_provider_user_id, user_id=user_id, bound_at=now)
        )

        conflict: Optional[BindingConflict] = None
        if previous_user is not None and previous_user != user_id:
            conflict = BindingConflict(
                billing_provider_user_id=billing_provider_user_id,
                previous_user_id=previous_user,
                new_user_id=user_id,
                detected_at=now,
            )
            self._repository.record_binding_conflict(conflict)
            identity_logger.warning(
                "Billing identity %s moved from user %s to user %s",
                billing_provider_user_id,
                previous_user,
                user_id,
            )
            self._set_provider_pointer(previous_user, None, only_if=billing_provider_user_id)

        self._set_provider_pointer(user_id, billing_provider_user_id)
        replayed = self.replay_parked(billing_provider_user_id)
        record = self._repository.get_record(user_id)
        if record is None:
            raise PersistenceError(f"Entitlement record for {user_id} disappeared during binding")
        return BindingResult(
            user_id=user_id,
            billing_provider_user_id=billing_provider_user_id,
            record=record,
            replayed_events=replayed,
            conflict=conflict,
        )

    def replay_parked(self, billing_provider_user_id: str) -> int:
        """Apply parked events for a now-bound identity in purchase order."""

        user_id = self._repository.resolve_user_id(billing_provider_user_id)
        if user_id is None:
            return 0
        replayed = 0
        for parked in self._repository.list_parked_events(billing_provider_user_id):
            try:
                self.apply_event_for_user(user_id, parked.event)
            except ReconciliationFailed:
                identity_logger.warning(
                    "Replay of parked event %s for %s failed; will retry later",
                    parked.event.idempotency_key,
                    user_id,
                )
                break
            self._repository.delete_parked_event(parked.event.idempotency_key)
            replayed += 1
        if replayed:
            identity_logger.info("Replayed %s parked events for %s", replayed, user_id)
        return replayed


__all__ = ["ReconciliationEngine", "snapshot_transaction_id"]
