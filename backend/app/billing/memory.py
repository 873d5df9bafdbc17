"""In-process entitlement repository used by tests and ``BILLING_STORE=memory``."""
from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from ..entitlements.models import EntitlementRecord, EntitlementStatus
from .exceptions import ConcurrencyConflict, DuplicateTransaction
from .models import (
    AppliedTransaction,
    BindingConflict,
    CanonicalBillingEvent,
    IdentityBinding,
    ParkedEvent,
)


class InMemoryEntitlementRepository:
    """Dictionary-backed store with the same semantics as the PostgreSQL one."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.records: Dict[str, EntitlementRecord] = {}
        self.applied: Dict[str, AppliedTransaction] = {}
        self.bindings: Dict[str, IdentityBinding] = {}
        self.conflicts: List[BindingConflict] = []
        self.parked: Dict[str, ParkedEvent] = {}

    def get_record(self, user_id: str) -> Optional[EntitlementRecord]:
        with self._lock:
            return self.records.get(user_id)

    def create_record(self, record: EntitlementRecord) -> Tuple[EntitlementRecord, bool]:
        with self._lock:
            existing = self.records.get(record.user_id)
            if existing is not None:
                return existing, False
            stored = record.model_copy(update={"version": 1, "updated_at": record.created_at})
            self.records[record.user_id] = stored
            return stored, True

    def save_record(
        self,
        record: EntitlementRecord,
        *,
        expected_version: int,
        applied: Optional[AppliedTransaction] = None,
    ) -> EntitlementRecord:
        with self._lock:
            current = self.records.get(record.user_id)
            if current is None or current.version != expected_version:
                raise ConcurrencyConflict(record.user_id, expected_version)
            if applied is not None and applied.idempotency_key in self.applied:
                raise DuplicateTransaction(applied.idempotency_key)
            stored = record.model_copy(update={"version": current.version + 1, "created_at": current.created_at})
            self.records[record.user_id] = stored
            if applied is not None:
                self.applied[applied.idempotency_key] = applied
            return stored

    def has_applied(self, idempotency_key: str) -> bool:
        with self._lock:
            return idempotency_key in self.applied

    def record_applied_transaction(self, applied: AppliedTransaction) -> bool:
        with self._lock:
            if applied.idempotency_key in self.applied:
                return False
            self.applied[applied.idempotency_key] = applied
            return True

    def prune_applied_transactions(self, *, older_than: datetime) -> int:
        with self._lock:
            stale_keys = [
                key
                for key, applied in self.applied.items()
                if (applied.expires_at or applied.purchased_at) < older_than
            ]
            for key in stale_keys:
                del self.applied[key]
            return len(stale_keys)

    def list_records_due(self, now: datetime, *, limit: int = 500) -> List[EntitlementRecord]:
        with self._lock:
            due = [record for record in self.records.values() if _is_due(record, now)]
        due.sort(key=lambda record: record.updated_at)
        return due[:limit]

    def resolve_user_id(self, billing_provider_user_id: str) -> Optional[str]:
        with self._lock:
            binding = self.bindings.get(billing_provider_user_id)
            return binding.user_id if binding else None

    def bind_identity(self, binding: IdentityBinding) -> Optional[str]:
        with self._lock:
            previous = self.bindings.get(binding.billing_provider_user_id)
            self.bindings[binding.billing_provider_user_id] = binding
            return previous.user_id if previous else None

    def list_bindings_for_user(self, user_id: str) -> List[IdentityBinding]:
        with self._lock:
            bindings = [binding for binding in self.bindings.values() if binding.user_id == user_id]
        return sorted(bindings, key=lambda binding: binding.bound_at, reverse=True)

    def record_binding_conflict(self, conflict: BindingConflict) -> None:
        with self._lock:
            self.conflicts.append(conflict)

    def park_event(self, event: CanonicalBillingEvent, *, parked_at: datetime) -> bool:
        with self._lock:
            key = event.idempotency_key
            existing = self.parked.get(key)
            if existing is not None:
                self.parked[key] = existing.model_copy(update={"attempts": existing.attempts + 1})
                return False
            self.parked[key] = ParkedEvent(event=event, parked_at=parked_at)
            return True

    def list_parked_events(self, billing_provider_user_id: str) -> List[ParkedEvent]:
        with self._lock:
            parked = [
                item for item in self.parked.values() if item.event.billing_provider_user_id == billing_provider_user_id
            ]
        return sorted(parked, key=lambda item: (item.event.purchased_at, item.parked_at))

    def list_resolvable_parked_identities(self, *, limit: int = 100) -> List[str]:
        with self._lock:
            identities = {
                item.event.billing_provider_user_id
                for item in self.parked.values()
                if item.event.billing_provider_user_id in self.bindings
            }
        return sorted(identities)[:limit]

    def delete_parked_event(self, idempotency_key: str) -> None:
        with self._lock:
            self.parked.pop(idempotency_key, None)


def _is_due(record: EntitlementRecord, now: datetime) -> bool:
    if record.status == EntitlementStatus.TRIAL:
        return record.trial_end is None or record.trial_end <= now
    if record.status in {EntitlementStatus.ACTIVE, EntitlementStatus.CANCELLED}:
        return record.subscription_end is None or record.subscription_end <= now
    if record.status == EntitlementStatus.PAST_DUE:
        ends = [value for value in (record.grace_period_ends_at, record.subscription_end) if value is not None]
        return not ends or max(ends) <= now
    return record.is_premium


__all__ = ["InMemoryEntitlementRepository"]
