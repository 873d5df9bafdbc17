"""Pure merge rules for entitlement records.

Nothing in this module performs I/O; the reconciliation engine supplies the
current record, the event, and ``now`` and persists whatever comes back.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from ..entitlements.models import EntitlementRecord, EntitlementStatus, ensure_utc
from .models import BillingEventType, CanonicalBillingEvent, MergeOutcome, MergeResult

_STATUS_SIGNALS = {BillingEventType.CANCELLATION, BillingEventType.BILLING_ISSUE}
_PAID_STATUSES = {EntitlementStatus.ACTIVE, EntitlementStatus.PAST_DUE, EntitlementStatus.CANCELLED}


def _later(first: Optional[datetime], second: Optional[datetime]) -> Optional[datetime]:
    if first is None:
        return second
    if second is None:
        return first
    return max(first, second)


def _past_due_until(record: EntitlementRecord) -> Optional[datetime]:
    return _later(record.grace_period_ends_at, record.subscription_end)


def derive_is_premium(record: EntitlementRecord, now: datetime) -> bool:
    return record.status == EntitlementStatus.ACTIVE and record.subscription_end is not None and record.subscription_end > now


def new_trial_record(user_id: str, *, now: datetime, trial_days: int) -> EntitlementRecord:
    """Record created at first sign-in."""

    now = ensure_utc(now)
    return EntitlementRecord(
        user_id=user_id,
        status=EntitlementStatus.TRIAL,
        trial_start=now,
        trial_end=now + timedelta(days=trial_days),
        created_at=now,
        updated_at=now,
    )


def new_lapsed_record(user_id: str, *, now: datetime) -> EntitlementRecord:
    """Record for a user who reached billing without ever signing in here."""

    now = ensure_utc(now)
    return EntitlementRecord(user_id=user_id, status=EntitlementStatus.EXPIRED, created_at=now, updated_at=now)


def advance_record(record: EntitlementRecord, now: datetime) -> EntitlementRecord:
    """Apply time-driven transitions: lapsed trials, paid periods and grace windows."""

    now = ensure_utc(now)
    status = record.status
    lapsed = False
    if status == EntitlementStatus.TRIAL:
        lapsed = record.trial_end is None or record.trial_end <= now
    elif status in {EntitlementStatus.ACTIVE, EntitlementStatus.CANCELLED}:
        lapsed = record.subscription_end is None or record.subscription_end <= now
    elif status == EntitlementStatus.PAST_DUE:
        until = _past_due_until(record)
        lapsed = until is None or until <= now

    updates: Dict[str, Any] = {}
    if lapsed:
        updates["status"] = EntitlementStatus.EXPIRED
        updates["grace_period_ends_at"] = None
    candidate = record.model_copy(update=updates) if updates else record
    is_premium = derive_is_premium(candidate, now)
    if is_premium != candidate.is_premium:
        candidate = candidate.model_copy(update={"is_premium": is_premium})
    return candidate


def _apply_purchase(
    record: EntitlementRecord, event: CanonicalBillingEvent, now: datetime, grace_period: timedelta
) -> Dict[str, Any]:
    end = _later(record.subscription_end, event.expires_at)
    # A cancellation for this transaction may have been delivered first.
    already_cancelled = event.transaction_id == record.cancelled_transaction_id
    updates: Dict[str, Any] = {
        "subscription_end": end,
        "auto_renew": event.will_auto_renew and not already_cancelled,
        "active_transaction_id": event.transaction_id,
    }
    if event.plan_id:
        updates["plan_id"] = event.plan_id

    if end is not None and end > now:
        keeps_cancellation = already_cancelled or (
            record.status == EntitlementStatus.CANCELLED
            and event.event_type == BillingEventType.RENEWAL
            and not event.will_auto_renew
        )
        status = EntitlementStatus.CANCELLED if keeps_cancellation else EntitlementStatus.ACTIVE
        updates["status"] = status
        updates["grace_period_ends_at"] = None
        if record.status not in _PAID_STATUSES or record.subscription_start is None:
            updates["subscription_start"] = event.purchased_at
    elif not (record.status == EntitlementStatus.TRIAL and record.trial_end is not None and record.trial_end > now):
        updates["status"] = EntitlementStatus.EXPIRED
        updates["grace_period_ends_at"] = None
    return updates


def _superseded_intent(record: EntitlementRecord, event: CanonicalBillingEvent) -> bool:
    """True when a later cancel/uncancel signal has already been applied."""

    return (
        event.event_timestamp is not None
        and record.renewal_intent_at is not None
        and event.event_timestamp < record.renewal_intent_at
    )


def _apply_cancellation(
    record: EntitlementRecord, event: CanonicalBillingEvent, now: datetime, grace_period: timedelta
) -> Dict[str, Any]:
    if _superseded_intent(record, event):
        return {}
    updates: Dict[str, Any] = {
        "auto_renew": False,
        "cancelled_transaction_id": event.transaction_id,
        "renewal_intent_at": _later(record.renewal_intent_at, event.event_timestamp),
    }
    if record.status in {EntitlementStatus.ACTIVE, EntitlementStatus.PAST_DUE}:
        updates["status"] = EntitlementStatus.CANCELLED
        updates["grace_period_ends_at"] = None
    return updates


def _apply_uncancellation(
    record: EntitlementRecord, event: CanonicalBillingEvent, now: datetime, grace_period: timedelta
) -> Dict[str, Any]:
    if _superseded_intent(record, event):
        return {}
    updates: Dict[str, Any] = {"renewal_intent_at": _later(record.renewal_intent_at, event.event_timestamp)}
    if record.cancelled_transaction_id in (None, event.transaction_id):
        updates["cancelled_transaction_id"] = None
    end = _later(record.subscription_end, event.expires_at)
    if record.status == EntitlementStatus.CANCELLED and end is not None and end > now:
        updates["status"] = EntitlementStatus.ACTIVE
        updates["auto_renew"] = True
    elif record.status in {EntitlementStatus.ACTIVE, EntitlementStatus.PAST_DUE}:
        updates["auto_renew"] = True
    return updates


def _apply_billing_issue(
    record: EntitlementRecord, event: CanonicalBillingEvent, now: datetime, grace_period: timedelta
) -> Dict[str, Any]:
    grace_end = event.grace_period_expires_at or (now + grace_period)
    if record.status == EntitlementStatus.ACTIVE and record.auto_renew:
        return {"status": EntitlementStatus.PAST_DUE, "grace_period_ends_at": grace_end}
    if record.status == EntitlementStatus.PAST_DUE and event.grace_period_expires_at is not None:
        return {"grace_period_ends_at": _later(record.grace_period_ends_at, event.grace_period_expires_at)}
    return {}


def _apply_expiration(
    record: EntitlementRecord, event: CanonicalBillingEvent, now: datetime, grace_period: timedelta
) -> Dict[str, Any]:
    end = _later(record.subscription_end, event.expires_at)
    if record.status not in _PAID_STATUSES:
        return {}
    if end is None or end <= now:
        return {"status": EntitlementStatus.EXPIRED, "auto_renew": False, "grace_period_ends_at": None}
    return {}


_HANDLERS: Dict[BillingEventType, Callable[..., Dict[str, Any]]] = {
    BillingEventType.INITIAL_PURCHASE: _apply_purchase,
    BillingEventType.RENEWAL: _apply_purchase,
    BillingEventType.CANCELLATION: _apply_cancellation,
    BillingEventType.UNCANCELLATION: _apply_uncancellation,
    BillingEventType.BILLING_ISSUE: _apply_billing_issue,
    BillingEventType.EXPIRATION: _apply_expiration,
}


def is_stale(record: EntitlementRecord, event: CanonicalBillingEvent) -> bool:
    return record.latest_purchase_at is not None and event.purchased_at < record.latest_purchase_at


def merge_event(
    record: EntitlementRecord,
    event: CanonicalBillingEvent,
    *,
    now: datetime,
    grace_period: timedelta = timedelta(days=7),
) -> MergeResult:
    """Merge ``event`` into ``record`` and report what happened.

    Ledger-based duplicate detection happens in the engine; this function
    handles staleness, the per-type transitions, and the derived fields.
    ``subscription_end`` is never moved backwards.
    """

    now = ensure_utc(now)
    handler = _HANDLERS.get(event.event_type)
    if handler is None:
        return MergeResult(outcome=MergeOutcome.IGNORED, record=record, reason="unhandled event type")

    status_only = False
    if is_stale(record, event):
        if event.event_type in _STATUS_SIGNALS and event.transaction_id == record.active_transaction_id:
            status_only = True
        else:
            return MergeResult(outcome=MergeOutcome.STALE, record=record, reason="older than applied purchase")

    updates = handler(record, event, now, grace_period)
    if not status_only:
        updates.setdefault("subscription_end", _later(record.subscription_end, event.expires_at))
        updates["latest_purchase_at"] = _later(record.latest_purchase_at, event.purchased_at)
        if record.active_transaction_id is None and event.event_type != BillingEventType.EXPIRATION:
            updates.setdefault("active_transaction_id", event.transaction_id)
    if record.billing_provider_user_id is None:
        updates["billing_provider_user_id"] = event.billing_provider_user_id

    candidate = advance_record(record.model_copy(update=updates), now)
    if candidate.state_fields() == record.state_fields():
        return MergeResult(outcome=MergeOutcome.NO_CHANGE, record=record)
    return MergeResult(outcome=MergeOutcome.APPLIED, record=candidate)


__all__ = [
    "advance_record",
    "derive_is_premium",
    "is_stale",
    "merge_event",
    "new_lapsed_record",
    "new_trial_record",
]
