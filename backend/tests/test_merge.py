from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from backend.app.billing import BillingEventType, CanonicalBillingEvent, MergeOutcome, advance_record, merge_event
from backend.app.billing.merge import new_trial_record
from backend.app.entitlements import EntitlementRecord, EntitlementStatus

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _event(
    event_type: BillingEventType,
    *,
    purchased_at: datetime,
    expires_at: Optional[datetime] = None,
    transaction_id: str = "txn-1",
    will_auto_renew: bool = True,
    **fields,
) -> CanonicalBillingEvent:
    return CanonicalBillingEvent(
        event_type=event_type,
        billing_provider_user_id="rc-user-1",
        transaction_id=transaction_id,
        purchased_at=purchased_at,
        received_at=purchased_at,
        expires_at=expires_at,
        will_auto_renew=will_auto_renew,
        plan_id="premium_monthly",
        **fields,
    )


def _active(end: datetime, *, purchased_at: datetime = T0, transaction_id: str = "txn-1") -> EntitlementRecord:
    return EntitlementRecord(
        user_id="user-1",
        status=EntitlementStatus.ACTIVE,
        subscription_start=purchased_at,
        subscription_end=end,
        is_premium=True,
        auto_renew=True,
        plan_id="premium_monthly",
        billing_provider_user_id="rc-user-1",
        latest_purchase_at=purchased_at,
        active_transaction_id=transaction_id,
    )


def test_initial_purchase_activates_trial_user() -> None:
    trial = new_trial_record("user-1", now=T0, trial_days=3)
    purchase_time = T0 + timedelta(days=1)
    event = _event(BillingEventType.INITIAL_PURCHASE, purchased_at=purchase_time, expires_at=T0 + timedelta(days=37))

    result = merge_event(trial, event, now=purchase_time)

    assert result.outcome == MergeOutcome.APPLIED
    assert result.record.status == EntitlementStatus.ACTIVE
    assert result.record.subscription_end == T0 + timedelta(days=37)
    assert result.record.subscription_start == purchase_time
    assert result.record.is_premium is True
    assert result.record.plan_id == "premium_monthly"
    assert result.record.billing_provider_user_id == "rc-user-1"
    assert result.record.trial_end == trial.trial_end


def test_cancellation_keeps_subscription_end() -> None:
    record = _active(T0 + timedelta(days=37))
    now = T0 + timedelta(days=10)
    event = _event(BillingEventType.CANCELLATION, purchased_at=now, will_auto_renew=False)

    result = merge_event(record, event, now=now)

    assert result.record.status == EntitlementStatus.CANCELLED
    assert result.record.subscription_end == T0 + timedelta(days=37)
    assert result.record.auto_renew is False
    assert result.record.is_premium is False


def test_events_applied_in_either_order_agree_on_subscription_end() -> None:
    t1 = T0
    t2 = T0 + timedelta(days=5)
    first = _event(BillingEventType.RENEWAL, purchased_at=t1, expires_at=t1 + timedelta(days=30), transaction_id="a")
    second = _event(BillingEventType.RENEWAL, purchased_at=t2, expires_at=t2 + timedelta(days=30), transaction_id="b")
    start = new_trial_record("user-1", now=T0 - timedelta(days=1), trial_days=3)
    now = t2 + timedelta(hours=1)

    forward = merge_event(merge_event(start, first, now=now).record, second, now=now).record
    backward_first = merge_event(start, second, now=now)
    backward = merge_event(backward_first.record, first, now=now)

    assert backward.outcome == MergeOutcome.STALE
    assert forward.subscription_end == backward.record.subscription_end == t2 + timedelta(days=30)


def test_cancellation_delivered_before_its_purchase_still_cancels() -> None:
    purchase = _event(BillingEventType.INITIAL_PURCHASE, purchased_at=T0, expires_at=T0 + timedelta(days=30))
    cancellation = _event(BillingEventType.CANCELLATION, purchased_at=T0, will_auto_renew=False)
    start = new_trial_record("user-1", now=T0 - timedelta(days=1), trial_days=3)
    now = T0 + timedelta(hours=1)

    in_order = merge_event(merge_event(start, purchase, now=now).record, cancellation, now=now).record
    reversed_ = merge_event(merge_event(start, cancellation, now=now).record, purchase, now=now).record

    for record in (in_order, reversed_):
        assert record.status == EntitlementStatus.CANCELLED
        assert record.auto_renew is False
        assert record.is_premium is False
        assert record.subscription_end == T0 + timedelta(days=30)
    assert in_order.state_fields() == reversed_.state_fields()


def test_purchase_for_a_different_transaction_is_not_treated_as_cancelled() -> None:
    record = new_trial_record("user-1", now=T0, trial_days=3).model_copy(
        update={"cancelled_transaction_id": "txn-old", "auto_renew": False}
    )
    purchase = _event(
        BillingEventType.INITIAL_PURCHASE, purchased_at=T0, expires_at=T0 + timedelta(days=30), transaction_id="txn-2"
    )

    result = merge_event(record, purchase, now=T0)

    assert result.record.status == EntitlementStatus.ACTIVE
    assert result.record.auto_renew is True


def test_older_uncancellation_does_not_undo_a_newer_cancellation() -> None:
    record = _active(T0 + timedelta(days=30))
    cancel = _event(
        BillingEventType.CANCELLATION,
        purchased_at=T0,
        will_auto_renew=False,
        event_timestamp=T0 + timedelta(days=3),
    )
    uncancel = _event(BillingEventType.UNCANCELLATION, purchased_at=T0, event_timestamp=T0 + timedelta(days=2))
    now = T0 + timedelta(days=4)

    cancelled = merge_event(record, cancel, now=now).record
    result = merge_event(cancelled, uncancel, now=now)

    assert result.outcome == MergeOutcome.NO_CHANGE
    assert result.record.status == EntitlementStatus.CANCELLED
    assert result.record.auto_renew is False


def test_uncancellation_clears_an_early_cancellation() -> None:
    start = new_trial_record("user-1", now=T0 - timedelta(days=1), trial_days=3)
    cancel = _event(BillingEventType.CANCELLATION, purchased_at=T0, will_auto_renew=False, event_timestamp=T0)
    uncancel = _event(BillingEventType.UNCANCELLATION, purchased_at=T0, event_timestamp=T0 + timedelta(minutes=5))
    purchase = _event(BillingEventType.INITIAL_PURCHASE, purchased_at=T0, expires_at=T0 + timedelta(days=30))
    now = T0 + timedelta(hours=1)

    record = start
    for event in (cancel, uncancel, purchase):
        record = merge_event(record, event, now=now).record

    assert record.status == EntitlementStatus.ACTIVE
    assert record.auto_renew is True
    assert record.cancelled_transaction_id is None


def test_subscription_end_never_moves_backwards() -> None:
    record = _active(T0 + timedelta(days=60))
    now = T0 + timedelta(days=1)
    shorter = _event(
        BillingEventType.RENEWAL,
        purchased_at=now,
        expires_at=T0 + timedelta(days=30),
        transaction_id="txn-2",
    )

    result = merge_event(record, shorter, now=now)

    assert result.record.subscription_end == T0 + timedelta(days=60)


def test_stale_cancellation_for_active_transaction_still_cancels() -> None:
    record = _active(T0 + timedelta(days=30), purchased_at=T0 + timedelta(days=2), transaction_id="txn-1")
    now = T0 + timedelta(days=3)
    event = _event(BillingEventType.CANCELLATION, purchased_at=T0, transaction_id="txn-1", will_auto_renew=False)

    result = merge_event(record, event, now=now)

    assert result.outcome == MergeOutcome.APPLIED
    assert result.record.status == EntitlementStatus.CANCELLED
    assert result.record.latest_purchase_at == record.latest_purchase_at


def test_stale_cancellation_for_other_transaction_is_discarded() -> None:
    record = _active(T0 + timedelta(days=30), purchased_at=T0 + timedelta(days=2), transaction_id="txn-2")
    now = T0 + timedelta(days=3)
    event = _event(BillingEventType.CANCELLATION, purchased_at=T0, transaction_id="txn-1", will_auto_renew=False)

    result = merge_event(record, event, now=now)

    assert result.outcome == MergeOutcome.STALE
    assert result.record == record


def test_billing_issue_moves_auto_renewing_user_to_past_due() -> None:
    record = _active(T0 + timedelta(days=1))
    now = T0 + timedelta(hours=12)
    event = _event(BillingEventType.BILLING_ISSUE, purchased_at=now)

    result = merge_event(record, event, now=now, grace_period=timedelta(days=7))

    assert result.record.status == EntitlementStatus.PAST_DUE
    assert result.record.grace_period_ends_at == now + timedelta(days=7)
    assert result.record.is_premium is False


def test_billing_issue_uses_provider_grace_when_given() -> None:
    record = _active(T0 + timedelta(days=1))
    now = T0 + timedelta(hours=12)
    grace = T0 + timedelta(days=16)
    event = _event(BillingEventType.BILLING_ISSUE, purchased_at=now, grace_period_expires_at=grace)

    result = merge_event(record, event, now=now)

    assert result.record.grace_period_ends_at == grace


def test_billing_issue_ignored_when_not_auto_renewing() -> None:
    record = _active(T0 + timedelta(days=10)).model_copy(update={"auto_renew": False})
    now = T0 + timedelta(days=1)

    result = merge_event(record, _event(BillingEventType.BILLING_ISSUE, purchased_at=now), now=now)

    assert result.record.status == EntitlementStatus.ACTIVE


def test_renewal_recovers_past_due_user() -> None:
    record = _active(T0 + timedelta(days=1)).model_copy(
        update={"status": EntitlementStatus.PAST_DUE, "grace_period_ends_at": T0 + timedelta(days=8), "is_premium": False}
    )
    now = T0 + timedelta(days=2)
    renewal = _event(
        BillingEventType.RENEWAL,
        purchased_at=now,
        expires_at=now + timedelta(days=30),
        transaction_id="txn-2",
    )

    result = merge_event(record, renewal, now=now)

    assert result.record.status == EntitlementStatus.ACTIVE
    assert result.record.grace_period_ends_at is None
    assert result.record.subscription_end == now + timedelta(days=30)
    assert result.record.subscription_start == record.subscription_start


def test_uncancellation_restores_active_status() -> None:
    record = _active(T0 + timedelta(days=20)).model_copy(
        update={"status": EntitlementStatus.CANCELLED, "auto_renew": False, "is_premium": False}
    )
    now = T0 + timedelta(days=2)

    result = merge_event(record, _event(BillingEventType.UNCANCELLATION, purchased_at=now), now=now)

    assert result.record.status == EntitlementStatus.ACTIVE
    assert result.record.auto_renew is True
    assert result.record.is_premium is True


def test_expiration_after_period_end_expires_record() -> None:
    end = T0 + timedelta(days=30)
    record = _active(end)
    now = end + timedelta(minutes=1)
    event = _event(BillingEventType.EXPIRATION, purchased_at=now, expires_at=end, will_auto_renew=False)

    result = merge_event(record, event, now=now)

    assert result.record.status == EntitlementStatus.EXPIRED
    assert result.record.is_premium is False
    assert result.record.subscription_end == end


def test_expiration_before_period_end_is_no_change() -> None:
    record = _active(T0 + timedelta(days=30))
    now = T0 + timedelta(days=1)
    event = _event(BillingEventType.EXPIRATION, purchased_at=T0, expires_at=T0 + timedelta(days=30), transaction_id="txn-1")

    result = merge_event(record, event, now=now)

    assert result.outcome == MergeOutcome.NO_CHANGE


def test_reapplying_a_merged_event_changes_nothing() -> None:
    trial = new_trial_record("user-1", now=T0, trial_days=3)
    now = T0 + timedelta(days=1)
    event = _event(BillingEventType.INITIAL_PURCHASE, purchased_at=now, expires_at=now + timedelta(days=30))

    once = merge_event(trial, event, now=now)
    twice = merge_event(once.record, event, now=now)

    assert twice.outcome == MergeOutcome.NO_CHANGE
    assert twice.record == once.record


def test_unknown_event_type_is_ignored() -> None:
    record = _active(T0 + timedelta(days=30))
    event = _event(BillingEventType.UNKNOWN, purchased_at=T0 + timedelta(days=1))

    result = merge_event(record, event, now=T0 + timedelta(days=1))

    assert result.outcome == MergeOutcome.IGNORED
    assert result.record == record


def test_advance_record_expires_lapsed_trial_and_paid_periods() -> None:
    trial = new_trial_record("user-1", now=T0, trial_days=3)
    cancelled = _active(T0 + timedelta(days=5)).model_copy(update={"status": EntitlementStatus.CANCELLED})

    assert advance_record(trial, T0 + timedelta(days=2)) == trial
    assert advance_record(trial, T0 + timedelta(days=3)).status == EntitlementStatus.EXPIRED
    lapsed = advance_record(cancelled, T0 + timedelta(days=6))
    assert lapsed.status == EntitlementStatus.EXPIRED
    assert lapsed.is_premium is False
