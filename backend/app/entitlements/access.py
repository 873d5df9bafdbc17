"""Pure access decisions derived from an entitlement record."""
from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import FrozenSet, Optional

from .catalog import EXPIRED_FEATURES, PREMIUM_FEATURES, TRIAL_FEATURES
from .models import AccessDecision, EntitlementRecord, EntitlementStatus, ensure_utc, utc_now

logger = logging.getLogger("billing.access")

_SECONDS_PER_DAY = 86400


def _days_until(end: Optional[datetime], now: datetime) -> int:
    if end is None:
        return 0
    seconds = (end - now).total_seconds()
    if seconds <= 0:
        return 0
    return int(math.ceil(seconds / _SECONDS_PER_DAY))


def _later(first: Optional[datetime], second: Optional[datetime]) -> Optional[datetime]:
    if first is None:
        return second
    if second is None:
        return first
    return max(first, second)


def _evaluate(record: EntitlementRecord, now: datetime) -> AccessDecision:
    status = EntitlementStatus(record.status)
    trial_end = ensure_utc(record.trial_end)
    subscription_end = ensure_utc(record.subscription_end)
    grace_end = ensure_utc(record.grace_period_ends_at)

    is_trial_active = status == EntitlementStatus.TRIAL and trial_end is not None and trial_end > now
    is_premium = status == EntitlementStatus.ACTIVE and subscription_end is not None and subscription_end > now

    paid_until: Optional[datetime] = None
    if status == EntitlementStatus.CANCELLED:
        paid_until = subscription_end
    elif status == EntitlementStatus.PAST_DUE:
        paid_until = _later(grace_end, subscription_end)
    is_paid_period_active = paid_until is not None and paid_until > now

    if is_trial_active:
        days_remaining = _days_until(trial_end, now)
    elif is_premium:
        days_remaining = _days_until(subscription_end, now)
    elif is_paid_period_active:
        days_remaining = _days_until(paid_until, now)
    else:
        days_remaining = 0

    return AccessDecision(
        has_access=is_trial_active or is_premium or is_paid_period_active,
        is_trial_active=is_trial_active,
        is_premium=is_premium,
        is_paid_period_active=is_paid_period_active,
        days_remaining=days_remaining,
        status=status,
        plan_id=record.plan_id,
        trial_ends_at=trial_end,
        subscription_ends_at=subscription_end,
        evaluated_at=now,
    )


def compute_access(record: Optional[EntitlementRecord], now: Optional[datetime] = None) -> AccessDecision:
    """Return the access decision for ``record`` at ``now``.

    Never raises. A missing or malformed record is denied access. The stored
    ``is_premium`` flag is ignored in favour of ``status`` and
    ``subscription_end``.
    """

    evaluated_at = ensure_utc(now) if now is not None else utc_now()
    if record is None:
        return AccessDecision.denied(evaluated_at=evaluated_at)
    try:
        return _evaluate(record, evaluated_at)
    except Exception:
        logger.exception("Failed to evaluate access for %s", getattr(record, "user_id", None))
        return AccessDecision.denied(evaluated_at=evaluated_at)


def features_for(decision: AccessDecision) -> FrozenSet[str]:
    """Feature tags available under ``decision``."""

    if decision.is_premium or decision.is_paid_period_active:
        return PREMIUM_FEATURES | EXPIRED_FEATURES
    if decision.is_trial_active:
        return TRIAL_FEATURES | EXPIRED_FEATURES
    return EXPIRED_FEATURES


def feature_allowed(decision: AccessDecision, feature: str) -> bool:
    return feature in features_for(decision)


__all__ = ["compute_access", "feature_allowed", "features_for"]
