"""Helpers for enforcing access checks on API and service layers."""
from __future__ import annotations

from typing import Optional

from ..entitlements import AccessDecision, feature_allowed
from .exceptions import ACCESS_EXPIRED, FEATURE_NOT_IN_PLAN, NO_ENTITLEMENT, FeatureGateError


def require_feature(
    decision: AccessDecision,
    feature: str,
    *,
    error_code: str = "subscription_required",
    message: Optional[str] = None,
) -> None:
    """Raise :class:`FeatureGateError` unless ``feature`` is available under ``decision``.

    Trial users and paying users (including cancelled users inside their paid
    period) get the full feature set; everyone else keeps the read-only
    features.
    """

    if feature_allowed(decision, feature):
        return

    if decision.status is None:
        reason = NO_ENTITLEMENT
    elif decision.is_trial_active or decision.has_access:
        reason = FEATURE_NOT_IN_PLAN
    else:
        reason = ACCESS_EXPIRED
    raise FeatureGateError(
        feature=feature,
        reason=reason,
        days_remaining=decision.days_remaining,
        code=error_code,
        message=message,
    )
