"""Error raised when a gated humidor feature is used without sufficient access."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import HTTPException, status

NO_ENTITLEMENT = "no_entitlement"
FEATURE_NOT_IN_PLAN = "feature_not_in_plan"
ACCESS_EXPIRED = "access_expired"

_MESSAGES = {
    NO_ENTITLEMENT: "Start your free trial to use '{feature}'.",
    FEATURE_NOT_IN_PLAN: "'{feature}' is not included during the free trial. Subscribe to unlock it.",
    ACCESS_EXPIRED: "Your trial or subscription has ended. Upgrade to keep using '{feature}'.",
}


@dataclass
class FeatureGateError(Exception):
    """``feature`` was requested by a user whose access does not cover it.

    ``reason`` is one of ``no_entitlement``, ``feature_not_in_plan`` (a trial
    user asking for a subscriber-only feature) or ``access_expired`` (trial or
    paid period over). ``days_remaining`` is what is left of the current
    trial or paid period.
    """

    feature: str
    reason: str
    days_remaining: int = 0
    code: str = "subscription_required"
    message: Optional[str] = None
    status_code: int = status.HTTP_403_FORBIDDEN

    def __post_init__(self) -> None:
        if self.message is None:
            template = _MESSAGES.get(self.reason, "'{feature}' requires an active trial or subscription.")
            self.message = template.format(feature=self.feature)
        super().__init__(self.message)

    @property
    def payload(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "feature": self.feature,
            "reason": self.reason,
            "daysRemaining": self.days_remaining,
        }

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.payload)
