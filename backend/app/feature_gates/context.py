"""Convenience wrapper around access decisions for feature gating."""
from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, Optional

from ..entitlements import AccessDecision, EntitlementStatus, features_for
from .enforcement import require_feature


@dataclass(frozen=True)
class AccessContext:
    """Facade exposing gating-centric helpers for one user's access decision."""

    decision: AccessDecision

    @property
    def features(self) -> FrozenSet[str]:
        return features_for(self.decision)

    @property
    def status(self) -> Optional[EntitlementStatus]:
        return self.decision.status

    @property
    def show_upgrade_prompt(self) -> bool:
        """True once the trial or paid period has lapsed."""

        return not self.decision.has_access

    def has(self, feature: str) -> bool:
        return feature in self.features

    def require(self, feature: str, *, error_code: str = "subscription_required") -> None:
        require_feature(self.decision, feature, error_code=error_code)
