"""API schemas for billing endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import BindingResult, IngestResult, OnDemandResult
from ..entitlements import AccessDecision, EntitlementStatus, Plan, features_for
from ..entitlements.models import BillingPeriod


class PlanResponse(BaseModel):
    plan_id: str = Field(alias="planId")
    name: str
    billing_period: BillingPeriod = Field(alias="billingPeriod")
    price_minor_units: int = Field(alias="priceMinorUnits")
    features: List[str]

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_plan(cls, plan: Plan) -> "PlanResponse":
        return cls(
            plan_id=plan.plan_id,
            name=plan.name,
            billing_period=plan.billing_period,
            price_minor_units=plan.price_minor_units,
            features=sorted(plan.feature_set),
        )


class PlanListResponse(BaseModel):
    plans: List[PlanResponse]

    model_config = ConfigDict(populate_by_name=True)


class AccessResponse(BaseModel):
    has_access: bool = Field(alias="hasAccess")
    is_trial_active: bool = Field(alias="isTrialActive")
    is_premium: bool = Field(alias="isPremium")
    is_paid_period_active: bool = Field(alias="isPaidPeriodActive")
    days_remaining: int = Field(alias="daysRemaining")
    status: Optional[EntitlementStatus] = None
    plan_id: Optional[str] = Field(alias="planId", default=None)
    trial_ends_at: Optional[datetime] = Field(alias="trialEndsAt", default=None)
    subscription_ends_at: Optional[datetime] = Field(alias="subscriptionEndsAt", default=None)
    features: List[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_decision(cls, decision: AccessDecision) -> "AccessResponse":
        return cls(
            has_access=decision.has_access,
            is_trial_active=decision.is_trial_active,
            is_premium=decision.is_premium,
            is_paid_period_active=decision.is_paid_period_active,
            days_remaining=decision.days_remaining,
            status=decision.status,
            plan_id=decision.plan_id,
            trial_ends_at=decision.trial_ends_at,
            subscription_ends_at=decision.subscription_ends_at,
            features=sorted(features_for(decision)),
        )


class ReconcileResponse(BaseModel):
    access: AccessResponse
    provider_reachable: bool = Field(alias="providerReachable")
    outcome: Optional[str] = None
    last_synced_at: Optional[datetime] = Field(alias="lastSyncedAt", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: OnDemandResult) -> "ReconcileResponse":
        return cls(
            access=AccessResponse.from_decision(result.access),
            provider_reachable=result.provider_reachable,
            outcome=result.outcome.value if result.outcome else None,
            last_synced_at=result.record.last_synced_at if result.record else None,
        )


class IdentityBindingRequest(BaseModel):
    billing_provider_user_id: str = Field(alias="billingProviderUserId", min_length=1, max_length=255)

    model_config = ConfigDict(populate_by_name=True)


class IdentityBindingResponse(BaseModel):
    billing_provider_user_id: str = Field(alias="billingProviderUserId")
    replayed_events: int = Field(alias="replayedEvents")
    conflict_detected: bool = Field(alias="conflictDetected")
    access: AccessResponse

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: BindingResult, decision: AccessDecision) -> "IdentityBindingResponse":
        return cls(
            billing_provider_user_id=result.billing_provider_user_id,
            replayed_events=result.replayed_events,
            conflict_detected=result.conflict is not None,
            access=AccessResponse.from_decision(decision),
        )


class FeatureCheckResponse(BaseModel):
    feature: str
    allowed: bool
    show_upgrade_prompt: bool = Field(alias="showUpgradePrompt")
    access: AccessResponse

    model_config = ConfigDict(populate_by_name=True)


class WebhookResponse(BaseModel):
    success: bool = True
    status: str

    @classmethod
    def from_result(cls, result: IngestResult) -> "WebhookResponse":
        return cls(success=True, status=result.status.value)


__all__ = [
    "AccessResponse",
    "FeatureCheckResponse",
    "IdentityBindingRequest",
    "IdentityBindingResponse",
    "PlanListResponse",
    "PlanResponse",
    "ReconcileResponse",
    "WebhookResponse",
]
