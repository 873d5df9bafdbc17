"""Domain models for plans, entitlement records, and access decisions."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return ``value`` as an aware UTC datetime, treating naive values as UTC."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BillingPeriod(str, Enum):
    """Supported billing frequencies."""

    MONTHLY = "monthly"
    YEARLY = "yearly"


class EntitlementStatus(str, Enum):
    """Lifecycle state of a user's entitlement record."""

    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Plan(BaseModel):
    """A purchasable offering from the plan catalog."""

    plan_id: str
    name: str
    billing_period: BillingPeriod
    price_minor_units: int = Field(ge=0)
    feature_set: FrozenSet[str] = Field(default_factory=frozenset)
    is_active: bool = True

    model_config = ConfigDict(frozen=True)


class EntitlementRecord(BaseModel):
    """One row per user; the system of record for access decisions.

    ``is_premium`` is a denormalized hint kept in step by the reconciliation
    engine. Access checks recompute it from ``status`` and
    ``subscription_end`` instead of trusting the stored copy.
    """

    user_id: str
    status: EntitlementStatus
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    subscription_start: Optional[datetime] = None
    subscription_end: Optional[datetime] = None
    plan_id: Optional[str] = None
    is_premium: bool = False
    billing_provider_user_id: Optional[str] = None
    auto_renew: bool = False
    last_synced_at: Optional[datetime] = None
    grace_period_ends_at: Optional[datetime] = None
    latest_purchase_at: Optional[datetime] = None
    active_transaction_id: Optional[str] = None
    cancelled_transaction_id: Optional[str] = None
    renewal_intent_at: Optional[datetime] = None
    version: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(frozen=True)

    @field_validator(
        "trial_start",
        "trial_end",
        "subscription_start",
        "subscription_end",
        "last_synced_at",
        "grace_period_ends_at",
        "latest_purchase_at",
        "renewal_intent_at",
        "created_at",
        "updated_at",
    )
    @classmethod
    def _normalize_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    def state_fields(self) -> dict:
        """Return the fields that describe entitlement state, without bookkeeping."""

        return self.model_dump(exclude={"version", "created_at", "updated_at", "last_synced_at"})


class AccessDecision(BaseModel):
    """Answer to "does this user have access right now, and for how long"."""

    has_access: bool
    is_trial_active: bool
    is_premium: bool
    is_paid_period_active: bool = False
    days_remaining: int = Field(default=0, ge=0)
    status: Optional[EntitlementStatus] = None
    plan_id: Optional[str] = None
    trial_ends_at: Optional[datetime] = None
    subscription_ends_at: Optional[datetime] = None
    evaluated_at: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def denied(cls, *, status: Optional[EntitlementStatus] = None, evaluated_at: Optional[datetime] = None) -> "AccessDecision":
        return cls(
            has_access=False,
            is_trial_active=False,
            is_premium=False,
            is_paid_period_active=False,
            days_remaining=0,
            status=status,
            evaluated_at=evaluated_at or utc_now(),
        )
