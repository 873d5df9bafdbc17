"""Domain models for billing events, identity bindings, and reconciliation results."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..entitlements.models import AccessDecision, EntitlementRecord, ensure_utc, utc_now


class BillingEventType(str, Enum):
    """Canonical billing event kinds understood by the reconciliation engine."""

    INITIAL_PURCHASE = "initial_purchase"
    RENEWAL = "renewal"
    CANCELLATION = "cancellation"
    EXPIRATION = "expiration"
    BILLING_ISSUE = "billing_issue"
    UNCANCELLATION = "uncancellation"
    UNKNOWN = "unknown"


class EventSource(str, Enum):
    """Where a canonical event originated."""

    WEBHOOK = "webhook"
    SNAPSHOT = "snapshot"


class CanonicalBillingEvent(BaseModel):
    """Provider-neutral billing event emitted by the ingestor."""

    event_type: BillingEventType
    billing_provider_user_id: str
    transaction_id: str
    purchased_at: datetime
    received_at: datetime = Field(default_factory=utc_now)
    product_id: Optional[str] = None
    plan_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    will_auto_renew: bool = False
    provider_event_id: Optional[str] = None
    raw_type: Optional[str] = None
    store: Optional[str] = None
    environment: Optional[str] = None
    is_trial_period: bool = False
    grace_period_expires_at: Optional[datetime] = None
    event_timestamp: Optional[datetime] = None
    source: EventSource = EventSource.WEBHOOK

    model_config = ConfigDict(frozen=True)

    @field_validator("purchased_at", "received_at", "expires_at", "grace_period_expires_at", "event_timestamp")
    @classmethod
    def _normalize_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @property
    def idempotency_key(self) -> str:
        """Ledger key; a cancellation shares its transaction id with the purchase.

        Without a provider event id the emission timestamp tells repeated
        cancel/uncancel signals on one transaction apart, while a redelivery
        of the same body keeps the same key.
        """

        key = f"{self.transaction_id}:{self.event_type.value}"
        if self.provider_event_id:
            key = f"{key}:{self.provider_event_id}"
        elif self.event_timestamp is not None:
            key = f"{key}:{int(self.event_timestamp.timestamp() * 1000)}"
        return key


class AppliedTransaction(BaseModel):
    """Ledger row proving an event has been applied (or deliberately discarded)."""

    idempotency_key: str
    transaction_id: str
    user_id: str
    event_type: BillingEventType
    purchased_at: datetime
    expires_at: Optional[datetime] = None
    received_at: datetime
    applied_at: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_event(cls, event: CanonicalBillingEvent, *, user_id: str, applied_at: datetime) -> "AppliedTransaction":
        return cls(
            idempotency_key=event.idempotency_key,
            transaction_id=event.transaction_id,
            user_id=user_id,
            event_type=event.event_type,
            purchased_at=event.purchased_at,
            expires_at=event.expires_at,
            received_at=event.received_at,
            applied_at=applied_at,
        )


class IdentityBinding(BaseModel):
    """Maps a billing provider identity onto an application user."""

    billing_provider_user_id: str
    user_id: str
    bound_at: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(frozen=True)


class BindingConflict(BaseModel):
    """Two users claimed the same billing identity; kept for manual review."""

    billing_provider_user_id: str
    previous_user_id: str
    new_user_id: str
    detected_at: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(frozen=True)


class ParkedEvent(BaseModel):
    """An event waiting for its billing identity to be bound."""

    event: CanonicalBillingEvent
    parked_at: datetime = Field(default_factory=utc_now)
    attempts: int = Field(default=0, ge=0)

    model_config = ConfigDict(frozen=True)


class ProviderEntitlement(BaseModel):
    """One entitlement entry from a provider "current entitlements" query."""

    identifier: str
    product_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    purchased_at: Optional[datetime] = None
    will_renew: bool = False
    is_active: bool = True
    store: Optional[str] = None
    is_sandbox: bool = False

    model_config = ConfigDict(frozen=True)

    @field_validator("expires_at", "purchased_at")
    @classmethod
    def _normalize_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class ProviderSnapshot(BaseModel):
    """Full entitlement state reported by the billing provider for one identity."""

    billing_provider_user_id: str
    entitlements: Tuple[ProviderEntitlement, ...] = ()
    fetched_at: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(frozen=True)

    def strongest_active(self, now: datetime, *, preferred: Optional[str] = None) -> Optional[ProviderEntitlement]:
        """Return the active entitlement with the latest future expiration.

        Lifetime entitlements (no expiration) are not representable as a paid
        period and are ignored. ``preferred`` wins ties on expiration.
        """

        now = ensure_utc(now)
        candidates = [
            entitlement
            for entitlement in self.entitlements
            if entitlement.is_active and entitlement.expires_at is not None and entitlement.expires_at > now
        ]
        if not candidates:
            return None
        return max(
            candidates,
            key=lambda entitlement: (entitlement.expires_at, entitlement.identifier == preferred),
        )


class MergeOutcome(str, Enum):
    """How a single merge attempt resolved."""

    APPLIED = "applied"
    NO_CHANGE = "no_change"
    DUPLICATE = "duplicate"
    STALE = "stale"
    IGNORED = "ignored"


class MergeResult(BaseModel):
    """Output of the pure merge function."""

    outcome: MergeOutcome
    record: EntitlementRecord
    reason: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def changed(self) -> bool:
        return self.outcome == MergeOutcome.APPLIED


class ReconciliationResult(BaseModel):
    """Outcome of applying one event through the engine, after retries."""

    user_id: str
    outcome: MergeOutcome
    record: EntitlementRecord
    previous: Optional[EntitlementRecord] = None
    attempts: int = 1
    idempotency_key: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class IngestStatus(str, Enum):
    """Status reported back to the webhook caller."""

    PROCESSED = "processed"
    NO_CHANGE = "no_change"
    DUPLICATE = "duplicate"
    STALE = "stale"
    IGNORED = "ignored"
    PARKED = "parked"


class IngestResult(BaseModel):
    """Result of ingesting one raw provider payload."""

    status: IngestStatus
    event_type: BillingEventType
    billing_provider_user_id: str
    idempotency_key: str
    user_id: Optional[str] = None
    record: Optional[EntitlementRecord] = None

    model_config = ConfigDict(frozen=True)


class OnDemandResult(BaseModel):
    """Result of asking the provider "what does this user have right now"."""

    user_id: str
    access: AccessDecision
    record: Optional[EntitlementRecord] = None
    outcome: Optional[MergeOutcome] = None
    provider_reachable: bool = True

    model_config = ConfigDict(frozen=True)


class BindingResult(BaseModel):
    """Result of binding a billing identity to a user."""

    user_id: str
    billing_provider_user_id: str
    record: EntitlementRecord
    replayed_events: int = 0
    conflict: Optional[BindingConflict] = None

    model_config = ConfigDict(frozen=True)


class BillingAuditEventType(str, Enum):
    """Audit event categories emitted by the billing subsystem."""

    TRIAL_STARTED = "trial_started"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_UNCANCELLED = "subscription_uncancelled"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_RECOVERED = "payment_recovered"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    IDENTITY_BOUND = "identity_bound"
    IDENTITY_CONFLICT = "identity_conflict"
    EVENT_PARKED = "event_parked"
    EVENT_UNHANDLED = "event_unhandled"


class BillingAuditEvent(BaseModel):
    """Structured audit event for logging and notifications."""

    event_type: BillingAuditEventType
    user_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(frozen=True)


__all__ = [
    "AppliedTransaction",
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingEventType",
    "BindingConflict",
    "BindingResult",
    "CanonicalBillingEvent",
    "EventSource",
    "IdentityBinding",
    "IngestResult",
    "IngestStatus",
    "MergeOutcome",
    "MergeResult",
    "OnDemandResult",
    "ParkedEvent",
    "ProviderEntitlement",
    "ProviderSnapshot",
    "ReconciliationResult",
]
