"""Billing domain package: event ingestion, reconciliation, and identity binding."""

from .config import BillingConfig, load_billing_config
from .exceptions import (
    BillingError,
    ConcurrencyConflict,
    DuplicateTransaction,
    PersistenceError,
    ProviderUnavailable,
    ReconciliationFailed,
    UnresolvedIdentity,
    ValidationError,
)
from .ingestor import normalize_webhook_payload, parse_provider_timestamp
from .memory import InMemoryEntitlementRepository
from .merge import advance_record, merge_event
from .models import (
    AppliedTransaction,
    BillingAuditEvent,
    BillingAuditEventType,
    BillingEventType,
    BindingConflict,
    BindingResult,
    CanonicalBillingEvent,
    EventSource,
    IdentityBinding,
    IngestResult,
    IngestStatus,
    MergeOutcome,
    MergeResult,
    OnDemandResult,
    ParkedEvent,
    ProviderEntitlement,
    ProviderSnapshot,
    ReconciliationResult,
)
from .provider import (
    BillingProviderClient,
    RevenueCatClient,
    UnconfiguredProviderClient,
    parse_entitlement_snapshot,
)
from .reconciliation import ReconciliationEngine
from .repository import EntitlementRepository, PostgresEntitlementRepository
from .service import (
    AccessReader,
    BillingEventLogger,
    BillingNotifier,
    BillingService,
    EntitlementInvalidator,
)

__all__ = [
    "AccessReader",
    "AppliedTransaction",
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingConfig",
    "BillingError",
    "BillingEventLogger",
    "BillingEventType",
    "BillingNotifier",
    "BillingProviderClient",
    "BillingService",
    "BindingConflict",
    "BindingResult",
    "CanonicalBillingEvent",
    "ConcurrencyConflict",
    "DuplicateTransaction",
    "EntitlementInvalidator",
    "EntitlementRepository",
    "EventSource",
    "IdentityBinding",
    "InMemoryEntitlementRepository",
    "IngestResult",
    "IngestStatus",
    "MergeOutcome",
    "MergeResult",
    "OnDemandResult",
    "ParkedEvent",
    "PersistenceError",
    "PostgresEntitlementRepository",
    "ProviderEntitlement",
    "ProviderSnapshot",
    "ProviderUnavailable",
    "ReconciliationEngine",
    "ReconciliationFailed",
    "ReconciliationResult",
    "RevenueCatClient",
    "UnconfiguredProviderClient",
    "UnresolvedIdentity",
    "ValidationError",
    "advance_record",
    "load_billing_config",
    "merge_event",
    "normalize_webhook_payload",
    "parse_entitlement_snapshot",
    "parse_provider_timestamp",
]
