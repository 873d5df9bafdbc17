"""Application wiring for the billing service."""
from __future__ import annotations

import logging
from functools import lru_cache

from ..billing import (
    BillingAuditEvent,
    BillingEventLogger,
    BillingNotifier,
    BillingProviderClient,
    BillingService,
    EntitlementRepository,
    InMemoryEntitlementRepository,
    PostgresEntitlementRepository,
    ReconciliationEngine,
    RevenueCatClient,
    UnconfiguredProviderClient,
    load_billing_config,
)
from ..billing.config import BillingConfig
from ..billing.maintenance import BillingMaintenance
from ..billing.models import BindingConflict
from ..entitlements import (
    EntitlementRecord,
    EntitlementService,
    FallbackPlanCatalog,
    InMemoryEntitlementCache,
    PostgresPlanCatalog,
    StaticPlanCatalog,
)
from ..entitlements.catalog import PlanCatalog

logger = logging.getLogger("billing")


class LoggingBillingNotifier(BillingNotifier):
    """Notifier that records billing notifications to the application logger."""

    def notify_payment_failure(self, record: EntitlementRecord) -> None:
        logger.warning(
            "Payment failure for user %s grace_until=%s subscription_end=%s",
            record.user_id,
            record.grace_period_ends_at,
            record.subscription_end,
        )

    def notify_subscription_expired(self, record: EntitlementRecord) -> None:
        logger.info("Subscription expired for user %s plan=%s", record.user_id, record.plan_id)

    def notify_identity_conflict(self, conflict: BindingConflict) -> None:
        logger.warning(
            "Billing identity conflict %s previous_user=%s new_user=%s",
            conflict.billing_provider_user_id,
            conflict.previous_user_id,
            conflict.new_user_id,
        )


class LoggingBillingEventLogger(BillingEventLogger):
    """Simple event logger forwarding billing audit events to logging."""

    def log(self, event: BillingAuditEvent) -> None:
        logger.info(
            "Billing event %s user=%s metadata=%s",
            event.event_type.value,
            event.user_id,
            event.metadata,
        )


def build_plan_catalog(config: BillingConfig) -> PlanCatalog:
    if config.store == "memory":
        return StaticPlanCatalog()
    return FallbackPlanCatalog(PostgresPlanCatalog())


def build_repository(config: BillingConfig) -> EntitlementRepository:
    if config.store == "memory":
        logger.warning("Using in-memory entitlement store; state is lost on restart")
        return InMemoryEntitlementRepository()
    return PostgresEntitlementRepository(statement_timeout_ms=config.statement_timeout_ms)


def build_provider(config: BillingConfig) -> BillingProviderClient:
    if not config.provider_configured:
        logger.info("Billing provider API key not set; on-demand sync will serve persisted records")
        return UnconfiguredProviderClient()
    return RevenueCatClient(
        api_key=config.provider_api_key or "",
        base_url=config.provider_base_url,
        timeout=config.provider_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_entitlement_service() -> EntitlementService:
    config = load_billing_config()
    return EntitlementService(
        get_entitlement_repository(),
        InMemoryEntitlementCache(),
        fail_open_for_premium=config.fail_open_for_premium,
    )


@lru_cache(maxsize=1)
def get_entitlement_repository() -> EntitlementRepository:
    return build_repository(load_billing_config())


@lru_cache(maxsize=1)
def get_billing_service() -> BillingService:
    config = load_billing_config()
    repository = get_entitlement_repository()
    catalog = build_plan_catalog(config)
    entitlements = get_entitlement_service()
    engine = ReconciliationEngine(repository, config=config, catalog=catalog)
    service = BillingService(
        engine=engine,
        repository=repository,
        catalog=catalog,
        provider=build_provider(config),
        access_reader=entitlements,
        notifier=LoggingBillingNotifier(),
        event_logger=LoggingBillingEventLogger(),
        entitlement_invalidator=entitlements,
        config=config,
    )
    return service


def get_billing_maintenance() -> BillingMaintenance:
    return BillingMaintenance(get_billing_service())


__all__ = [
    "LoggingBillingEventLogger",
    "LoggingBillingNotifier",
    "build_plan_catalog",
    "build_provider",
    "build_repository",
    "get_billing_maintenance",
    "get_billing_service",
    "get_entitlement_service",
]
