"""Entitlements domain models and services."""

from .access import compute_access, feature_allowed, features_for
from .cache import EntitlementCache, InMemoryEntitlementCache
from .catalog import (
    DEFAULT_PLANS,
    EXPIRED_FEATURES,
    FREE_TRIAL_PLAN,
    PREMIUM_FEATURES,
    TRIAL_FEATURES,
    FallbackPlanCatalog,
    PlanCatalog,
    PlanNotFound,
    PostgresPlanCatalog,
    StaticPlanCatalog,
    parse_product_plan_map,
    resolve_plan_id,
)
from .models import (
    AccessDecision,
    BillingPeriod,
    EntitlementRecord,
    EntitlementStatus,
    Plan,
    ensure_utc,
    utc_now,
)
from .service import EntitlementRecordReader, EntitlementService

__all__ = [
    "AccessDecision",
    "BillingPeriod",
    "DEFAULT_PLANS",
    "EXPIRED_FEATURES",
    "EntitlementCache",
    "EntitlementRecord",
    "EntitlementRecordReader",
    "EntitlementService",
    "EntitlementStatus",
    "FREE_TRIAL_PLAN",
    "FallbackPlanCatalog",
    "InMemoryEntitlementCache",
    "PREMIUM_FEATURES",
    "Plan",
    "PlanCatalog",
    "PlanNotFound",
    "PostgresPlanCatalog",
    "StaticPlanCatalog",
    "TRIAL_FEATURES",
    "compute_access",
    "ensure_utc",
    "feature_allowed",
    "features_for",
    "parse_product_plan_map",
    "resolve_plan_id",
    "utc_now",
]
