"""Plan catalog definitions, adapters, and product mapping."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Protocol

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection

from ..database import managed_connection
from .models import BillingPeriod, Plan

logger = logging.getLogger("billing.catalog")


class PlanNotFound(LookupError):
    """Raised when a plan id is not present in the catalog."""


TRIAL_FEATURES: FrozenSet[str] = frozenset(
    {
        "cigar_recognition",
        "journal_creation",
        "journal_editing",
        "humidor_creation",
        "humidor_editing",
        "inventory_management",
        "recommendations",
    }
)

PREMIUM_FEATURES: FrozenSet[str] = TRIAL_FEATURES | {"cloud_sync"}

# Read-only features kept for users whose access has lapsed.
EXPIRED_FEATURES: FrozenSet[str] = frozenset(
    {
        "journal_viewing",
        "humidor_viewing",
        "inventory_viewing",
        "basic_navigation",
    }
)

FREE_TRIAL_PLAN = Plan(
    plan_id="free",
    name="Free Trial",
    billing_period=BillingPeriod.MONTHLY,
    price_minor_units=0,
    feature_set=TRIAL_FEATURES,
)

DEFAULT_PLANS: tuple[Plan, ...] = (
    Plan(
        plan_id="premium_monthly",
        name="Premium Monthly",
        billing_period=BillingPeriod.MONTHLY,
        price_minor_units=999,
        feature_set=PREMIUM_FEATURES,
    ),
    Plan(
        plan_id="premium_yearly",
        name="Premium Yearly",
        billing_period=BillingPeriod.YEARLY,
        price_minor_units=10999,
        feature_set=PREMIUM_FEATURES,
    ),
)


class PlanCatalog(Protocol):
    """Read-only access to purchasable plans."""

    def list_active_plans(self) -> List[Plan]:
        ...

    def get_plan(self, plan_id: str) -> Plan:
        ...


def _sorted_active(plans: Iterable[Plan]) -> List[Plan]:
    return sorted((plan for plan in plans if plan.is_active), key=lambda plan: (plan.price_minor_units, plan.plan_id))


class StaticPlanCatalog:
    """Catalog backed by an in-process list of plans."""

    def __init__(self, plans: Iterable[Plan] = DEFAULT_PLANS) -> None:
        self._plans: Dict[str, Plan] = {plan.plan_id: plan for plan in plans}

    def list_active_plans(self) -> List[Plan]:
        return _sorted_active(self._plans.values())

    def get_plan(self, plan_id: str) -> Plan:
        try:
            return self._plans[plan_id]
        except KeyError as exc:
            raise PlanNotFound(f"Unknown plan id: {plan_id}") from exc


def _row_to_plan(row: Mapping[str, object]) -> Plan:
    features = row.get("feature_set") or []
    return Plan(
        plan_id=str(row["plan_id"]),
        name=str(row["name"]),
        billing_period=BillingPeriod(str(row["billing_period"])),
        price_minor_units=int(row["price_minor_units"]),
        feature_set=frozenset(str(feature) for feature in features),
        is_active=bool(row.get("is_active", True)),
    )


class PostgresPlanCatalog:
    """Catalog reading the ``subscription_plans`` table."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterator[psycopg2.extensions.cursor]:
        with managed_connection(self._conn) as (connection, _managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
            finally:
                cursor.close()

    def list_active_plans(self) -> List[Plan]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT plan_id, name, billing_period, price_minor_units, feature_set, is_active
                FROM subscription_plans
                WHERE is_active = TRUE
                ORDER BY price_minor_units ASC, plan_id ASC
                """
            )
            rows = cursor.fetchall() or []
        return _sorted_active(_row_to_plan(row) for row in rows)

    def get_plan(self, plan_id: str) -> Plan:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT plan_id, name, billing_period, price_minor_units, feature_set, is_active
                FROM subscription_plans
                WHERE plan_id = %s
                LIMIT 1
                """,
                (plan_id,),
            )
            row = cursor.fetchone()
        if not row:
            raise PlanNotFound(f"Unknown plan id: {plan_id}")
        return _row_to_plan(row)


class FallbackPlanCatalog:
    """Wraps a primary catalog and degrades to the built-in trial plan.

    The catalog only enriches reconciliation results, so an unreachable
    primary must never block callers.
    """

    def __init__(self, primary: PlanCatalog, *, fallback: Optional[PlanCatalog] = None) -> None:
        self._primary = primary
        self._fallback = fallback or StaticPlanCatalog((FREE_TRIAL_PLAN,))

    def list_active_plans(self) -> List[Plan]:
        try:
            return self._primary.list_active_plans()
        except Exception:
            logger.warning("Plan catalog unavailable; serving default trial plan", exc_info=True)
            return self._fallback.list_active_plans()

    def get_plan(self, plan_id: str) -> Plan:
        try:
            return self._primary.get_plan(plan_id)
        except PlanNotFound:
            raise
        except Exception:
            logger.warning("Plan catalog unavailable while resolving %s", plan_id, exc_info=True)
            return self._fallback.get_plan(plan_id)


def parse_product_plan_map(raw: Optional[str]) -> Dict[str, str]:
    """Parse ``product=plan`` (or ``product:plan``) pairs separated by commas."""

    mapping: Dict[str, str] = {}
    for item in (raw or "").split(","):
        item = item.strip()
        if not item:
            continue
        separator = "=" if "=" in item else ":"
        if separator not in item:
            raise ValueError(f"Invalid product mapping entry: {item!r}")
        product_id, plan_id = (part.strip() for part in item.split(separator, 1))
        if product_id and plan_id:
            mapping[product_id] = plan_id
    return mapping


def resolve_plan_id(
    product_id: Optional[str],
    *,
    catalog: PlanCatalog,
    product_plan_map: Optional[Mapping[str, str]] = None,
) -> Optional[str]:
    """Map a provider product id to an internal plan id, or ``None``."""

    if not product_id:
        return None
    mapped = (product_plan_map or {}).get(product_id)
    if mapped:
        return mapped
    try:
        return catalog.get_plan(product_id).plan_id
    except LookupError:
        logger.warning("No plan mapped for product %s", product_id)
        return None


__all__ = [
    "DEFAULT_PLANS",
    "EXPIRED_FEATURES",
    "FREE_TRIAL_PLAN",
    "FallbackPlanCatalog",
    "PREMIUM_FEATURES",
    "PlanCatalog",
    "PlanNotFound",
    "PostgresPlanCatalog",
    "StaticPlanCatalog",
    "TRIAL_FEATURES",
    "parse_product_plan_map",
    "resolve_plan_id",
]
