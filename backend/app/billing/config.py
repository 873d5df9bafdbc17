"""Billing configuration helpers."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from ..entitlements.catalog import parse_product_plan_map


@dataclass(frozen=True)
class BillingConfig:
    """Configuration for reconciliation, the provider client, and maintenance."""

    trial_duration_days: int = 3
    grace_period_days: int = 7
    max_attempts: int = 3
    backoff_seconds: float = 0.2
    reconcile_timeout_seconds: float = 10.0
    statement_timeout_ms: int = 5000
    provider_timeout_seconds: float = 5.0
    provider_api_key: Optional[str] = None
    provider_base_url: str = "https://api.revenuecat.com/v1"
    entitlement_id: str = "premium_features"
    product_plan_map: Dict[str, str] = field(default_factory=dict)
    webhook_authorization: Optional[str] = None
    ledger_retention_days: int = 30
    fail_open_for_premium: bool = False
    store: str = "postgres"
    maintenance_interval_seconds: int = 900

    @property
    def provider_configured(self) -> bool:
        return bool(self.provider_api_key)


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    store = (env_mapping.get("BILLING_STORE") or "postgres").strip().lower() or "postgres"
    if store not in {"postgres", "memory"}:
        raise ValueError(f"Unsupported BILLING_STORE {store!r}")

    return BillingConfig(
        trial_duration_days=max(0, _to_int(env_mapping.get("BILLING_TRIAL_DURATION_DAYS"), default=3)),
        grace_period_days=max(0, _to_int(env_mapping.get("BILLING_GRACE_PERIOD_DAYS"), default=7)),
        max_attempts=max(1, _to_int(env_mapping.get("BILLING_MAX_ATTEMPTS"), default=3)),
        backoff_seconds=max(0.0, _to_float(env_mapping.get("BILLING_RETRY_BACKOFF"), default=0.2)),
        reconcile_timeout_seconds=max(0.1, _to_float(env_mapping.get("BILLING_RECONCILE_TIMEOUT"), default=10.0)),
        statement_timeout_ms=max(0, _to_int(env_mapping.get("BILLING_DB_STATEMENT_TIMEOUT_MS"), default=5000)),
        provider_timeout_seconds=max(0.1, _to_float(env_mapping.get("BILLING_PROVIDER_TIMEOUT"), default=5.0)),
        provider_api_key=(env_mapping.get("BILLING_PROVIDER_API_KEY") or "").strip() or None,
        provider_base_url=(env_mapping.get("BILLING_PROVIDER_BASE_URL") or "https://api.revenuecat.com/v1").rstrip("/"),
        entitlement_id=(env_mapping.get("BILLING_ENTITLEMENT_ID") or "premium_features").strip(),
        product_plan_map=parse_product_plan_map(env_mapping.get("BILLING_PRODUCT_PLAN_MAP")),
        webhook_authorization=(env_mapping.get("BILLING_WEBHOOK_AUTHORIZATION") or "").strip() or None,
        ledger_retention_days=max(0, _to_int(env_mapping.get("BILLING_LEDGER_RETENTION_DAYS"), default=30)),
        fail_open_for_premium=_to_bool(env_mapping.get("BILLING_FAIL_OPEN_FOR_PREMIUM"), default=False),
        store=store,
        maintenance_interval_seconds=max(1, _to_int(env_mapping.get("BILLING_MAINTENANCE_INTERVAL"), default=900)),
    )


__all__ = ["BillingConfig", "load_billing_config"]
