"""Normalization of raw billing provider webhooks into canonical events."""
from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from ..entitlements.catalog import PlanCatalog, resolve_plan_id
from ..entitlements.models import ensure_utc, utc_now
from .exceptions import ValidationError
from .models import BillingEventType, CanonicalBillingEvent, EventSource

logger = logging.getLogger("billing.ingest")

PROVIDER_EVENT_TYPES: Dict[str, BillingEventType] = {
    "INITIAL_PURCHASE": BillingEventType.INITIAL_PURCHASE,
    "RENEWAL": BillingEventType.RENEWAL,
    "CANCELLATION": BillingEventType.CANCELLATION,
    "EXPIRATION": BillingEventType.EXPIRATION,
    "BILLING_ISSUE": BillingEventType.BILLING_ISSUE,
    "UNCANCELLATION": BillingEventType.UNCANCELLATION,
}

# Anything below this cannot be a millisecond timestamp after early 1973.
_MIN_PLAUSIBLE_MS = 10**11


def parse_provider_timestamp(value: Any, *, field: str) -> Optional[datetime]:
    """Parse an epoch-millisecond, numeric string, or ISO-8601 timestamp.

    Values too small to be milliseconds are treated as epoch seconds and a
    warning is logged, since that is the most common provider integration bug.
    """

    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a timestamp")
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str):
        text = value.strip()
        try:
            value = float(text)
        except ValueError:
            try:
                return ensure_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
            except ValueError as exc:
                raise ValidationError(f"{field} is not a valid timestamp: {value!r}") from exc
    if not isinstance(value, (int, float)):
        raise ValidationError(f"{field} must be a timestamp")
    if value < 0:
        raise ValidationError(f"{field} must not be negative")

    if value < _MIN_PLAUSIBLE_MS:
        logger.warning("Timestamp %s=%s looks like seconds, not milliseconds", field, value)
        seconds = float(value)
    else:
        seconds = float(value) / 1000.0
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise ValidationError(f"{field} is out of range: {value!r}") from exc


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _to_bool(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    lowered = str(value).strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _fallback_transaction_id(event: Mapping[str, Any]) -> str:
    fingerprint = {
        key: event.get(key)
        for key in ("type", "app_user_id", "product_id", "purchased_at_ms", "expiration_at_ms", "event_timestamp_ms")
    }
    digest = hashlib.sha256(json.dumps(fingerprint, sort_keys=True, default=str).encode("utf-8")).hexdigest()
    return f"derived:{digest[:32]}"


def _default_auto_renew(event_type: BillingEventType) -> bool:
    return event_type in {
        BillingEventType.INITIAL_PURCHASE,
        BillingEventType.RENEWAL,
        BillingEventType.UNCANCELLATION,
        BillingEventType.BILLING_ISSUE,
    }


def normalize_webhook_payload(
    raw: Any,
    *,
    catalog: PlanCatalog,
    product_plan_map: Optional[Mapping[str, str]] = None,
    received_at: Optional[datetime] = None,
) -> CanonicalBillingEvent:
    """Validate a provider webhook body and return a :class:`CanonicalBillingEvent`.

    Unknown provider event types are returned with ``BillingEventType.UNKNOWN``
    rather than rejected.
    """

    if not isinstance(raw, Mapping):
        raise ValidationError("Webhook body must be a JSON object")
    event = raw.get("event")
    if not isinstance(event, Mapping):
        raise ValidationError("Missing event object")

    raw_type = _optional_str(event.get("type"))
    if not raw_type:
        raise ValidationError("Missing event type")
    billing_provider_user_id = _optional_str(event.get("app_user_id"))
    if not billing_provider_user_id:
        raise ValidationError("Missing app_user_id")

    received = ensure_utc(received_at) or utc_now()
    event_type = PROVIDER_EVENT_TYPES.get(raw_type.upper(), BillingEventType.UNKNOWN)
    if event_type == BillingEventType.UNKNOWN:
        logger.info("Unhandled billing event type %s for %s", raw_type, billing_provider_user_id)

    purchased_at = parse_provider_timestamp(event.get("purchased_at_ms"), field="purchased_at_ms") or received
    expires_at = parse_provider_timestamp(event.get("expiration_at_ms"), field="expiration_at_ms")
    grace_period_expires_at = parse_provider_timestamp(
        event.get("grace_period_expiration_at_ms"), field="grace_period_expiration_at_ms"
    )
    if event_type in {BillingEventType.INITIAL_PURCHASE, BillingEventType.RENEWAL} and expires_at is None:
        raise ValidationError(f"{raw_type} event requires expiration_at_ms")

    provider_event_id = _optional_str(event.get("id"))
    transaction_id = (
        _optional_str(event.get("transaction_id"))
        or _optional_str(event.get("original_transaction_id"))
        or provider_event_id
        or _fallback_transaction_id(event)
    )

    product_id = _optional_str(event.get("product_id"))
    plan_id = None
    if event_type != BillingEventType.UNKNOWN:
        plan_id = resolve_plan_id(product_id, catalog=catalog, product_plan_map=product_plan_map)

    return CanonicalBillingEvent(
        event_type=event_type,
        billing_provider_user_id=billing_provider_user_id,
        transaction_id=transaction_id,
        purchased_at=purchased_at,
        received_at=received,
        product_id=product_id,
        plan_id=plan_id,
        expires_at=expires_at,
        will_auto_renew=_to_bool(event.get("auto_renew_status"), default=_default_auto_renew(event_type)),
        provider_event_id=provider_event_id,
        raw_type=raw_type,
        store=_optional_str(event.get("store")),
        environment=_optional_str(event.get("environment")),
        is_trial_period=_to_bool(event.get("is_trial_period"), default=False),
        grace_period_expires_at=grace_period_expires_at,
        event_timestamp=parse_provider_timestamp(event.get("event_timestamp_ms"), field="event_timestamp_ms"),
        source=EventSource.WEBHOOK,
    )


__all__ = ["PROVIDER_EVENT_TYPES", "normalize_webhook_payload", "parse_provider_timestamp"]
