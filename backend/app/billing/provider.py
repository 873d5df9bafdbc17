"""Outbound "current entitlements" queries against the billing provider."""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Protocol
from urllib import error as urlerror
from urllib import parse as urlparse
from urllib import request as urlrequest

from .exceptions import ProviderUnavailable, ValidationError
from .ingestor import parse_provider_timestamp
from .models import ProviderEntitlement, ProviderSnapshot

logger = logging.getLogger("billing.provider")


class BillingProviderClient(Protocol):
    """Fetches the provider's view of a billing identity."""

    def fetch_entitlements(self, billing_provider_user_id: str) -> ProviderSnapshot:
        ...


def _parse_date(value: Any, *, field: str) -> Optional[datetime]:
    try:
        return parse_provider_timestamp(value, field=field)
    except ValidationError:
        logger.warning("Ignoring unparseable provider date %s=%r", field, value)
        return None


def _sdk_entitlements(entitlements: Mapping[str, Any]) -> List[ProviderEntitlement]:
    active = entitlements.get("active") or {}
    results: List[ProviderEntitlement] = []
    for identifier, info in active.items():
        if not isinstance(info, Mapping):
            continue
        results.append(
            ProviderEntitlement(
                identifier=str(info.get("identifier") or identifier),
                product_id=info.get("productIdentifier"),
                expires_at=_parse_date(info.get("expirationDate"), field="expirationDate"),
                purchased_at=_parse_date(info.get("latestPurchaseDate"), field="latestPurchaseDate"),
                will_renew=bool(info.get("willRenew", False)),
                is_active=bool(info.get("isActive", True)),
                store=info.get("store"),
                is_sandbox=bool(info.get("isSandbox", False)),
            )
        )
    return results


def _rest_entitlements(subscriber: Mapping[str, Any]) -> List[ProviderEntitlement]:
    entitlements = subscriber.get("entitlements") or {}
    subscriptions = subscriber.get("subscriptions") or {}
    results: List[ProviderEntitlement] = []
    for identifier, info in entitlements.items():
        if not isinstance(info, Mapping):
            continue
        product_id = info.get("product_identifier")
        subscription = subscriptions.get(product_id) if product_id else None
        subscription = subscription if isinstance(subscription, Mapping) else {}
        will_renew = not subscription.get("unsubscribe_detected_at") and not subscription.get(
            "billing_issues_detected_at"
        )
        results.append(
            ProviderEntitlement(
                identifier=str(identifier),
                product_id=product_id,
                expires_at=_parse_date(info.get("expires_date"), field="expires_date"),
                purchased_at=_parse_date(info.get("purchase_date"), field="purchase_date"),
                will_renew=bool(subscription) and will_renew,
                store=subscription.get("store"),
                is_sandbox=bool(subscription.get("is_sandbox", False)),
            )
        )
    return results


def parse_entitlement_snapshot(
    payload: Mapping[str, Any],
    *,
    billing_provider_user_id: str,
    fetched_at: Optional[datetime] = None,
) -> ProviderSnapshot:
    """Build a :class:`ProviderSnapshot` from an SDK ``CustomerInfo`` or REST subscriber body."""

    if not isinstance(payload, Mapping):
        raise ProviderUnavailable("Provider returned a non-object body")

    if isinstance(payload.get("subscriber"), Mapping):
        entitlements = _rest_entitlements(payload["subscriber"])
    elif isinstance(payload.get("entitlements"), Mapping):
        entitlements = _sdk_entitlements(payload["entitlements"])
    else:
        entitlements = []

    extra: Dict[str, Any] = {}
    if fetched_at is not None:
        extra["fetched_at"] = fetched_at
    return ProviderSnapshot(
        billing_provider_user_id=billing_provider_user_id,
        entitlements=tuple(entitlements),
        **extra,
    )


class RevenueCatClient:
    """Client for the RevenueCat subscriber REST endpoint."""

    def __init__(self, *, api_key: str, base_url: str = "https://api.revenuecat.com/v1", timeout: float = 5.0) -> None:
        if not api_key:
            raise ValueError("api_key must be provided")
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    def _http_json_get(self, url: str) -> Dict[str, Any]:
        req = urlrequest.Request(
            url=url,
            method="GET",
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Accept": "application/json",
            },
        )
        with urlrequest.urlopen(req, timeout=self._timeout) as resp:
            raw = resp.read().decode("utf-8")
        return json.loads(raw)

    def fetch_entitlements(self, billing_provider_user_id: str) -> ProviderSnapshot:
        url = f"{self._base_url}/subscribers/{urlparse.quote(billing_provider_user_id, safe='')}"
        try:
            payload = self._http_json_get(url)
        except urlerror.HTTPError as exc:
            raise ProviderUnavailable(f"Provider returned HTTP {exc.code}") from exc
        except (urlerror.URLError, TimeoutError, OSError) as exc:
            raise ProviderUnavailable(f"Provider unreachable: {exc}") from exc
        except (ValueError, UnicodeDecodeError) as exc:
            raise ProviderUnavailable("Provider returned invalid JSON") from exc
        return parse_entitlement_snapshot(payload, billing_provider_user_id=billing_provider_user_id)


class UnconfiguredProviderClient:
    """Stand-in used when no provider API key is configured."""

    def fetch_entitlements(self, billing_provider_user_id: str) -> ProviderSnapshot:
        raise ProviderUnavailable("Billing provider is not configured")


__all__ = [
    "BillingProviderClient",
    "RevenueCatClient",
    "UnconfiguredProviderClient",
    "parse_entitlement_snapshot",
]
