from __future__ import annotations

import logging
from datetime import datetime, timezone

import pytest

from backend.app.billing import (
    BillingEventType,
    ValidationError,
    normalize_webhook_payload,
    parse_provider_timestamp,
)
from backend.app.entitlements import StaticPlanCatalog

RECEIVED = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
PURCHASED_MS = 1717243200000  # 2024-06-01T12:00:00Z
EXPIRES_MS = 1719835200000  # 2024-07-01T12:00:00Z


def _normalize(body, **kwargs):
    return normalize_webhook_payload(body, catalog=StaticPlanCatalog(), received_at=RECEIVED, **kwargs)


def _body(**event):
    base = {
        "type": "INITIAL_PURCHASE",
        "app_user_id": "rc-user-1",
        "product_id": "premium_monthly",
        "purchased_at_ms": PURCHASED_MS,
        "expiration_at_ms": EXPIRES_MS,
        "transaction_id": "1000000123",
    }
    base.update(event)
    return {"api_version": "1.0", "event": base}


def test_initial_purchase_is_normalized() -> None:
    event = _normalize(_body(store="APP_STORE", environment="SANDBOX", is_trial_period="false"))

    assert event.event_type == BillingEventType.INITIAL_PURCHASE
    assert event.billing_provider_user_id == "rc-user-1"
    assert event.transaction_id == "1000000123"
    assert event.purchased_at == datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
    assert event.expires_at == datetime(2024, 7, 1, 12, 0, tzinfo=timezone.utc)
    assert event.plan_id == "premium_monthly"
    assert event.will_auto_renew is True
    assert event.store == "APP_STORE"
    assert event.environment == "SANDBOX"
    assert event.is_trial_period is False
    assert event.received_at == RECEIVED


@pytest.mark.parametrize(
    "body, message",
    [
        (None, "JSON object"),
        ([], "JSON object"),
        ({"api_version": "1.0"}, "event"),
        ({"event": {"app_user_id": "rc"}}, "type"),
        ({"event": {"type": "RENEWAL"}}, "app_user_id"),
        ({"event": {"type": "RENEWAL", "app_user_id": "   "}}, "app_user_id"),
    ],
)
def test_missing_required_fields_are_rejected(body, message) -> None:
    with pytest.raises(ValidationError) as exc:
        _normalize(body)

    assert message in str(exc.value)


def test_purchase_without_expiration_is_rejected() -> None:
    body = _body()
    del body["event"]["expiration_at_ms"]

    with pytest.raises(ValidationError):
        _normalize(body)


def test_unknown_event_type_maps_to_unknown_variant() -> None:
    event = _normalize(_body(type="SUBSCRIBER_ALIAS"))

    assert event.event_type == BillingEventType.UNKNOWN
    assert event.raw_type == "SUBSCRIBER_ALIAS"
    assert event.plan_id is None


def test_event_type_matching_is_case_insensitive() -> None:
    assert _normalize(_body(type="renewal")).event_type == BillingEventType.RENEWAL


def test_cancellation_reports_auto_renew_off_by_default() -> None:
    body = _body(type="CANCELLATION")
    del body["event"]["expiration_at_ms"]

    event = _normalize(body)

    assert event.event_type == BillingEventType.CANCELLATION
    assert event.will_auto_renew is False
    assert event.expires_at is None


def test_explicit_auto_renew_status_wins() -> None:
    assert _normalize(_body(type="RENEWAL", auto_renew_status=False)).will_auto_renew is False


def test_transaction_id_falls_back_to_original_then_event_id() -> None:
    body = _body(original_transaction_id="orig-1")
    del body["event"]["transaction_id"]
    assert _normalize(body).transaction_id == "orig-1"

    body = _body(id="evt-1")
    del body["event"]["transaction_id"]
    event = _normalize(body)
    assert event.transaction_id == "evt-1"
    assert event.idempotency_key == "evt-1:initial_purchase:evt-1"


def test_event_timestamp_separates_repeated_status_signals() -> None:
    first = _normalize(_body(type="CANCELLATION", event_timestamp_ms=PURCHASED_MS + 1000))
    again = _normalize(_body(type="CANCELLATION", event_timestamp_ms=PURCHASED_MS + 1000))
    later = _normalize(_body(type="CANCELLATION", event_timestamp_ms=PURCHASED_MS + 5000))

    assert first.event_timestamp == datetime(2024, 6, 1, 12, 0, 1, tzinfo=timezone.utc)
    assert first.idempotency_key == f"1000000123:cancellation:{PURCHASED_MS + 1000}"
    assert again.idempotency_key == first.idempotency_key
    assert later.idempotency_key != first.idempotency_key


def test_derived_transaction_id_is_deterministic() -> None:
    body = _body()
    del body["event"]["transaction_id"]

    first = _normalize(body)
    second = _normalize(body)

    assert first.transaction_id.startswith("derived:")
    assert first.transaction_id == second.transaction_id


def test_missing_purchase_time_falls_back_to_receipt_time() -> None:
    body = _body(type="CANCELLATION")
    del body["event"]["purchased_at_ms"]

    assert _normalize(body).purchased_at == RECEIVED


def test_product_plan_map_overrides_catalog() -> None:
    event = _normalize(_body(product_id="com.humidor.premium.monthly"), product_plan_map={"com.humidor.premium.monthly": "premium_monthly"})

    assert event.plan_id == "premium_monthly"


def test_unmapped_product_has_no_plan() -> None:
    assert _normalize(_body(product_id="unknown.sku")).plan_id is None


def test_timestamps_in_milliseconds() -> None:
    assert parse_provider_timestamp(PURCHASED_MS, field="ts") == datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
    assert parse_provider_timestamp(str(PURCHASED_MS), field="ts") == datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def test_timestamps_in_seconds_are_detected_and_logged(caplog) -> None:
    caplog.set_level(logging.WARNING, logger="billing.ingest")

    parsed = parse_provider_timestamp(PURCHASED_MS // 1000, field="purchased_at_ms")

    assert parsed == datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
    assert "looks like seconds" in caplog.text


def test_iso_timestamps_are_accepted() -> None:
    parsed = parse_provider_timestamp("2024-06-01T12:00:00Z", field="ts")

    assert parsed == datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("value", [True, -5, "not-a-date", {"ms": 1}])
def test_invalid_timestamps_are_rejected(value) -> None:
    with pytest.raises(ValidationError):
        parse_provider_timestamp(value, field="ts")


def test_empty_timestamp_is_none() -> None:
    assert parse_provider_timestamp(None, field="ts") is None
    assert parse_provider_timestamp("", field="ts") is None
