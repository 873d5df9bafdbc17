"""API routes exposing billing functionality."""
from __future__ import annotations

import hmac
import json
import logging
import os
from typing import Any, Optional

from fastapi import APIRouter, Cookie, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from ...app_context import get_current_user
from ...usage_queue import record_usage
from ..billing import BillingError, BillingService, ValidationError
from ..entitlements import compute_access
from ..feature_gates import AccessContext, FeatureGateError
from ..schemas.billing import (
    AccessResponse,
    FeatureCheckResponse,
    IdentityBindingRequest,
    IdentityBindingResponse,
    PlanListResponse,
    PlanResponse,
    ReconcileResponse,
    WebhookResponse,
)
from ..services.billing import get_billing_service

logger = logging.getLogger("billing")

_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")


def _get_current_user(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
):
    return get_current_user(session_token=session_token)


router = APIRouter(prefix="/api/billing", tags=["billing"])


def _authorized(expected: Optional[str], provided: Optional[str]) -> bool:
    if not expected:
        return True
    return hmac.compare_digest(expected.encode("utf-8"), (provided or "").encode("utf-8"))


def process_webhook_payload(
    body: Any,
    *,
    authorization: Optional[str] = None,
    service: Optional[BillingService] = None,
) -> JSONResponse:
    """Turn one webhook delivery into a definite HTTP status.

    400 for malformed payloads, 200 for anything processed (including
    duplicates, stale and parked events), 500 when the provider should retry.
    """

    billing_service = service or get_billing_service()
    if not _authorized(billing_service.config.webhook_authorization, authorization):
        logger.warning("Rejected billing webhook with invalid authorization")
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"error": "Unauthorized"})

    try:
        result = billing_service.ingest(body)
    except ValidationError as exc:
        logger.warning("Rejected billing webhook: %s", exc)
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(exc)})
    except BillingError as exc:
        logger.exception("Billing webhook processing failed")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": f"Webhook processing failed: {exc.__class__.__name__}"},
        )
    except Exception:
        logger.exception("Unexpected billing webhook failure")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error"},
        )

    return JSONResponse(status_code=status.HTTP_200_OK, content=WebhookResponse.from_result(result).model_dump())


@router.post("/webhook")
async def receive_webhook(request: Request) -> JSONResponse:
    raw = await request.body()
    try:
        body = json.loads(raw.decode("utf-8")) if raw else None
    except (UnicodeDecodeError, ValueError):
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Invalid JSON body"})
    return await run_in_threadpool(process_webhook_payload, body, authorization=request.headers.get("authorization"))


@router.get("/plans", response_model=PlanListResponse)
def list_plans() -> PlanListResponse:
    service = get_billing_service()
    plans = service.catalog.list_active_plans()
    return PlanListResponse(plans=[PlanResponse.from_plan(plan) for plan in plans])


@router.get("/access", response_model=AccessResponse)
def get_access(*, current_user=Depends(_get_current_user)) -> AccessResponse:
    service = get_billing_service()
    decision = service.compute_access(str(current_user.id))
    return AccessResponse.from_decision(decision)


@router.post("/reconcile", response_model=ReconcileResponse)
def reconcile(*, current_user=Depends(_get_current_user)) -> ReconcileResponse:
    service = get_billing_service()
    try:
        result = service.reconcile_on_demand(str(current_user.id))
    except BillingError as exc:
        logger.warning("On-demand reconciliation failed for %s: %s", current_user.id, exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Reconciliation failed; retry later",
        ) from exc
    return ReconcileResponse.from_result(result)


@router.post("/identity", response_model=IdentityBindingResponse)
def bind_identity(
    payload: IdentityBindingRequest,
    *,
    current_user=Depends(_get_current_user),
) -> IdentityBindingResponse:
    service = get_billing_service()
    try:
        result = service.bind_identity(str(current_user.id), payload.billing_provider_user_id.strip())
    except BillingError as exc:
        logger.warning("Identity binding failed for %s: %s", current_user.id, exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Identity binding failed; retry later",
        ) from exc
    return IdentityBindingResponse.from_result(result, compute_access(result.record, service.clock()))


@router.post("/trial", response_model=AccessResponse)
def start_trial(*, current_user=Depends(_get_current_user)) -> AccessResponse:
    service = get_billing_service()
    try:
        record = service.start_trial(str(current_user.id))
    except BillingError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not start trial; retry later",
        ) from exc
    return AccessResponse.from_decision(compute_access(record, service.clock()))


@router.get("/features/{feature}", response_model=FeatureCheckResponse)
def check_feature(feature: str, *, current_user=Depends(_get_current_user)) -> FeatureCheckResponse:
    service = get_billing_service()
    user_id = str(current_user.id)
    context = AccessContext(service.compute_access(user_id))
    allowed = context.has(feature)
    record_usage(
        {
            "user_id": user_id,
            "feature": feature,
            "action": "gate_check",
            "had_access": allowed,
            "props": {"status": context.status.value if context.status else None},
        }
    )
    try:
        context.require(feature)
    except FeatureGateError as exc:
        raise exc.to_http_exception() from exc
    return FeatureCheckResponse(
        feature=feature,
        allowed=True,
        show_upgrade_prompt=context.show_upgrade_prompt,
        access=AccessResponse.from_decision(context.decision),
    )
