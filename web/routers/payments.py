"""Checkout and gateway notification endpoints."""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, Optional
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from core.config import load_billing_settings
from core.logging import get_logger
from core.plan_constants import BillingPeriod, parse_plan_tier
from database import get_db
from models.payments import PaymentOrder
from schemas.api.payments import (
    CallbackResponse,
    CheckoutCreateRequest,
    CheckoutCreateResponse,
    ReconcileResultSchema,
)
from services.billing_errors import UpstreamUnavailableError
from services.entitlement_service import entitlement_service
from services.payments import GatewayClient, GatewayError
from services.payments.callback_utils import SOURCE_IPN, SOURCE_REDIRECT, PaymentNotification
from services.payments.order_context import create_order
from services.payments.reconciler import PaymentReconciler, ReconcileResult, payment_reconciler
from services.plan_catalog import get_plan
from services.subscription_lifecycle import atomic
from web.deps import get_current_user, get_gateway, get_session_factory
from web.middleware.auth_context import AuthenticatedUser
from web.quota_guard import billing_http_exception, translate_billing_errors

router = APIRouter(prefix="/payments", tags=["Payments"])

logger = get_logger(__name__)


def get_reconciler() -> PaymentReconciler:
    return payment_reconciler


async def _notification_params(request: Request) -> Dict[str, Any]:
    """Merge query string and body (JSON or form-encoded) into one mapping."""

    params: Dict[str, Any] = dict(request.query_params)
    if request.method != "POST":
        return params
    raw_body = await request.body()
    if not raw_body:
        return params
    content_type = (request.headers.get("content-type") or "").lower()
    try:
        if "json" in content_type:
            body = json.loads(raw_body.decode("utf-8"))
            if isinstance(body, dict):
                params.update(body)
        else:
            params.update(dict(parse_qsl(raw_body.decode("utf-8"), keep_blank_values=True)))
    except (ValueError, UnicodeDecodeError) as exc:
        logger.warning("Gateway notification body could not be decoded: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "payments.payload_invalid", "message": "The notification body could not be decoded."},
        ) from exc
    return params


def _current_subscription(db: Session, result: ReconcileResult) -> Optional[dict]:
    """Re-read the persisted state; the client renders this, not the reconcile status."""

    if not result.account_id:
        return None
    db.expire_all()
    with translate_billing_errors():
        return entitlement_service.describe(db, result.account_id)["subscription"]


@router.post("/checkout", response_model=CheckoutCreateResponse, summary="Create an order and a hosted payment page")
async def create_checkout(
    payload: CheckoutCreateRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway),
) -> CheckoutCreateResponse:
    tier = parse_plan_tier(payload.planTier)
    if tier is None or not tier.is_paid:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "plan.unknown_tier", "message": "Choose a paid plan to check out."},
        )
    period = BillingPeriod(payload.billingPeriod)

    def _create() -> PaymentOrder:
        with atomic(db):
            return create_order(db, account_id=user.id, tier=tier, billing_period=period)

    def _finish(order: PaymentOrder, status_value: Optional[str] = None, payment_url: Optional[str] = None) -> None:
        with atomic(db):
            if status_value is not None:
                order.status = status_value
            if payment_url is not None:
                order.payment_url = payment_url

    with translate_billing_errors():
        order = await run_in_threadpool(_create)

    try:
        page = await gateway.create_payment_page(
            order_reference=order.order_reference,
            amount=float(order.amount),
            product_name=get_plan(tier).name,
            billing_period=period.value,
            redirect_url=load_billing_settings().redirect_url,
            customer_email=user.email,
            language=payload.language or "he",
        )
    except GatewayError as exc:
        logger.warning(
            "Payment page request failed: %s",
            exc,
            extra={"account_id": user.id, "order_reference": order.order_reference},
        )
        await run_in_threadpool(_finish, order, "failed")
        upstream = UpstreamUnavailableError("payments.gateway_unavailable", str(exc))
        raise billing_http_exception(upstream) from exc

    await run_in_threadpool(_finish, order, None, page["url"])
    return CheckoutCreateResponse(
        orderReference=order.order_reference,
        planTier=order.plan_tier,
        billingPeriod=order.billing_period,
        amount=float(order.amount),
        paymentUrl=page["url"],
        status=order.status,
        createdAt=order.created_at.isoformat(),
    )


@router.api_route(
    "/callback",
    methods=["GET", "POST"],
    response_model=CallbackResponse,
    summary="Browser redirect back from the hosted payment page",
)
async def handle_redirect_callback(
    request: Request,
    db: Session = Depends(get_db),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    reconciler: PaymentReconciler = Depends(get_reconciler),
) -> CallbackResponse:
    params = await _notification_params(request)
    notification = PaymentNotification.from_params(params, source=SOURCE_REDIRECT)
    with translate_billing_errors():
        result = await reconciler.confirm_redirect(notification, session_factory=session_factory)
    return CallbackResponse(
        result=ReconcileResultSchema(**result.to_dict()),
        subscription=await run_in_threadpool(_current_subscription, db, result),
    )


@router.post("/ipn", status_code=status.HTTP_202_ACCEPTED, summary="Asynchronous gateway notification")
async def handle_ipn(
    request: Request,
    db: Session = Depends(get_db),
    reconciler: PaymentReconciler = Depends(get_reconciler),
) -> Dict[str, Any]:
    params = await _notification_params(request)
    notification = PaymentNotification.from_params(params, source=SOURCE_IPN)
    logger.info(
        "Received gateway IPN.",
        extra={"external_reference": notification.external_reference, "raw_status": notification.status_code},
    )
    # a 503 from an unavailable idempotency check makes the gateway retry
    with translate_billing_errors():
        result = await run_in_threadpool(reconciler.reconcile, db, notification)
    return {"status": "accepted", "result": result.to_dict()}


__all__ = ["get_reconciler", "router"]
