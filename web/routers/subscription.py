"""Subscription read and lifecycle action endpoints."""

from __future__ import annotations

from typing import Callable, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from core.logging import get_logger
from database import get_db
from schemas.api.subscription import (
    SubscriptionActionRequest,
    SubscriptionActionResponse,
    SubscriptionReadResponse,
)
from services.downgrade_sweeper import run_sweep
from services.entitlement_service import entitlement_service
from services.payments import GatewayClient, GatewayError
from services.subscription_lifecycle import (
    TransitionResult,
    atomic,
    cancel_subscription,
    get_subscription,
    pause_subscription,
    resume_subscription,
)
from web.deps import (
    get_current_user,
    get_optional_gateway,
    get_optional_user,
    get_session_factory,
    verify_cron_secret,
)
from web.middleware.auth_context import AuthenticatedUser, extract_bearer
from web.quota_guard import translate_billing_errors

router = APIRouter(prefix="/subscription", tags=["Subscription"])

logger = get_logger(__name__)

_TRANSITIONS = {
    "cancel": cancel_subscription,
    "pause": pause_subscription,
    "resume": resume_subscription,
}


def _cron_secret(request: Request, body_secret: Optional[str], query_secret: Optional[str]) -> Optional[str]:
    return extract_bearer(request.headers.get("authorization")) or body_secret or query_secret


async def _sync_gateway(action: str, recurring_id: Optional[str], gateway: Optional[GatewayClient], account_id: str) -> None:
    """Best-effort: the local transition has already committed."""

    if not recurring_id:
        return
    if gateway is None:
        logger.warning(
            "Gateway not configured; recurring charge not synced after %s.",
            action,
            extra={"account_id": account_id},
        )
        return
    try:
        if action == "resume":
            await gateway.resume_recurring_charge(recurring_id)
        else:
            await gateway.stop_recurring_charge(recurring_id)
    except GatewayError as exc:
        logger.warning(
            "Gateway %s sync failed (%s): %s",
            action,
            exc.status_code,
            exc,
            extra={"account_id": account_id, "recurring_id": recurring_id},
        )


@router.get("", response_model=SubscriptionReadResponse, summary="Current plan, status and usage")
def read_subscription(
    user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> SubscriptionReadResponse:
    with translate_billing_errors():
        return SubscriptionReadResponse(**entitlement_service.describe(db, user.id))


@router.post("", response_model=SubscriptionActionResponse, summary="Cancel, pause, resume or run the downgrade sweep")
async def update_subscription(
    payload: SubscriptionActionRequest,
    request: Request,
    secret: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    gateway: Optional[GatewayClient] = Depends(get_optional_gateway),
    user: Optional[AuthenticatedUser] = Depends(get_optional_user),
) -> SubscriptionActionResponse:
    if payload.action == "downgrade-expired":
        verify_cron_secret(_cron_secret(request, payload.secret, secret))
        result = await run_in_threadpool(run_sweep, session_factory)
        return SubscriptionActionResponse(action=payload.action, changed=result.expired > 0, sweep=result.to_dict())

    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "auth.required", "message": "Sign in to use this endpoint."},
        )
    transition = _TRANSITIONS[payload.action]

    def _apply() -> Tuple[TransitionResult, Optional[str]]:
        with atomic(db):
            result = transition(db, user.id, source="user")
        row = get_subscription(db, user.id)
        return result, row.gateway_recurring_id if row else None

    # row locks and the post-commit webhook both block
    with translate_billing_errors():
        result, recurring_id = await run_in_threadpool(_apply)
    if result.changed:
        await _sync_gateway(payload.action, recurring_id, gateway, user.id)
    return SubscriptionActionResponse(action=payload.action, changed=result.changed, transition=result.to_dict())


__all__ = ["router"]
