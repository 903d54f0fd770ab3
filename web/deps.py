"""Shared FastAPI dependencies."""

from __future__ import annotations

import hmac
from typing import Callable, Optional

from fastapi import HTTPException, Request, status
from sqlalchemy.orm import Session

from core.config import load_billing_settings
from core.logging import get_logger
from database import SessionLocal
from services.payments import GatewayClient, GatewayNotConfiguredError, get_gateway_client
from web.middleware.auth_context import AuthenticatedUser

logger = get_logger(__name__)


def get_current_user(request: Request) -> AuthenticatedUser:
    user = getattr(request.state, "user", None)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "auth.required", "message": "Sign in to use this endpoint."},
        )
    return user


def get_optional_user(request: Request) -> Optional[AuthenticatedUser]:
    return getattr(request.state, "user", None)


def get_session_factory() -> Callable[[], Session]:
    """Factory for work that needs its own sessions (sweeper, bounded redirect wait)."""
    return SessionLocal


def get_gateway() -> GatewayClient:
    try:
        return get_gateway_client()
    except GatewayNotConfiguredError as exc:
        logger.error("Payment gateway configuration missing: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "payments.config_missing", "message": str(exc)},
        ) from exc


def get_optional_gateway() -> Optional[GatewayClient]:
    """Gateway client for best-effort sync calls; ``None`` when not configured."""
    try:
        return get_gateway_client()
    except GatewayNotConfiguredError:
        return None


def verify_cron_secret(provided: Optional[str]) -> None:
    """Reject the call before touching the store unless ``provided`` matches CRON_SECRET."""

    expected = load_billing_settings().cron_secret
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "cron.not_configured", "message": "CRON_SECRET is not configured."},
        )
    if not provided or not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Rejected sweeper trigger with an invalid cron secret.")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "cron.invalid_secret", "message": "The cron secret is missing or invalid."},
        )


__all__ = [
    "get_current_user",
    "get_gateway",
    "get_optional_gateway",
    "get_optional_user",
    "get_session_factory",
    "verify_cron_secret",
]
