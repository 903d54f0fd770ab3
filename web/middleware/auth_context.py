"""Attach authenticated account information from Authorization headers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from core.logging import get_logger
from services.auth_tokens import AuthTokenError, decode_token

logger = get_logger(__name__)

# gateway callbacks and the cron trigger authenticate by other means
_BYPASS_PREFIXES = (
    "/api/v1/payments/callback",
    "/api/v1/payments/ipn",
    "/docs",
    "/openapi",
    "/health",
    "/metrics",
)


@dataclass(frozen=True)
class AuthenticatedUser:
    id: str
    email: Optional[str]
    role: str


def _should_bypass(path: str) -> bool:
    path = path or ""
    return any(path.startswith(prefix) for prefix in _BYPASS_PREFIXES)


def extract_bearer(header_value: Optional[str]) -> Optional[str]:
    if not header_value:
        return None
    value = header_value.strip()
    if not value:
        return None
    if value.lower().startswith("bearer "):
        token = value[7:].strip()
        return token or None
    return None


async def auth_context_middleware(request: Request, call_next):
    path = request.url.path if request.url else ""
    if request.method == "OPTIONS" or _should_bypass(path):
        return await call_next(request)

    token = extract_bearer(request.headers.get("authorization"))
    if not token:
        return await call_next(request)

    try:
        payload = decode_token(token, scope="access")
    except AuthTokenError as exc:
        if exc.code == "auth.token_expired":
            return JSONResponse(status_code=401, content={"detail": {"code": exc.code, "message": str(exc)}})
        if exc.code == "auth.not_configured":
            logger.error("Bearer token presented but AUTH_JWT_SECRET is not configured.")
        # not an access token; the route decides (the cron secret also travels as a bearer)
        request.state.bearer_token = token
        return await call_next(request)

    user_id = payload.get("sub")
    if not user_id:
        detail = {"code": "auth.token_invalid", "message": "The access token has no subject."}
        return JSONResponse(status_code=401, content={"detail": detail})

    request.state.user = AuthenticatedUser(
        id=str(user_id),
        email=payload.get("email"),
        role=str(payload.get("role") or "user"),
    )
    request.state.user_claims = payload
    request.state.bearer_token = token
    return await call_next(request)


__all__ = ["AuthenticatedUser", "auth_context_middleware", "extract_bearer"]
