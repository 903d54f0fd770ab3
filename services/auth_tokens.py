"""Access-token issue and verification for billing API callers."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import jwt

from core.env import env_int, env_str


class AuthTokenError(RuntimeError):
    """Raised when a token cannot be issued or verified."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code


def _secret() -> str:
    secret = env_str("AUTH_JWT_SECRET") or env_str("AUTH_SECRET")
    if not secret:
        raise AuthTokenError("auth.not_configured", "AUTH_JWT_SECRET is not configured.")
    return secret


def _algorithm() -> str:
    return env_str("AUTH_JWT_ALG") or "HS256"


def _issuer() -> str:
    return env_str("AUTH_JWT_ISSUER") or "billing-auth"


def _audience() -> str:
    return env_str("AUTH_JWT_AUDIENCE") or "billing-api"


def create_access_token(
    *,
    user_id: str,
    email: Optional[str] = None,
    role: str = "user",
    ttl_seconds: Optional[int] = None,
) -> Tuple[str, int]:
    """Issue an access JWT; returns the token and its lifetime in seconds."""

    ttl = ttl_seconds or env_int("AUTH_ACCESS_TOKEN_TTL_SECONDS", 900, minimum=60)
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "aud": _audience(),
        "iss": _issuer(),
        "scope": "access",
        "email": email,
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl)).timestamp()),
        "jti": str(uuid.uuid4()),
    }
    token = jwt.encode(payload, _secret(), algorithm=_algorithm())
    return token, ttl


def decode_token(token: str, *, scope: Optional[str] = None) -> Dict[str, Any]:
    """Verify signature, audience, issuer and optionally the scope claim."""

    try:
        payload = jwt.decode(
            token,
            _secret(),
            algorithms=[_algorithm()],
            audience=_audience(),
            issuer=_issuer(),
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthTokenError("auth.token_expired", "The access token has expired.") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthTokenError("auth.token_invalid", "The access token could not be verified.") from exc
    if scope and payload.get("scope") != scope:
        raise AuthTokenError("auth.token_invalid", "The token scope does not match.")
    return payload


__all__ = ["AuthTokenError", "create_access_token", "decode_token"]
