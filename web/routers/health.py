"""Health-related API endpoints."""

from __future__ import annotations

from typing import Optional, Tuple

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from core.config import load_billing_settings
from database import SessionLocal

router = APIRouter(prefix="/health", tags=["Health"])


def ping_database() -> Tuple[bool, Optional[str]]:
    """Return database connectivity status and optional error message."""
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        return True, None
    except SQLAlchemyError as exc:
        return False, str(exc)
    finally:
        db.close()


@router.get(
    "/status",
    summary="Service runtime status",
    description="Database connectivity plus which credential-dependent endpoints are enabled.",
)
def read_service_status():
    db_ok, db_error = ping_database()
    settings = load_billing_settings()
    payload = {
        "status": "ok" if db_ok else "degraded",
        "database": {"ok": db_ok},
        "payments": {"configured": settings.gateway_configured},
        "sweeper": {"configured": settings.cron_configured},
    }
    if db_error:
        payload["database"]["error"] = db_error
    return payload


__all__ = ["router", "ping_database"]
