"""FastAPI application wiring for the billing service."""

from __future__ import annotations

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from core.config import load_billing_settings
from core.logging import get_logger, setup_logging
from web import routers
from web.middleware.auth_context import auth_context_middleware

logger = get_logger(__name__)

_API_PREFIX = "/api/v1"


def create_app() -> FastAPI:
    setup_logging()
    # logs which credential-dependent endpoints are disabled
    load_billing_settings()

    app = FastAPI(title="Billing & Entitlements API", version="1.0.0")

    @app.middleware("http")
    async def attach_auth_context(request: Request, call_next):
        """Decode bearer tokens into request.state.user."""
        return await auth_context_middleware(request, call_next)

    @app.get("/", summary="Health Check", tags=["Default"])
    def health_check():
        return {"status": "ok", "message": "Billing API is running."}

    @app.get("/healthz", include_in_schema=False)
    def liveness_probe():
        db_ok, db_error = routers.health.ping_database()
        payload = {"status": "ok" if db_ok else "unhealthy", "database": {"ok": db_ok}}
        if db_error:
            payload["database"]["error"] = db_error
        status_code = status.HTTP_200_OK if db_ok else status.HTTP_503_SERVICE_UNAVAILABLE
        return JSONResponse(status_code=status_code, content=payload)

    @app.get("/metrics", include_in_schema=False)
    def prometheus_metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(routers.subscription.router, prefix=_API_PREFIX)
    app.include_router(routers.coupons.router, prefix=_API_PREFIX)
    app.include_router(routers.payments.router, prefix=_API_PREFIX)
    app.include_router(routers.usage.router, prefix=_API_PREFIX)
    app.include_router(routers.health.router, prefix=_API_PREFIX)
    return app


app = create_app()
