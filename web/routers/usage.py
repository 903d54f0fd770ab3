"""Usage snapshot, metered operation and category selection endpoints."""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from database import get_db
from schemas.api.usage import (
    CategorySelectionRequest,
    CategorySelectionResponse,
    UsageOperationRequest,
    UsageOperationResponse,
)
from services.entitlement_service import entitlement_service
from services.subscription_lifecycle import atomic
from web.deps import get_current_user
from web.middleware.auth_context import AuthenticatedUser
from web.quota_guard import translate_billing_errors

router = APIRouter(prefix="/usage", tags=["Usage"])


@router.get("", summary="Usage against the current period's limits")
def read_usage(
    user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    with translate_billing_errors():
        return entitlement_service.evaluate(db, user.id).to_dict()


@router.post("/operations", response_model=UsageOperationResponse, summary="Check and record one gated operation")
def record_operation(
    payload: UsageOperationRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> UsageOperationResponse:
    with translate_billing_errors():
        with atomic(db):
            result = entitlement_service.consume_operation(
                db,
                user.id,
                artifact_id=payload.artifactId,
                duration_seconds=payload.durationSeconds,
                size_bytes=payload.sizeBytes,
            )
    return UsageOperationResponse(**result.to_dict())


@router.put("/categories", response_model=CategorySelectionResponse, summary="Replace the selected categories")
def update_categories(
    payload: CategorySelectionRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> CategorySelectionResponse:
    with translate_billing_errors():
        with atomic(db):
            result = entitlement_service.select_categories(
                db,
                user.id,
                payload.categories,
                primary=payload.primaryCategory,
            )
    return CategorySelectionResponse(**result)


__all__ = ["router"]
