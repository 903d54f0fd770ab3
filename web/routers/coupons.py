"""Coupon redemption endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from database import get_db
from schemas.api.coupons import CouponRedeemRequest, CouponRedeemResponse
from services.coupon_service import redeem_coupon
from web.deps import get_current_user
from web.middleware.auth_context import AuthenticatedUser
from web.quota_guard import translate_billing_errors

router = APIRouter(prefix="/coupons", tags=["Coupons"])


@router.post("/redeem", response_model=CouponRedeemResponse, summary="Redeem a coupon for the signed-in account")
def redeem(
    payload: CouponRedeemRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> CouponRedeemResponse:
    with translate_billing_errors():
        result = redeem_coupon(db, payload.code, user.id)
    return CouponRedeemResponse(**result.to_dict())


__all__ = ["router"]
