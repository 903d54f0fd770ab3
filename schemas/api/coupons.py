"""Coupon redemption schemas."""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class CouponRedeemRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=64, description="Coupon code; matched case-insensitively.")


class CouponRedeemResponse(BaseModel):
    code: str
    status: str = Field(..., description="redeemed or already_redeemed.")
    effect: Optional[str] = None
    detail: Dict[str, Any] = Field(default_factory=dict)
