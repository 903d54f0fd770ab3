"""Payment API schemas."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field

PurchasableTier = Literal["creator", "pro", "coach", "coach_pro", "coach-pro"]


class CheckoutCreateRequest(BaseModel):
    planTier: PurchasableTier = Field(..., description="Target paid plan tier for the checkout.")
    billingPeriod: Literal["monthly", "yearly"] = Field(default="monthly", description="Billing interval.")
    language: Optional[str] = Field(default=None, description="Payment page language (he or en).")


class CheckoutCreateResponse(BaseModel):
    orderReference: str
    planTier: str
    billingPeriod: str
    amount: float
    paymentUrl: str
    status: str
    createdAt: str


class ReconcileResultSchema(BaseModel):
    status: str = Field(..., description="Reconciliation outcome (applied, renewed, rejected, pending, ...).")
    success: bool = Field(..., description="Whether the gateway reported a confirmed charge.")
    externalReference: Optional[str] = None
    accountId: Optional[str] = None
    orderReference: Optional[str] = None
    tier: Optional[str] = None
    needsRetry: bool = False
    duplicate: bool = False
    message: Optional[str] = None


class CallbackResponse(BaseModel):
    result: ReconcileResultSchema
    subscription: Optional[dict] = Field(
        default=None,
        description="Subscription as re-read from the store after reconciliation.",
    )


__all__ = [
    "CallbackResponse",
    "CheckoutCreateRequest",
    "CheckoutCreateResponse",
    "ReconcileResultSchema",
]
