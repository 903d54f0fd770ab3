"""Pydantic schemas for subscription reads and actions."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

SubscriptionAction = Literal["cancel", "pause", "resume", "downgrade-expired"]


class PlanLimitsSchema(BaseModel):
    operationsPerPeriod: int = Field(..., description="Operations per usage period; -1 means unlimited.")
    meteredMinutes: int = Field(..., description="Metered minutes per period; 0 means not metered, -1 unlimited.")
    maxArtifactSeconds: int
    maxArtifactBytes: int
    categoryCap: int
    delegateCap: int
    features: List[str] = Field(default_factory=list)


class SubscriptionSchema(BaseModel):
    accountId: str
    planTier: str
    status: str
    billingPeriod: Optional[str] = None
    periodStart: Optional[str] = None
    periodEnd: Optional[str] = None
    autoRenew: bool = False
    lapsed: bool = Field(default=False, description="Stored tier is paid but access has ended.")
    bonusOperations: int = 0
    bonusCategories: int = 0


class SubscriptionReadResponse(BaseModel):
    subscription: SubscriptionSchema
    limits: PlanLimitsSchema
    usage: Dict[str, Any] = Field(default_factory=dict)


class SubscriptionActionRequest(BaseModel):
    action: SubscriptionAction
    secret: Optional[str] = Field(default=None, description="Cron secret for downgrade-expired.")


class SubscriptionActionResponse(BaseModel):
    action: str
    changed: bool = True
    transition: Optional[Dict[str, Any]] = None
    sweep: Optional[Dict[str, Any]] = None


__all__ = [
    "PlanLimitsSchema",
    "SubscriptionActionRequest",
    "SubscriptionActionResponse",
    "SubscriptionReadResponse",
    "SubscriptionSchema",
]
