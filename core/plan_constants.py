"""Closed enumerations shared by the catalog, services and routers.

Tier and status strings are parsed into these enums once at the boundary
(catalog load, request parsing, ORM reads) and passed around typed afterwards.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional, Sequence


class PlanTier(str, Enum):
    FREE = "free"
    CREATOR = "creator"
    PRO = "pro"
    COACH = "coach"
    COACH_PRO = "coach_pro"

    def __str__(self) -> str:  # pragma: no cover - convenience
        return self.value

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    @property
    def is_paid(self) -> bool:
        return self is not PlanTier.FREE


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELED = "canceled"
    EXPIRED = "expired"

    def __str__(self) -> str:  # pragma: no cover - convenience
        return self.value


class BillingPeriod(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"

    @property
    def months(self) -> int:
        return 12 if self is BillingPeriod.YEARLY else 1


class UsageKind(str, Enum):
    OPERATION = "operation"
    METERED_DURATION = "metered_duration"


class PlanFeature(str, Enum):
    HISTORY = "history"
    COMPARISON = "comparison"
    EXPORT = "export"
    ADVANCED_ANALYSIS = "advanced_analysis"
    DELEGATE_MANAGEMENT = "delegate_management"
    DASHBOARD = "dashboard"


class Category(str, Enum):
    ACTORS = "actors"
    MUSICIANS = "musicians"
    CREATORS = "creators"
    INFLUENCERS = "influencers"
    COACH = "coach"


_TIER_ORDER = (
    PlanTier.FREE,
    PlanTier.CREATOR,
    PlanTier.PRO,
    PlanTier.COACH,
    PlanTier.COACH_PRO,
)

SUPPORTED_PLAN_TIERS: Sequence[PlanTier] = tuple(PlanTier)
STANDARD_CATEGORIES: Sequence[Category] = (
    Category.ACTORS,
    Category.MUSICIANS,
    Category.CREATORS,
    Category.INFLUENCERS,
)

_TIER_ALIASES = {"coach-pro": PlanTier.COACH_PRO, "coachpro": PlanTier.COACH_PRO}


def parse_plan_tier(value: Optional[str]) -> Optional[PlanTier]:
    """Return the enum for ``value`` or ``None`` when it is not a known tier."""

    if isinstance(value, PlanTier):
        return value
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    if not normalized:
        return None
    alias = _TIER_ALIASES.get(normalized)
    if alias is not None:
        return alias
    try:
        return PlanTier(normalized)
    except ValueError:
        return None


__all__ = [
    "BillingPeriod",
    "Category",
    "PlanFeature",
    "PlanTier",
    "STANDARD_CATEGORIES",
    "SUPPORTED_PLAN_TIERS",
    "SubscriptionStatus",
    "UsageKind",
    "parse_plan_tier",
]
