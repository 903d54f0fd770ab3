"""Static plan catalog: tier identifiers mapped to limits and feature flags."""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional

from core.plan_constants import BillingPeriod, PlanFeature, PlanTier, parse_plan_tier

UNLIMITED = -1
_MB = 1024 * 1024

_ALL_FEATURES: FrozenSet[PlanFeature] = frozenset(PlanFeature)


@dataclass(frozen=True, slots=True)
class PlanLimits:
    max_operations_per_period: int
    max_metered_minutes_per_period: int
    max_artifact_seconds: int
    max_artifact_bytes: int
    max_concurrent_categories: int
    max_delegates: int = 0

    @property
    def meters_duration(self) -> bool:
        """A zero minute allowance means only per-artifact limits apply."""
        return self.max_metered_minutes_per_period != 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "maxOperationsPerPeriod": self.max_operations_per_period,
            "maxMeteredMinutesPerPeriod": self.max_metered_minutes_per_period,
            "maxArtifactSeconds": self.max_artifact_seconds,
            "maxArtifactBytes": self.max_artifact_bytes,
            "maxConcurrentCategories": self.max_concurrent_categories,
            "maxDelegates": self.max_delegates,
        }


@dataclass(frozen=True, slots=True)
class Plan:
    tier: PlanTier
    name: str
    monthly_price: int
    yearly_price: int
    limits: PlanLimits
    features: FrozenSet[PlanFeature]

    def price_for(self, period: BillingPeriod) -> int:
        return self.yearly_price if period is BillingPeriod.YEARLY else self.monthly_price

    def has_feature(self, feature: PlanFeature) -> bool:
        return feature in self.features

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.tier.value,
            "name": self.name,
            "monthlyPrice": self.monthly_price,
            "yearlyPrice": self.yearly_price,
            "limits": self.limits.to_dict(),
            "features": {feature.value: feature in self.features for feature in PlanFeature},
        }


PLAN_CATALOG: Mapping[PlanTier, Plan] = MappingProxyType(
    {
        PlanTier.FREE: Plan(
            tier=PlanTier.FREE,
            name="Trial",
            monthly_price=0,
            yearly_price=0,
            limits=PlanLimits(
                max_operations_per_period=2,
                max_metered_minutes_per_period=0,
                max_artifact_seconds=60,
                max_artifact_bytes=10 * _MB,
                max_concurrent_categories=1,
            ),
            features=frozenset(),
        ),
        PlanTier.CREATOR: Plan(
            tier=PlanTier.CREATOR,
            name="Creators",
            monthly_price=49,
            yearly_price=490,
            limits=PlanLimits(
                max_operations_per_period=10,
                max_metered_minutes_per_period=30,
                max_artifact_seconds=3 * 60,
                max_artifact_bytes=15 * _MB,
                max_concurrent_categories=1,
            ),
            features=frozenset({PlanFeature.HISTORY, PlanFeature.EXPORT}),
        ),
        PlanTier.PRO: Plan(
            tier=PlanTier.PRO,
            name="Creators Extreme",
            monthly_price=99,
            yearly_price=990,
            limits=PlanLimits(
                max_operations_per_period=30,
                max_metered_minutes_per_period=100,
                max_artifact_seconds=5 * 60,
                max_artifact_bytes=40 * _MB,
                max_concurrent_categories=4,
            ),
            features=frozenset(
                {
                    PlanFeature.HISTORY,
                    PlanFeature.COMPARISON,
                    PlanFeature.EXPORT,
                    PlanFeature.ADVANCED_ANALYSIS,
                }
            ),
        ),
        PlanTier.COACH: Plan(
            tier=PlanTier.COACH,
            name="Coaches & Studios",
            monthly_price=199,
            yearly_price=1990,
            limits=PlanLimits(
                max_operations_per_period=UNLIMITED,
                max_metered_minutes_per_period=200,
                max_artifact_seconds=5 * 60,
                max_artifact_bytes=40 * _MB,
                max_concurrent_categories=4,
                max_delegates=10,
            ),
            features=_ALL_FEATURES,
        ),
        PlanTier.COACH_PRO: Plan(
            tier=PlanTier.COACH_PRO,
            name="Coaches & Studios PRO",
            monthly_price=299,
            yearly_price=2990,
            limits=PlanLimits(
                max_operations_per_period=UNLIMITED,
                max_metered_minutes_per_period=300,
                max_artifact_seconds=5 * 60,
                max_artifact_bytes=40 * _MB,
                max_concurrent_categories=4,
                max_delegates=30,
            ),
            features=_ALL_FEATURES,
        ),
    }
)


def get_plan(tier: PlanTier | str | None) -> Plan:
    """Return the catalog entry, resolving unknown or missing tiers to free."""

    resolved = parse_plan_tier(tier) if not isinstance(tier, PlanTier) else tier
    return PLAN_CATALOG[resolved or PlanTier.FREE]


def require_plan(tier: Optional[str]) -> Plan:
    """Boundary variant of :func:`get_plan` that rejects unknown identifiers."""

    resolved = parse_plan_tier(tier)
    if resolved is None:
        raise KeyError(tier)
    return PLAN_CATALOG[resolved]


def base_category_cap(plan: Plan) -> int:
    return plan.limits.max_concurrent_categories


__all__ = [
    "PLAN_CATALOG",
    "Plan",
    "PlanLimits",
    "UNLIMITED",
    "base_category_cap",
    "get_plan",
    "require_plan",
]
