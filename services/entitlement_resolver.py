"""Pure entitlement rules.

Nothing here touches the database: callers pass a subscription snapshot and a
usage snapshot aggregated for the current period, and get back booleans or a
:class:`EntitlementDecision` with a machine-readable denial reason.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from core.plan_constants import (
    STANDARD_CATEGORIES,
    BillingPeriod,
    Category,
    PlanFeature,
    PlanTier,
    SubscriptionStatus,
    parse_plan_tier,
)
from core.timeutils import calendar_month_window, ensure_utc, rolling_month_window
from services.plan_catalog import UNLIMITED, Plan, base_category_cap, get_plan
from services.usage_ledger import UsageSnapshot


class DenialReason(str, Enum):
    QUOTA_EXCEEDED = "quota_exceeded"
    MINUTES_EXCEEDED = "minutes_exceeded"
    FEATURE_REQUIRED = "feature_required"
    CATEGORY_LIMIT_REACHED = "category_limit_reached"
    ARTIFACT_TOO_LONG = "artifact_too_long"
    ARTIFACT_TOO_LARGE = "artifact_too_large"
    DELEGATE_LIMIT_REACHED = "delegate_limit_reached"
    INVALID_INPUT = "invalid_input"


@dataclass(frozen=True, slots=True)
class SubscriptionSnapshot:
    """Read-only copy of a subscription row, detached from any session."""

    account_id: str
    tier: PlanTier
    status: SubscriptionStatus
    period_start: datetime
    period_end: Optional[datetime]
    plan_assigned_at: Optional[datetime]
    auto_renew: bool = False
    billing_period: Optional[BillingPeriod] = None
    canceled_at: Optional[datetime] = None
    bonus_operations: int = 0
    bonus_categories: int = 0

    @classmethod
    def from_row(cls, row: Any) -> "SubscriptionSnapshot":
        period = row.billing_period
        return cls(
            account_id=row.account_id,
            tier=parse_plan_tier(row.plan_tier) or PlanTier.FREE,
            status=SubscriptionStatus(row.status),
            period_start=ensure_utc(row.period_start),
            period_end=ensure_utc(row.period_end),
            plan_assigned_at=ensure_utc(row.plan_assigned_at),
            auto_renew=bool(row.auto_renew),
            billing_period=BillingPeriod(period) if period else None,
            canceled_at=ensure_utc(row.canceled_at),
            bonus_operations=max(int(row.bonus_operations or 0), 0),
            bonus_categories=max(int(row.bonus_categories or 0), 0),
        )


@dataclass(frozen=True, slots=True)
class EffectivePlan:
    """The plan an account is entitled to right now plus its usage window."""

    plan: Plan
    period_start: datetime
    period_end: datetime
    status: Optional[SubscriptionStatus]
    subscribed_tier: PlanTier
    bonus_operations: int = 0
    bonus_categories: int = 0
    access_ends_at: Optional[datetime] = None

    @property
    def lapsed(self) -> bool:
        """True when a stored paid tier no longer grants access."""
        return self.subscribed_tier is not self.plan.tier


@dataclass(frozen=True, slots=True)
class EntitlementDecision:
    allowed: bool
    reason: Optional[DenialReason] = None
    limit: Optional[float] = None
    used: Optional[float] = None
    remaining: Optional[float] = None
    feature: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason.value if self.reason else None,
            "limit": self.limit,
            "used": self.used,
            "remaining": self.remaining,
            "feature": self.feature,
        }


ALLOWED = EntitlementDecision(allowed=True)


def can_perform_operation(plan: Plan, used: int, bonus_operations: int = 0) -> bool:
    limit = plan.limits.max_operations_per_period
    if limit == UNLIMITED:
        return True
    if used < 0 or bonus_operations < 0:
        return False
    return used < limit + bonus_operations


def can_consume_minutes(plan: Plan, used_minutes: float) -> bool:
    limit = plan.limits.max_metered_minutes_per_period
    if limit == UNLIMITED:
        return True
    if used_minutes < 0:
        return False
    return used_minutes < limit


def can_select_category(plan: Plan, current_count: int, bonus_categories: int = 0) -> bool:
    if current_count < 0 or bonus_categories < 0:
        return False
    return current_count < base_category_cap(plan) + bonus_categories


def has_feature(plan: Plan, feature: PlanFeature | str) -> bool:
    try:
        flag = PlanFeature(feature)
    except ValueError:
        return False
    return plan.has_feature(flag)


def can_upload_artifact(plan: Plan, seconds: float, size_bytes: int) -> bool:
    if seconds < 0 or size_bytes < 0:
        return False
    return seconds <= plan.limits.max_artifact_seconds and size_bytes <= plan.limits.max_artifact_bytes


def can_add_delegate(plan: Plan, current_count: int) -> bool:
    if not plan.limits.max_delegates or current_count < 0:
        return False
    return current_count < plan.limits.max_delegates


def available_categories(
    plan: Plan,
    selected: Optional[Sequence[str]],
    primary: Optional[str],
) -> List[Category]:
    """Categories the account may operate in under ``plan``."""

    if plan.tier is PlanTier.FREE:
        parsed = _parse_categories([primary] if primary else [])
        return [item for item in parsed if item is not Category.COACH]
    if base_category_cap(plan) >= len(STANDARD_CATEGORIES):
        opened = list(STANDARD_CATEGORIES)
        if plan.has_feature(PlanFeature.DASHBOARD):
            opened.append(Category.COACH)
        return opened
    return [item for item in _parse_categories(selected or []) if item is not Category.COACH]


def _parse_categories(values: Iterable[Optional[str]]) -> List[Category]:
    parsed: List[Category] = []
    for value in values:
        try:
            item = Category(value)
        except ValueError:
            continue
        if item not in parsed:
            parsed.append(item)
    return parsed


def current_period(subscription: Optional[SubscriptionSnapshot], now: datetime) -> Tuple[datetime, datetime]:
    """Usage window: calendar month until a plan is assigned, then monthly steps from the assignment."""

    if subscription is None or subscription.plan_assigned_at is None:
        return calendar_month_window(now)
    return rolling_month_window(subscription.plan_assigned_at, now)


def access_ends_at(subscription: SubscriptionSnapshot, renewal_grace: timedelta) -> Optional[datetime]:
    if subscription.period_end is None:
        return None
    if subscription.status is SubscriptionStatus.ACTIVE and subscription.auto_renew:
        return subscription.period_end + renewal_grace
    return subscription.period_end


def has_paid_access(subscription: SubscriptionSnapshot, now: datetime, renewal_grace: timedelta = timedelta(0)) -> bool:
    """Access follows ``status != expired`` until the period (plus renewal grace) runs out."""

    if subscription.status is SubscriptionStatus.EXPIRED:
        return False
    ends_at = access_ends_at(subscription, renewal_grace)
    return ends_at is None or ensure_utc(now) < ends_at


def resolve_effective_plan(
    subscription: Optional[SubscriptionSnapshot],
    now: datetime,
    *,
    renewal_grace: timedelta = timedelta(0),
) -> EffectivePlan:
    period_start, period_end = current_period(subscription, now)
    if subscription is None:
        return EffectivePlan(
            plan=get_plan(PlanTier.FREE),
            period_start=period_start,
            period_end=period_end,
            status=None,
            subscribed_tier=PlanTier.FREE,
        )
    entitled = has_paid_access(subscription, now, renewal_grace)
    plan = get_plan(subscription.tier if entitled else PlanTier.FREE)
    return EffectivePlan(
        plan=plan,
        period_start=period_start,
        period_end=period_end,
        status=subscription.status,
        subscribed_tier=subscription.tier,
        bonus_operations=subscription.bonus_operations,
        bonus_categories=subscription.bonus_categories,
        access_ends_at=access_ends_at(subscription, renewal_grace) if entitled else None,
    )


def _remaining(limit: int, used: float) -> Optional[float]:
    if limit == UNLIMITED:
        return None
    return max(limit - used, 0)


class EntitlementView:
    """Decision helpers bound to one effective plan and one usage snapshot."""

    def __init__(self, effective: EffectivePlan, usage: UsageSnapshot) -> None:
        self.effective = effective
        self.usage = usage

    @property
    def plan(self) -> Plan:
        return self.effective.plan

    @property
    def operation_limit(self) -> int:
        limit = self.plan.limits.max_operations_per_period
        if limit == UNLIMITED:
            return UNLIMITED
        return limit + self.effective.bonus_operations

    def check_operation(self) -> EntitlementDecision:
        used = self.usage.operation_count
        limit = self.operation_limit
        if can_perform_operation(self.plan, used, self.effective.bonus_operations):
            return EntitlementDecision(allowed=True, limit=limit, used=used, remaining=_remaining(limit, used))
        return EntitlementDecision(
            allowed=False,
            reason=DenialReason.QUOTA_EXCEEDED,
            limit=limit,
            used=used,
            remaining=0,
        )

    def check_minutes(self) -> EntitlementDecision:
        limits = self.plan.limits
        if not limits.meters_duration:
            return ALLOWED
        used = self.usage.metered_minutes
        limit = limits.max_metered_minutes_per_period
        if can_consume_minutes(self.plan, used):
            return EntitlementDecision(allowed=True, limit=limit, used=round(used, 2), remaining=_remaining(limit, used))
        return EntitlementDecision(
            allowed=False,
            reason=DenialReason.MINUTES_EXCEEDED,
            limit=limit,
            used=round(used, 2),
            remaining=0,
        )

    def check_feature(self, feature: PlanFeature | str) -> EntitlementDecision:
        name = feature.value if isinstance(feature, PlanFeature) else str(feature)
        if has_feature(self.plan, feature):
            return EntitlementDecision(allowed=True, feature=name)
        return EntitlementDecision(allowed=False, reason=DenialReason.FEATURE_REQUIRED, feature=name)

    def check_category(self, current_count: int) -> EntitlementDecision:
        cap = base_category_cap(self.plan) + self.effective.bonus_categories
        if can_select_category(self.plan, current_count, self.effective.bonus_categories):
            return EntitlementDecision(allowed=True, limit=cap, used=current_count, remaining=cap - current_count)
        return EntitlementDecision(
            allowed=False,
            reason=DenialReason.CATEGORY_LIMIT_REACHED,
            limit=cap,
            used=current_count,
            remaining=0,
        )

    def check_artifact(self, seconds: float, size_bytes: int) -> EntitlementDecision:
        limits = self.plan.limits
        if can_upload_artifact(self.plan, seconds, size_bytes):
            return ALLOWED
        if seconds < 0 or size_bytes < 0:
            return EntitlementDecision(allowed=False, reason=DenialReason.INVALID_INPUT)
        if seconds > limits.max_artifact_seconds:
            return EntitlementDecision(
                allowed=False,
                reason=DenialReason.ARTIFACT_TOO_LONG,
                limit=limits.max_artifact_seconds,
                used=seconds,
            )
        return EntitlementDecision(
            allowed=False,
            reason=DenialReason.ARTIFACT_TOO_LARGE,
            limit=limits.max_artifact_bytes,
            used=size_bytes,
        )

    def check_delegate(self, current_count: int) -> EntitlementDecision:
        limit = self.plan.limits.max_delegates
        if can_add_delegate(self.plan, current_count):
            return EntitlementDecision(allowed=True, limit=limit, used=current_count, remaining=limit - current_count)
        if not limit:
            return EntitlementDecision(
                allowed=False,
                reason=DenialReason.FEATURE_REQUIRED,
                feature=PlanFeature.DELEGATE_MANAGEMENT.value,
            )
        return EntitlementDecision(
            allowed=False,
            reason=DenialReason.DELEGATE_LIMIT_REACHED,
            limit=limit,
            used=current_count,
            remaining=0,
        )

    def to_dict(self) -> Dict[str, Any]:
        minute_limit = self.plan.limits.max_metered_minutes_per_period
        return {
            "planTier": self.plan.tier.value,
            "periodStart": self.effective.period_start.isoformat(),
            "periodEnd": self.effective.period_end.isoformat(),
            "operations": {
                "used": self.usage.operation_count,
                "limit": self.operation_limit,
                "remaining": _remaining(self.operation_limit, self.usage.operation_count),
            },
            "meteredMinutes": {
                "used": round(self.usage.metered_minutes, 2),
                "limit": minute_limit,
                "remaining": _remaining(minute_limit, self.usage.metered_minutes) if self.plan.limits.meters_duration else None,
            },
            "bonusOperations": self.effective.bonus_operations,
            "bonusCategories": self.effective.bonus_categories,
        }


__all__ = [
    "ALLOWED",
    "DenialReason",
    "EffectivePlan",
    "EntitlementDecision",
    "EntitlementView",
    "SubscriptionSnapshot",
    "access_ends_at",
    "available_categories",
    "can_add_delegate",
    "can_consume_minutes",
    "can_perform_operation",
    "can_select_category",
    "can_upload_artifact",
    "current_period",
    "has_feature",
    "has_paid_access",
    "resolve_effective_plan",
]
