"""Entitlement reads and metered consumption against the authoritative store.

Every call re-derives the effective plan and the current-period usage from
the database; nothing is cached between requests.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Sequence

from sqlalchemy.orm import Session

from core.config import load_billing_settings
from core.logging import get_logger
from core.plan_constants import Category, PlanFeature, SubscriptionStatus, UsageKind
from core.timeutils import ensure_utc, utcnow
from services import billing_metrics
from services.billing_errors import BillingValidationError
from services.entitlement_resolver import (
    EntitlementDecision,
    EntitlementView,
    available_categories,
    resolve_effective_plan,
)
from services.plan_catalog import base_category_cap
from services.plan_guard import PlanGuardError, ensure_allowed
from services.subscription_lifecycle import ensure_account, get_snapshot
from services.usage_ledger import aggregate, find_usage_event, record_usage

logger = get_logger(__name__)


@dataclass(frozen=True)
class ConsumeResult:
    decision: EntitlementDecision
    recorded: bool
    duplicate: bool
    usage: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.decision.allowed,
            "recorded": self.recorded,
            "duplicate": self.duplicate,
            "usage": self.usage,
        }


class EntitlementService:
    """Resolve plan + usage per request and guard metered operations."""

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = utcnow,
        renewal_grace: Optional[timedelta] = None,
    ) -> None:
        self._clock = clock
        self._renewal_grace = renewal_grace

    @property
    def renewal_grace(self) -> timedelta:
        if self._renewal_grace is not None:
            return self._renewal_grace
        return timedelta(hours=load_billing_settings().renewal_grace_hours)

    def evaluate(self, session: Session, account_id: str, *, now: Optional[datetime] = None) -> EntitlementView:
        now = ensure_utc(now) or self._clock()
        snapshot = get_snapshot(session, account_id)
        effective = resolve_effective_plan(snapshot, now, renewal_grace=self.renewal_grace)
        usage = aggregate(session, account_id, effective.period_start, effective.period_end)
        return EntitlementView(effective, usage)

    def describe(self, session: Session, account_id: str, *, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Subscription, effective limits and usage as the presentation layer reads them."""

        now = ensure_utc(now) or self._clock()
        snapshot = get_snapshot(session, account_id)
        view = self.evaluate(session, account_id, now=now)
        effective = view.effective
        plan = view.plan
        return {
            "subscription": {
                "accountId": account_id,
                "planTier": plan.tier.value,
                "status": snapshot.status.value if snapshot else SubscriptionStatus.ACTIVE.value,
                "billingPeriod": snapshot.billing_period.value if snapshot and snapshot.billing_period else None,
                "periodStart": snapshot.period_start.isoformat() if snapshot and snapshot.period_start else None,
                "periodEnd": snapshot.period_end.isoformat() if snapshot and snapshot.period_end else None,
                "autoRenew": bool(snapshot.auto_renew) if snapshot else False,
                "lapsed": effective.lapsed,
                "bonusOperations": effective.bonus_operations,
                "bonusCategories": effective.bonus_categories,
            },
            "limits": {
                "operationsPerPeriod": view.operation_limit,
                "meteredMinutes": plan.limits.max_metered_minutes_per_period,
                "maxArtifactSeconds": plan.limits.max_artifact_seconds,
                "maxArtifactBytes": plan.limits.max_artifact_bytes,
                "categoryCap": base_category_cap(plan) + effective.bonus_categories,
                "delegateCap": plan.limits.max_delegates,
                "features": sorted(feature.value for feature in plan.features),
            },
            "usage": view.to_dict(),
        }

    def check_operation(self, session: Session, account_id: str, *, now: Optional[datetime] = None) -> EntitlementDecision:
        return self._observe(self.evaluate(session, account_id, now=now).check_operation())

    def check_feature(
        self,
        session: Session,
        account_id: str,
        feature: PlanFeature | str,
        *,
        now: Optional[datetime] = None,
    ) -> EntitlementDecision:
        return self._observe(self.evaluate(session, account_id, now=now).check_feature(feature))

    def require_feature(self, session: Session, account_id: str, feature: PlanFeature | str) -> EntitlementView:
        view = self.evaluate(session, account_id)
        ensure_allowed(self._observe(view.check_feature(feature)), view.plan.tier)
        return view

    def consume_operation(
        self,
        session: Session,
        account_id: str,
        *,
        artifact_id: Optional[str] = None,
        duration_seconds: Optional[float] = None,
        size_bytes: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ConsumeResult:
        """Check and record one operation in the caller's transaction.

        The account row is locked first so that check and record for the same
        account are serialized. A repeated ``artifact_id`` is reported as a
        duplicate without counting again.
        """

        now = ensure_utc(now) or self._clock()
        ensure_account(session, account_id, lock=True)

        if artifact_id and find_usage_event(session, account_id, UsageKind.OPERATION, artifact_id) is not None:
            view = self.evaluate(session, account_id, now=now)
            logger.info(
                "Operation already recorded; returning original outcome.",
                extra={"account_id": account_id, "artifact_id": artifact_id},
            )
            return ConsumeResult(
                decision=EntitlementDecision(allowed=True),
                recorded=False,
                duplicate=True,
                usage=view.to_dict(),
            )

        view = self.evaluate(session, account_id, now=now)
        tier = view.plan.tier
        if duration_seconds is not None or size_bytes is not None:
            ensure_allowed(
                self._observe(view.check_artifact(float(duration_seconds or 0), int(size_bytes or 0))),
                tier,
            )
        decision = ensure_allowed(self._observe(view.check_operation()), tier)
        if duration_seconds:
            ensure_allowed(self._observe(view.check_minutes()), tier)

        result = record_usage(
            session,
            account_id=account_id,
            kind=UsageKind.OPERATION,
            artifact_id=artifact_id,
            occurred_at=now,
        )
        if duration_seconds:
            record_usage(
                session,
                account_id=account_id,
                kind=UsageKind.METERED_DURATION,
                quantity=int(round(duration_seconds)),
                artifact_id=artifact_id,
                occurred_at=now,
            )
        refreshed = self.evaluate(session, account_id, now=now)
        return ConsumeResult(decision=decision, recorded=result.created, duplicate=not result.created, usage=refreshed.to_dict())

    def select_categories(
        self,
        session: Session,
        account_id: str,
        categories: Sequence[str],
        *,
        primary: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Replace the account's category selection within the plan's cap."""

        parsed = []
        for value in categories:
            try:
                item = Category(value)
            except ValueError as exc:
                raise BillingValidationError("account.unknown_category", f"Unknown category '{value}'.") from exc
            if item not in parsed:
                parsed.append(item)

        account = ensure_account(session, account_id, lock=True)
        view = self.evaluate(session, account_id)
        tier = view.plan.tier
        if Category.COACH in parsed:
            ensure_allowed(self._observe(view.check_feature(PlanFeature.DASHBOARD)), tier)
        # selecting N categories requires room for the N-th one; the coach dashboard is not capped
        standard = [item for item in parsed if item is not Category.COACH]
        if standard:
            ensure_allowed(self._observe(view.check_category(len(standard) - 1)), tier)

        values = [item.value for item in parsed]
        account.selected_categories = values
        if primary is not None:
            if primary not in values and values:
                raise BillingValidationError("account.invalid_primary", "The primary category must be one of the selection.")
            account.primary_category = primary
        elif values and account.primary_category not in values:
            account.primary_category = values[0]
        session.flush()
        return {
            "selectedCategories": values,
            "primaryCategory": account.primary_category,
            "availableCategories": [
                item.value
                for item in available_categories(view.plan, values, account.primary_category)
            ],
        }

    @staticmethod
    def _observe(decision: EntitlementDecision) -> EntitlementDecision:
        if not decision.allowed and decision.reason is not None:
            billing_metrics.observe_denial(decision.reason.value)
        return decision


entitlement_service = EntitlementService()

__all__ = ["ConsumeResult", "EntitlementService", "PlanGuardError", "entitlement_service"]
