"""Subscription lifecycle state machine.

The only writer of ``Subscription`` rows. Every transition locks the account
and subscription rows, re-reads the current status under the lock, applies
the change together with the profile mirror and an audit event, and flushes.
Callers commit through :func:`atomic`, which also fans out change
notifications once the commit has succeeded.

States::

    none (no row, implicit free) -> active -> paused | canceled | expired
    paused/canceled -> active (resume), expired -> active (new purchase)
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.logging import get_logger
from core.plan_constants import BillingPeriod, PlanTier, STANDARD_CATEGORIES, SubscriptionStatus
from core.timeutils import add_months, calendar_month_window, ensure_utc, utcnow
from models.account import Account
from models.subscription import Subscription, SubscriptionEvent
from services import subscription_notifier
from services.billing_errors import (
    BillingValidationError,
    InvariantViolationError,
    TransitionConflictError,
)
from services.entitlement_resolver import (
    SubscriptionSnapshot,
    access_ends_at,
    can_consume_minutes,
    can_perform_operation,
    current_period,
    has_paid_access,
)
from services.plan_catalog import base_category_cap, get_plan
from services.usage_ledger import UsageSnapshot, aggregate

logger = get_logger(__name__)

_PENDING_KEY = "billing_transitions"


@dataclass(frozen=True, slots=True)
class TransitionResult:
    account_id: str
    transition: str
    changed: bool
    from_status: Optional[str]
    to_status: Optional[str]
    from_tier: Optional[str]
    to_tier: Optional[str]
    source: str
    reason: Optional[str] = None
    subscription: Optional[SubscriptionSnapshot] = None

    def to_dict(self) -> Dict[str, Any]:
        snapshot = self.subscription
        return {
            "accountId": self.account_id,
            "transition": self.transition,
            "changed": self.changed,
            "fromStatus": self.from_status,
            "toStatus": self.to_status,
            "fromTier": self.from_tier,
            "toTier": self.to_tier,
            "source": self.source,
            "reason": self.reason,
            "periodEnd": snapshot.period_end.isoformat() if snapshot and snapshot.period_end else None,
        }


@contextmanager
def atomic(session: Session) -> Iterator[Session]:
    """Commit on success, roll back everything on failure, then publish changes."""

    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        session.info.pop(_PENDING_KEY, None)
        raise
    pending: List[TransitionResult] = session.info.pop(_PENDING_KEY, [])
    for result in pending:
        subscription_notifier.publish(result)


def _queue_change(session: Session, result: TransitionResult) -> TransitionResult:
    if result.changed:
        session.info.setdefault(_PENDING_KEY, []).append(result)
    return result


# ----------------------------------------------------------------------
# Row access
# ----------------------------------------------------------------------


def _select_subscriptions(session: Session, account_id: str, *, lock: bool) -> Optional[Subscription]:
    stmt = select(Subscription).where(Subscription.account_id == account_id)
    if lock:
        stmt = stmt.with_for_update()
    rows = session.execute(stmt).scalars().all()
    if len(rows) > 1:
        logger.error(
            "Found %d authoritative subscription rows for one account.",
            len(rows),
            extra={"account_id": account_id},
        )
        raise InvariantViolationError(
            "subscription.duplicate_authoritative_row",
            "Multiple subscription rows exist for this account.",
            context={"accountId": account_id, "rows": len(rows)},
        )
    return rows[0] if rows else None


def get_subscription(session: Session, account_id: str) -> Optional[Subscription]:
    """Unlocked read of the authoritative row (``None`` means implicit free)."""
    return _select_subscriptions(session, account_id, lock=False)


def get_snapshot(session: Session, account_id: str) -> Optional[SubscriptionSnapshot]:
    row = get_subscription(session, account_id)
    return SubscriptionSnapshot.from_row(row) if row is not None else None


def ensure_account(session: Session, account_id: str, *, lock: bool = False, email: Optional[str] = None) -> Account:
    stmt = select(Account).where(Account.id == account_id)
    if lock:
        stmt = stmt.with_for_update()
    account = session.execute(stmt).scalars().first()
    if account is None:
        account = Account(id=account_id, email=email, plan_tier=PlanTier.FREE.value, selected_categories=[])
        session.add(account)
        session.flush()
    elif email and not account.email:
        account.email = email
    return account


def _lock(session: Session, account_id: str) -> tuple[Account, Optional[Subscription]]:
    account = ensure_account(session, account_id, lock=True)
    return account, _select_subscriptions(session, account_id, lock=True)


def _flush(session: Session, account_id: str) -> None:
    try:
        session.flush()
    except IntegrityError as exc:
        # a concurrent first-time transition inserted the row before us
        raise TransitionConflictError(
            "subscription.transition_conflict",
            "Another transition for this account committed first.",
            context={"accountId": account_id},
        ) from exc


def _sync_mirror(account: Account, row: Subscription) -> None:
    account.plan_tier = row.plan_tier
    account.subscription_status = row.status
    account.subscription_period_end = row.period_end


def _open_categories(account: Account, tier: PlanTier) -> None:
    plan = get_plan(tier)
    existing = list(account.selected_categories or [])
    if base_category_cap(plan) >= len(STANDARD_CATEGORIES):
        account.selected_categories = [item.value for item in STANDARD_CATEGORIES]
        account.primary_category = account.primary_category or STANDARD_CATEGORIES[0].value
    elif not existing and account.primary_category:
        account.selected_categories = [account.primary_category]


def _log_event(
    session: Session,
    *,
    account_id: str,
    event_type: str,
    source: str,
    before: Optional[SubscriptionSnapshot],
    row: Subscription,
    context: Optional[Dict[str, Any]] = None,
) -> None:
    session.add(
        SubscriptionEvent(
            account_id=account_id,
            event_type=event_type,
            source=source,
            from_status=before.status.value if before else None,
            to_status=row.status,
            from_tier=before.tier.value if before else PlanTier.FREE.value,
            to_tier=row.plan_tier,
            context=context or None,
        )
    )


def _result(
    transition: str,
    account_id: str,
    source: str,
    before: Optional[SubscriptionSnapshot],
    row: Optional[Subscription],
    *,
    changed: bool,
    reason: Optional[str] = None,
) -> TransitionResult:
    after = SubscriptionSnapshot.from_row(row) if row is not None else None
    return TransitionResult(
        account_id=account_id,
        transition=transition,
        changed=changed,
        from_status=before.status.value if before else None,
        to_status=after.status.value if after else None,
        from_tier=before.tier.value if before else PlanTier.FREE.value,
        to_tier=after.tier.value if after else PlanTier.FREE.value,
        source=source,
        reason=reason,
        subscription=after,
    )


# ----------------------------------------------------------------------
# Transitions
# ----------------------------------------------------------------------


def assign_paid_plan(
    session: Session,
    account_id: str,
    tier: PlanTier,
    *,
    source: str,
    now: Optional[datetime] = None,
    billing_period: BillingPeriod = BillingPeriod.MONTHLY,
    period_days: Optional[int] = None,
    auto_renew: bool = True,
    bonus_operations: int = 0,
    bonus_categories: int = 0,
    recurring_id: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
) -> TransitionResult:
    """Activate ``tier`` with a fresh period anchored at ``now``.

    Covers purchase (none/expired -> active), upgrade (active -> active with a
    higher tier) and coupon trial grants. A lower tier than the one the
    account currently holds with live access is refused.
    """

    if not isinstance(tier, PlanTier) or not tier.is_paid:
        raise BillingValidationError("plan.unknown_tier", f"'{tier}' is not a purchasable plan.")
    if bonus_operations < 0 or bonus_categories < 0:
        raise BillingValidationError("subscription.invalid_bonus", "Bonus grants must not be negative.")
    now = ensure_utc(now) or utcnow()
    account, row = _lock(session, account_id)
    before = SubscriptionSnapshot.from_row(row) if row is not None else None

    if before is not None and before.tier.is_paid and has_paid_access(before, now):
        if tier.rank < before.tier.rank:
            raise TransitionConflictError(
                "subscription.demotion_refused",
                "The account already holds a higher plan for the current period.",
                context={"accountId": account_id, "currentTier": before.tier.value, "requestedTier": tier.value},
            )

    if row is None:
        row = Subscription(account_id=account_id)
        session.add(row)
    period_end = now + timedelta(days=period_days) if period_days else add_months(now, billing_period.months)
    row.plan_tier = tier.value
    row.status = SubscriptionStatus.ACTIVE.value
    row.billing_period = billing_period.value
    row.period_start = now
    row.period_end = period_end
    row.plan_assigned_at = now
    row.auto_renew = auto_renew
    row.canceled_at = None
    row.paused_at = None
    row.bonus_operations = bonus_operations
    row.bonus_categories = bonus_categories
    if recurring_id:
        row.gateway_recurring_id = recurring_id

    _sync_mirror(account, row)
    _open_categories(account, tier)
    account.pending_discount_type = None
    account.pending_discount_value = None
    transition = "upgrade" if before is not None and before.status is SubscriptionStatus.ACTIVE and before.tier.is_paid else "activate"
    _log_event(session, account_id=account_id, event_type=transition, source=source, before=before, row=row, context=context)
    _flush(session, account_id)
    logger.info(
        "Assigned plan %s to account.",
        tier.value,
        extra={"account_id": account_id, "transition": transition, "source": source},
    )
    return _queue_change(session, _result(transition, account_id, source, before, row, changed=True))


def renew_subscription(
    session: Session,
    account_id: str,
    *,
    source: str,
    now: Optional[datetime] = None,
    recurring_id: Optional[str] = None,
) -> TransitionResult:
    """Extend an auto-renewing subscription by one billing interval.

    The usage window stays anchored to the original plan assignment.
    """

    now = ensure_utc(now) or utcnow()
    account, row = _lock(session, account_id)
    if row is None:
        raise TransitionConflictError("subscription.not_found", "There is no subscription to renew.")
    before = SubscriptionSnapshot.from_row(row)
    if before.status is not SubscriptionStatus.ACTIVE or not before.tier.is_paid:
        raise TransitionConflictError(
            "subscription.transition_conflict",
            f"Cannot renew a subscription in status '{before.status.value}'.",
            context={"accountId": account_id},
        )
    period = before.billing_period or BillingPeriod.MONTHLY
    start = before.period_end if before.period_end and before.period_end > now else now
    row.period_start = start
    row.period_end = add_months(start, period.months)
    if recurring_id:
        row.gateway_recurring_id = recurring_id
    _sync_mirror(account, row)
    _log_event(session, account_id=account_id, event_type="renew", source=source, before=before, row=row)
    _flush(session, account_id)
    return _queue_change(session, _result("renew", account_id, source, before, row, changed=True))


def cancel_subscription(
    session: Session,
    account_id: str,
    *,
    source: str = "user",
    now: Optional[datetime] = None,
) -> TransitionResult:
    """active/paused -> canceled. Access continues until ``period_end``."""

    now = ensure_utc(now) or utcnow()
    account, row = _lock(session, account_id)
    if row is None or not (SubscriptionSnapshot.from_row(row).tier.is_paid):
        raise BillingValidationError("subscription.not_found", "There is no paid subscription to cancel.")
    before = SubscriptionSnapshot.from_row(row)
    if before.status is SubscriptionStatus.CANCELED:
        return _result("cancel", account_id, source, before, row, changed=False, reason="already_canceled")
    if before.status is SubscriptionStatus.EXPIRED:
        raise TransitionConflictError(
            "subscription.transition_conflict",
            "The subscription has already expired.",
            context={"accountId": account_id},
        )
    row.status = SubscriptionStatus.CANCELED.value
    row.auto_renew = False
    row.canceled_at = now
    _sync_mirror(account, row)
    _log_event(session, account_id=account_id, event_type="cancel", source=source, before=before, row=row)
    _flush(session, account_id)
    logger.info("Subscription canceled.", extra={"account_id": account_id, "source": source})
    return _queue_change(session, _result("cancel", account_id, source, before, row, changed=True))


def pause_subscription(
    session: Session,
    account_id: str,
    *,
    source: str = "user",
    now: Optional[datetime] = None,
) -> TransitionResult:
    now = ensure_utc(now) or utcnow()
    account, row = _lock(session, account_id)
    if row is None:
        raise BillingValidationError("subscription.not_found", "There is no subscription to pause.")
    before = SubscriptionSnapshot.from_row(row)
    if before.status is SubscriptionStatus.PAUSED:
        return _result("pause", account_id, source, before, row, changed=False, reason="already_paused")
    if before.status is not SubscriptionStatus.ACTIVE or not before.tier.is_paid:
        raise TransitionConflictError(
            "subscription.transition_conflict",
            f"Cannot pause a subscription in status '{before.status.value}'.",
            context={"accountId": account_id},
        )
    row.status = SubscriptionStatus.PAUSED.value
    row.auto_renew = False
    row.paused_at = now
    _sync_mirror(account, row)
    _log_event(session, account_id=account_id, event_type="pause", source=source, before=before, row=row)
    _flush(session, account_id)
    return _queue_change(session, _result("pause", account_id, source, before, row, changed=True))


def resume_subscription(
    session: Session,
    account_id: str,
    *,
    source: str = "user",
    now: Optional[datetime] = None,
) -> TransitionResult:
    """paused, or canceled with time left -> active with auto-renew back on."""

    now = ensure_utc(now) or utcnow()
    account, row = _lock(session, account_id)
    if row is None:
        raise BillingValidationError("subscription.not_found", "There is no subscription to resume.")
    before = SubscriptionSnapshot.from_row(row)
    if before.status is SubscriptionStatus.ACTIVE:
        return _result("resume", account_id, source, before, row, changed=False, reason="already_active")
    if before.status is SubscriptionStatus.EXPIRED or not has_paid_access(before, now):
        raise TransitionConflictError(
            "subscription.transition_conflict",
            "The subscription period has ended; purchase a plan instead.",
            context={"accountId": account_id},
        )
    row.status = SubscriptionStatus.ACTIVE.value
    row.auto_renew = True
    row.canceled_at = None
    row.paused_at = None
    _sync_mirror(account, row)
    _log_event(session, account_id=account_id, event_type="resume", source=source, before=before, row=row)
    _flush(session, account_id)
    return _queue_change(session, _result("resume", account_id, source, before, row, changed=True))


def expiry_reason(
    snapshot: SubscriptionSnapshot,
    usage: Optional[UsageSnapshot],
    now: datetime,
    *,
    renewal_grace: timedelta = timedelta(0),
) -> Optional[str]:
    """Why ``snapshot`` should expire now, or ``None`` if it should not."""

    if snapshot.status is SubscriptionStatus.EXPIRED or not snapshot.tier.is_paid:
        return None
    ends_at = access_ends_at(snapshot, renewal_grace)
    if ends_at is not None and ensure_utc(now) >= ends_at:
        return "period_elapsed"
    non_renewing = snapshot.status is not SubscriptionStatus.ACTIVE or not snapshot.auto_renew
    if non_renewing and usage is not None:
        plan = get_plan(snapshot.tier)
        if not can_perform_operation(plan, usage.operation_count, snapshot.bonus_operations):
            return "quota_exhausted"
        if plan.limits.meters_duration and not can_consume_minutes(plan, usage.metered_minutes):
            return "quota_exhausted"
    return None


def expire_subscription(
    session: Session,
    account_id: str,
    *,
    source: str = "sweeper",
    now: Optional[datetime] = None,
    renewal_grace: timedelta = timedelta(0),
) -> TransitionResult:
    """Move a lapsed subscription to ``expired`` on the free tier.

    Eligibility is re-evaluated against the locked row, so a concurrent resume
    or purchase that committed first turns this into a no-op.
    """

    now = ensure_utc(now) or utcnow()
    account, row = _lock(session, account_id)
    if row is None:
        return _result("expire", account_id, source, None, None, changed=False, reason="no_subscription")
    before = SubscriptionSnapshot.from_row(row)
    period_start, period_end = current_period(before, now)
    usage = aggregate(session, account_id, period_start, period_end)
    reason = expiry_reason(before, usage, now, renewal_grace=renewal_grace)
    if reason is None:
        return _result("expire", account_id, source, before, row, changed=False, reason="not_eligible")

    row.plan_tier = PlanTier.FREE.value
    row.status = SubscriptionStatus.EXPIRED.value
    row.auto_renew = False
    row.period_start = now
    row.period_end = None
    row.plan_assigned_at = now
    row.bonus_operations = 0
    row.bonus_categories = 0
    _sync_mirror(account, row)
    if account.primary_category:
        account.selected_categories = [account.primary_category]
    _log_event(
        session,
        account_id=account_id,
        event_type="expire",
        source=source,
        before=before,
        row=row,
        context={"reason": reason},
    )
    _flush(session, account_id)
    logger.info(
        "Subscription expired to free tier.",
        extra={"account_id": account_id, "reason": reason, "source": source},
    )
    return _queue_change(session, _result("expire", account_id, source, before, row, changed=True, reason=reason))


def grant_bonus(
    session: Session,
    account_id: str,
    *,
    bonus_operations: int = 0,
    bonus_categories: int = 0,
    source: str = "coupon",
    now: Optional[datetime] = None,
) -> TransitionResult:
    """Add coupon quota to the account; creates a free-tier row when none exists."""

    if bonus_operations < 0 or bonus_categories < 0:
        raise BillingValidationError("subscription.invalid_bonus", "Bonus grants must not be negative.")
    now = ensure_utc(now) or utcnow()
    account, row = _lock(session, account_id)
    before = SubscriptionSnapshot.from_row(row) if row is not None else None
    if row is None:
        month_start, _ = calendar_month_window(now)
        row = Subscription(
            account_id=account_id,
            plan_tier=PlanTier.FREE.value,
            status=SubscriptionStatus.ACTIVE.value,
            period_start=month_start,
            period_end=None,
            plan_assigned_at=None,
            auto_renew=False,
            bonus_operations=0,
            bonus_categories=0,
        )
        session.add(row)
    row.bonus_operations = int(row.bonus_operations or 0) + bonus_operations
    row.bonus_categories = int(row.bonus_categories or 0) + bonus_categories
    _sync_mirror(account, row)
    _log_event(
        session,
        account_id=account_id,
        event_type="bonus",
        source=source,
        before=before,
        row=row,
        context={"bonusOperations": bonus_operations, "bonusCategories": bonus_categories},
    )
    _flush(session, account_id)
    return _queue_change(session, _result("bonus", account_id, source, before, row, changed=True))


__all__ = [
    "TransitionResult",
    "assign_paid_plan",
    "atomic",
    "cancel_subscription",
    "ensure_account",
    "expire_subscription",
    "expiry_reason",
    "get_snapshot",
    "get_subscription",
    "grant_bonus",
    "pause_subscription",
    "renew_subscription",
    "resume_subscription",
]
