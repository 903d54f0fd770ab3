"""Periodic pass that expires lapsed subscriptions back to the free tier."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.config import load_billing_settings
from core.logging import get_logger
from core.plan_constants import PlanTier, SubscriptionStatus
from core.timeutils import ensure_utc, utcnow
from models.subscription import Subscription
from services import billing_metrics
from services.billing_errors import BillingError
from services.subscription_lifecycle import atomic, expire_subscription

logger = get_logger(__name__)


@dataclass
class SweepResult:
    examined: int = 0
    expired: int = 0
    account_ids: List[str] = field(default_factory=list)
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "examined": self.examined,
            "expired": self.expired,
            "accountIds": list(self.account_ids),
            "errors": self.errors,
        }


def find_candidates(session: Session, now: datetime, *, limit: int, after: Optional[str] = None) -> List[str]:
    """One page of accounts whose paid subscription has ended, or that no longer auto-renew.

    The second group is only a candidate set; :func:`expire_subscription`
    decides under lock whether its quota is actually exhausted. Pages are
    keyed on ``account_id`` so callers can walk every candidate with ``after``.
    """

    stmt = select(Subscription.account_id).where(
        Subscription.status != SubscriptionStatus.EXPIRED.value,
        Subscription.plan_tier != PlanTier.FREE.value,
        or_(
            and_(Subscription.period_end.is_not(None), Subscription.period_end <= now),
            Subscription.status.in_((SubscriptionStatus.CANCELED.value, SubscriptionStatus.PAUSED.value)),
            Subscription.auto_renew.is_(False),
        ),
    )
    if after is not None:
        stmt = stmt.where(Subscription.account_id > after)
    stmt = stmt.order_by(Subscription.account_id.asc()).limit(limit)
    return [str(account_id) for account_id in session.execute(stmt).scalars().all()]


def run_sweep(
    session_factory: Callable[[], Session],
    *,
    now: Optional[datetime] = None,
    batch_size: Optional[int] = None,
    renewal_grace: Optional[timedelta] = None,
) -> SweepResult:
    """Expire every eligible subscription, one transaction per account.

    Candidates are read in pages of ``batch_size`` until none are left, so a
    large set of non-renewing rows cannot starve the rest. Safe to run
    concurrently with itself and with resume/purchase requests: each expiry
    re-checks eligibility against the locked row.
    """

    settings = load_billing_settings()
    now = ensure_utc(now) or utcnow()
    limit = batch_size or settings.sweeper_batch_size
    grace = renewal_grace if renewal_grace is not None else timedelta(hours=settings.renewal_grace_hours)

    result = SweepResult()
    after: Optional[str] = None
    while True:
        session = session_factory()
        try:
            candidates = find_candidates(session, now, limit=limit, after=after)
        finally:
            session.close()
        if not candidates:
            break
        result.examined += len(candidates)
        for account_id in candidates:
            _expire_one(session_factory, account_id, now, grace, result)
        if len(candidates) < limit:
            break
        after = candidates[-1]

    billing_metrics.observe_sweep(result.expired, time.time())
    logger.info(
        "Downgrade sweep finished: examined=%d expired=%d errors=%d",
        result.examined,
        result.expired,
        result.errors,
    )
    return result


def _expire_one(
    session_factory: Callable[[], Session],
    account_id: str,
    now: datetime,
    grace: timedelta,
    result: SweepResult,
) -> None:
    session = session_factory()
    try:
        with atomic(session):
            outcome = expire_subscription(session, account_id, source="sweeper", now=now, renewal_grace=grace)
    except (BillingError, SQLAlchemyError) as exc:
        result.errors += 1
        logger.error("Sweeper could not expire account: %s", exc, extra={"account_id": account_id})
        return
    finally:
        session.close()
    if outcome.changed:
        result.expired += 1
        result.account_ids.append(account_id)


__all__ = ["SweepResult", "find_candidates", "run_sweep"]
