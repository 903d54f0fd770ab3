"""Append-only usage ledger with period-scoped aggregation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.logging import get_logger
from core.plan_constants import UsageKind
from core.timeutils import utcnow
from models.usage import UsageEvent
from services.billing_errors import BillingValidationError

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class UsageSnapshot:
    operation_count: int
    metered_seconds: int

    @property
    def metered_minutes(self) -> float:
        return self.metered_seconds / 60.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operationCount": self.operation_count,
            "meteredMinutes": round(self.metered_minutes, 2),
        }


EMPTY_USAGE = UsageSnapshot(operation_count=0, metered_seconds=0)


@dataclass(frozen=True, slots=True)
class UsageRecordResult:
    event_id: Optional[str]
    created: bool


def find_usage_event(session: Session, account_id: str, kind: UsageKind, artifact_id: str) -> Optional[UsageEvent]:
    stmt = select(UsageEvent).where(
        UsageEvent.account_id == account_id,
        UsageEvent.kind == kind.value,
        UsageEvent.artifact_id == artifact_id,
    )
    return session.execute(stmt).scalars().first()


def record_usage(
    session: Session,
    *,
    account_id: str,
    kind: UsageKind,
    quantity: int = 1,
    artifact_id: Optional[str] = None,
    occurred_at: Optional[datetime] = None,
) -> UsageRecordResult:
    """Stage one usage event in ``session``; the caller owns the commit.

    Idempotent per ``(account_id, kind, artifact_id)``: a second call for the
    same artifact returns the existing row with ``created=False``.
    """

    if quantity < 0:
        raise BillingValidationError("usage.invalid_quantity", "Usage quantity must not be negative.")
    if artifact_id:
        existing = find_usage_event(session, account_id, kind, artifact_id)
        if existing is not None:
            logger.info(
                "Usage already recorded for artifact.",
                extra={"account_id": account_id, "artifact_id": artifact_id, "kind": kind.value},
            )
            return UsageRecordResult(event_id=str(existing.id), created=False)

    event = UsageEvent(
        account_id=account_id,
        kind=kind.value,
        quantity=int(quantity),
        artifact_id=artifact_id,
        occurred_at=occurred_at or utcnow(),
    )
    try:
        with session.begin_nested():
            session.add(event)
    except IntegrityError:
        # a concurrent writer recorded the same artifact first; only the savepoint is undone
        existing = find_usage_event(session, account_id, kind, artifact_id) if artifact_id else None
        if existing is None:
            raise
        return UsageRecordResult(event_id=str(existing.id), created=False)
    return UsageRecordResult(event_id=str(event.id), created=True)


def aggregate(session: Session, account_id: str, period_start: datetime, period_end: datetime) -> UsageSnapshot:
    """Sum usage for ``account_id`` in ``[period_start, period_end)``."""

    stmt = select(
        func.coalesce(
            func.sum(case((UsageEvent.kind == UsageKind.OPERATION.value, UsageEvent.quantity), else_=0)),
            0,
        ),
        func.coalesce(
            func.sum(case((UsageEvent.kind == UsageKind.METERED_DURATION.value, UsageEvent.quantity), else_=0)),
            0,
        ),
    ).where(
        UsageEvent.account_id == account_id,
        UsageEvent.occurred_at >= period_start,
        UsageEvent.occurred_at < period_end,
    )
    operations, seconds = session.execute(stmt).one()
    return UsageSnapshot(operation_count=int(operations or 0), metered_seconds=int(seconds or 0))


__all__ = [
    "EMPTY_USAGE",
    "UsageRecordResult",
    "UsageSnapshot",
    "aggregate",
    "find_usage_event",
    "record_usage",
]
