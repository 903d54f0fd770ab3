"""Server-held checkout orders used to resolve callbacks to accounts."""

from __future__ import annotations

import secrets
import string
import time
from datetime import datetime
from typing import Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.logging import get_logger
from core.plan_constants import BillingPeriod, PlanTier
from core.timeutils import ensure_utc, utcnow
from models.payments import PaymentOrder
from services.billing_errors import BillingValidationError, TransitionConflictError
from services.coupon_service import apply_pending_discount
from services.entitlement_resolver import has_paid_access
from services.plan_catalog import get_plan
from services.subscription_lifecycle import ensure_account, get_snapshot

logger = get_logger(__name__)

_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_reference(now: Optional[float] = None) -> str:
    millis = int((now if now is not None else time.time()) * 1000)
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(9))
    return f"ORD-{millis}-{suffix}"


def create_order(
    session: Session,
    *,
    account_id: str,
    tier: PlanTier,
    billing_period: BillingPeriod,
    now: Optional[datetime] = None,
) -> PaymentOrder:
    """Stage a pending order priced from the catalog and any pending coupon discount."""

    if not tier.is_paid:
        raise BillingValidationError("plan.unknown_tier", "The free tier cannot be purchased.")
    created_at = ensure_utc(now) or utcnow()
    current = get_snapshot(session, account_id)
    # the same rule assign_paid_plan enforces when the payment lands
    if current is not None and current.tier.is_paid and has_paid_access(current, created_at) and tier.rank < current.tier.rank:
        raise TransitionConflictError(
            "subscription.demotion_refused",
            "The account already holds a higher plan for the current period.",
            context={"accountId": account_id, "currentTier": current.tier.value, "requestedTier": tier.value},
        )
    account = ensure_account(session, account_id)
    amount = float(get_plan(tier).price_for(billing_period))
    amount = apply_pending_discount(amount, account.pending_discount_type, account.pending_discount_value)
    order = PaymentOrder(
        order_reference=generate_order_reference(),
        account_id=account_id,
        plan_tier=tier.value,
        billing_period=billing_period.value,
        amount=amount,
        status="pending",
        created_at=created_at,
    )
    session.add(order)
    session.flush()
    logger.info(
        "Created payment order.",
        extra={"account_id": account_id, "order_reference": order.order_reference, "tier": tier.value},
    )
    return order


def find_order(
    session: Session,
    *,
    gateway_order_number: Optional[str] = None,
    order_reference: Optional[str] = None,
    transaction_number: Optional[str] = None,
    uniq_id: Optional[str] = None,
    lock: bool = False,
) -> Optional[PaymentOrder]:
    """Look the order up by each identifier in turn. There is no "latest pending" fallback."""

    candidates: Sequence[Tuple[object, Optional[str]]] = (
        (PaymentOrder.gateway_order_number, gateway_order_number),
        (PaymentOrder.order_reference, order_reference),
        (PaymentOrder.transaction_number, transaction_number),
        (PaymentOrder.uniq_id, uniq_id),
    )
    for column, value in candidates:
        if not value:
            continue
        stmt = select(PaymentOrder).where(column == value)
        if lock:
            stmt = stmt.with_for_update()
        order = session.execute(stmt).scalars().first()
        if order is not None:
            return order
    return None


__all__ = ["create_order", "find_order", "generate_order_reference"]
