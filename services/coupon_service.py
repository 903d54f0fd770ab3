"""Coupon validation and one-time redemption."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.config import load_billing_settings
from core.logging import get_logger
from core.plan_constants import BillingPeriod, parse_plan_tier
from core.timeutils import ensure_utc, utcnow
from models.coupon import Coupon, CouponRedemption
from services import billing_metrics
from services.billing_errors import BillingValidationError
from services.entitlement_resolver import has_paid_access
from services.subscription_lifecycle import (
    assign_paid_plan,
    atomic,
    ensure_account,
    get_snapshot,
    grant_bonus,
)

logger = get_logger(__name__)

DEFAULT_TRIAL_DAYS = 30
_DISCOUNT_TYPES = frozenset({"percent", "fixed_amount"})


@dataclass(frozen=True)
class RedemptionResult:
    code: str
    status: str
    effect: Optional[str] = None
    detail: Optional[Dict[str, Any]] = None

    @property
    def duplicate(self) -> bool:
        return self.status == "already_redeemed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "status": self.status,
            "effect": self.effect,
            "detail": self.detail or {},
        }


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def _coupon_effect(coupon: Coupon) -> str:
    if coupon.trial_tier:
        return "trial"
    if coupon.bonus_operations or coupon.bonus_categories:
        return "bonus"
    if coupon.discount_type:
        return "discount"
    return "none"


def _validate(coupon: Optional[Coupon], code: str, now: datetime) -> Coupon:
    if coupon is None:
        raise BillingValidationError("coupon.not_found", f"Coupon '{code}' does not exist.", status_code=404)
    if not coupon.is_active:
        raise BillingValidationError("coupon.inactive", "This coupon is no longer active.")
    expires_at = ensure_utc(coupon.expires_at)
    if expires_at is not None and now >= expires_at:
        raise BillingValidationError("coupon.expired", "This coupon has expired.")
    if coupon.max_redemptions is not None and (coupon.redemption_count or 0) >= coupon.max_redemptions:
        raise BillingValidationError("coupon.exhausted", "This coupon has reached its redemption limit.")
    return coupon


def _already_redeemed(session: Session, code: str, account_id: str) -> bool:
    stmt = select(CouponRedemption.id).where(
        CouponRedemption.coupon_code == code,
        CouponRedemption.account_id == account_id,
    )
    return session.execute(stmt).first() is not None


def _apply_effect(session: Session, coupon: Coupon, account_id: str, now: datetime) -> Dict[str, Any]:
    effect = _coupon_effect(coupon)
    if effect == "trial":
        tier = parse_plan_tier(coupon.trial_tier)
        if tier is None or not tier.is_paid:
            raise BillingValidationError("coupon.invalid_trial_tier", f"Coupon trial tier '{coupon.trial_tier}' is not valid.")
        current = get_snapshot(session, account_id)
        grace = timedelta(hours=load_billing_settings().renewal_grace_hours)
        if current is not None and current.tier.is_paid and has_paid_access(current, now, grace):
            # a trial never replaces a live paid period; only the bonus part applies
            if coupon.bonus_operations or coupon.bonus_categories:
                grant_bonus(
                    session,
                    account_id,
                    bonus_operations=coupon.bonus_operations or 0,
                    bonus_categories=coupon.bonus_categories or 0,
                    now=now,
                )
            return {"trialApplied": False, "currentTier": current.tier.value}
        result = assign_paid_plan(
            session,
            account_id,
            tier,
            source="coupon",
            now=now,
            billing_period=BillingPeriod.MONTHLY,
            period_days=coupon.trial_days or DEFAULT_TRIAL_DAYS,
            auto_renew=False,
            bonus_operations=coupon.bonus_operations or 0,
            bonus_categories=coupon.bonus_categories or 0,
            context={"coupon": coupon.code},
        )
        return {"trialApplied": True, "tier": tier.value, "periodEnd": result.to_dict()["periodEnd"]}
    if effect == "bonus":
        grant_bonus(
            session,
            account_id,
            bonus_operations=coupon.bonus_operations or 0,
            bonus_categories=coupon.bonus_categories or 0,
            now=now,
        )
        return {"bonusOperations": coupon.bonus_operations or 0, "bonusCategories": coupon.bonus_categories or 0}
    if effect == "discount":
        if coupon.discount_type not in _DISCOUNT_TYPES:
            raise BillingValidationError("coupon.invalid_discount", "Coupon discount type is not supported.")
        account = ensure_account(session, account_id, lock=True)
        account.pending_discount_type = coupon.discount_type
        account.pending_discount_value = float(coupon.discount_value or 0)
        return {"discountType": coupon.discount_type, "discountValue": account.pending_discount_value}
    return {}


def redeem_coupon(
    session: Session,
    code: str,
    account_id: str,
    *,
    now: Optional[datetime] = None,
) -> RedemptionResult:
    """Validate and redeem ``code`` for ``account_id`` in one transaction.

    The ``(coupon_code, account_id)`` unique pair is the only "already used"
    check that counts: a second redemption, sequential or concurrent, comes
    back as ``already_redeemed`` without applying the effect again.
    """

    normalized = normalize_code(code)
    if not normalized:
        raise BillingValidationError("coupon.code_required", "A coupon code is required.")
    now = ensure_utc(now) or utcnow()

    try:
        with atomic(session):
            if _already_redeemed(session, normalized, account_id):
                billing_metrics.observe_coupon("duplicate")
                return RedemptionResult(code=normalized, status="already_redeemed")

            stmt = select(Coupon).where(Coupon.code == normalized).with_for_update()
            coupon = _validate(session.execute(stmt).scalars().first(), normalized, now)
            effect = _coupon_effect(coupon)
            session.add(CouponRedemption(coupon_code=normalized, account_id=account_id, effect=effect, redeemed_at=now))
            session.flush()
            coupon.redemption_count = (coupon.redemption_count or 0) + 1
            detail = _apply_effect(session, coupon, account_id, now)
    except IntegrityError:
        # lost a race with an identical redemption; atomic() already rolled back
        logger.info("Coupon redemption raced with a duplicate.", extra={"account_id": account_id, "coupon": normalized})
        billing_metrics.observe_coupon("duplicate")
        return RedemptionResult(code=normalized, status="already_redeemed")
    except BillingValidationError as exc:
        billing_metrics.observe_coupon(exc.code)
        raise

    billing_metrics.observe_coupon("redeemed")
    logger.info(
        "Coupon redeemed.",
        extra={"account_id": account_id, "coupon": normalized, "effect": effect},
    )
    return RedemptionResult(code=normalized, status="redeemed", effect=effect, detail=detail)


def apply_pending_discount(amount: float, discount_type: Optional[str], discount_value: Optional[float]) -> float:
    """Price after a coupon discount marker, never below zero."""

    if not discount_type or discount_value is None:
        return amount
    if discount_type == "percent":
        pct = min(max(float(discount_value), 0.0), 100.0)
        amount = round(amount * (1 - pct / 100.0))
    elif discount_type == "fixed_amount":
        amount = round(amount - min(amount, max(0.0, float(discount_value))))
    return max(0.0, float(amount))


__all__ = ["RedemptionResult", "apply_pending_discount", "normalize_code", "redeem_coupon"]
