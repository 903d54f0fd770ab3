from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from core.plan_constants import BillingPeriod, PlanTier, SubscriptionStatus
from models.account import Account
from models.coupon import Coupon, CouponRedemption
from services.billing_errors import BillingValidationError
from services.coupon_service import apply_pending_discount, normalize_code, redeem_coupon
from services.entitlement_service import EntitlementService
from services.downgrade_sweeper import run_sweep
from services.subscription_lifecycle import assign_paid_plan, atomic, get_snapshot, get_subscription

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def _coupon(session, code: str, **fields) -> Coupon:
    coupon = Coupon(code=code, **fields)
    session.add(coupon)
    session.commit()
    return coupon


def test_normalize_code_trims_and_upper_cases() -> None:
    assert normalize_code("  spring10 ") == "SPRING10"
    assert normalize_code(None) == ""


def test_bonus_coupon_raises_operation_limit(db_session) -> None:
    _coupon(db_session, "BONUS10", bonus_operations=10)
    _coupon(db_session, "BONUS5", bonus_operations=5)

    assert redeem_coupon(db_session, "bonus10", "acct-1", now=NOW).status == "redeemed"
    assert redeem_coupon(db_session, "BONUS5", "acct-1", now=NOW).status == "redeemed"

    view = EntitlementService(clock=lambda: NOW).evaluate(db_session, "acct-1")
    assert view.operation_limit == 2 + 10 + 5


def test_second_redemption_counts_once(db_session) -> None:
    coupon = _coupon(db_session, "ONCE", bonus_operations=3, max_redemptions=5)

    first = redeem_coupon(db_session, "ONCE", "acct-1", now=NOW)
    second = redeem_coupon(db_session, "once", "acct-1", now=NOW)

    assert first.status == "redeemed"
    assert second.status == "already_redeemed"
    assert second.duplicate
    db_session.refresh(coupon)
    assert coupon.redemption_count == 1
    assert db_session.query(CouponRedemption).count() == 1
    assert get_snapshot(db_session, "acct-1").bonus_operations == 3


def test_unknown_code_is_not_found(db_session) -> None:
    with pytest.raises(BillingValidationError) as exc:
        redeem_coupon(db_session, "NOPE", "acct-1", now=NOW)
    assert exc.value.code == "coupon.not_found"
    assert exc.value.status_code == 404


def test_blank_code_is_rejected(db_session) -> None:
    with pytest.raises(BillingValidationError) as exc:
        redeem_coupon(db_session, "   ", "acct-1", now=NOW)
    assert exc.value.code == "coupon.code_required"


@pytest.mark.parametrize(
    "fields, code",
    [
        ({"is_active": False}, "coupon.inactive"),
        ({"expires_at": NOW - timedelta(seconds=1)}, "coupon.expired"),
        ({"max_redemptions": 1, "redemption_count": 1}, "coupon.exhausted"),
    ],
)
def test_unusable_coupons_are_rejected_without_side_effects(db_session, fields, code) -> None:
    _coupon(db_session, "PROMO", bonus_operations=4, **fields)

    with pytest.raises(BillingValidationError) as exc:
        redeem_coupon(db_session, "PROMO", "acct-1", now=NOW)

    assert exc.value.code == code
    assert db_session.query(CouponRedemption).count() == 0
    assert get_snapshot(db_session, "acct-1") is None


def test_trial_coupon_grants_non_renewing_plan(db_session) -> None:
    _coupon(db_session, "TRYPRO", trial_tier="pro", trial_days=14)

    result = redeem_coupon(db_session, "TRYPRO", "acct-1", now=NOW)

    assert result.effect == "trial"
    assert result.detail["trialApplied"] is True
    snapshot = get_snapshot(db_session, "acct-1")
    assert snapshot.tier is PlanTier.PRO
    assert snapshot.auto_renew is False
    assert snapshot.period_end == NOW + timedelta(days=14)


def test_trial_coupon_does_not_demote_a_higher_plan(db_session) -> None:
    _coupon(db_session, "TRYPRO", trial_tier="pro")
    _coupon(db_session, "TRYCREATOR", trial_tier="creator", bonus_operations=2)
    redeem_coupon(db_session, "TRYPRO", "acct-1", now=NOW)

    result = redeem_coupon(db_session, "TRYCREATOR", "acct-1", now=NOW + timedelta(days=1))

    assert result.detail == {"trialApplied": False, "currentTier": "pro"}
    snapshot = get_snapshot(db_session, "acct-1")
    assert snapshot.tier is PlanTier.PRO
    assert snapshot.bonus_operations == 2


def test_trial_coupon_keeps_a_paid_lower_plan_intact(db_session, session_factory) -> None:
    with atomic(db_session):
        assign_paid_plan(
            db_session,
            "acct-1",
            PlanTier.CREATOR,
            source="test",
            now=NOW,
            billing_period=BillingPeriod.YEARLY,
            recurring_id="R-1",
        )
    _coupon(db_session, "TRYPRO", trial_tier="pro", trial_days=30)

    result = redeem_coupon(db_session, "TRYPRO", "acct-1", now=NOW + timedelta(days=1))

    assert result.detail == {"trialApplied": False, "currentTier": "creator"}
    snapshot = get_snapshot(db_session, "acct-1")
    assert snapshot.tier is PlanTier.CREATOR
    assert snapshot.auto_renew is True
    assert snapshot.period_end == datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

    run_sweep(session_factory, now=NOW + timedelta(days=40))

    db_session.expire_all()
    snapshot = get_snapshot(db_session, "acct-1")
    assert snapshot.status is SubscriptionStatus.ACTIVE
    assert snapshot.tier is PlanTier.CREATOR
    assert get_subscription(db_session, "acct-1").gateway_recurring_id == "R-1"

def test_discount_coupon_stores_pending_marker(db_session) -> None:
    _coupon(db_session, "HALF", discount_type="percent", discount_value=50)

    result = redeem_coupon(db_session, "HALF", "acct-1", now=NOW)

    assert result.effect == "discount"
    account = db_session.get(Account, "acct-1")
    assert account.pending_discount_type == "percent"
    assert account.pending_discount_value == 50.0


def test_apply_pending_discount() -> None:
    assert apply_pending_discount(99.0, None, None) == 99.0
    assert apply_pending_discount(99.0, "percent", 50) == 50.0
    assert apply_pending_discount(99.0, "percent", 150) == 0.0
    assert apply_pending_discount(49.0, "fixed_amount", 20) == 29.0
    assert apply_pending_discount(49.0, "fixed_amount", 80) == 0.0
