from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from core.plan_constants import PlanFeature, PlanTier
from services.billing_errors import BillingValidationError
from services.entitlement_resolver import DenialReason
from services.entitlement_service import EntitlementService
from services.plan_guard import PlanGuardError
from services.subscription_lifecycle import assign_paid_plan, atomic, cancel_subscription

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def _service(now: datetime = NOW) -> EntitlementService:
    return EntitlementService(clock=lambda: now, renewal_grace=timedelta(hours=72))


def _subscribe(session, tier: PlanTier) -> None:
    with atomic(session):
        assign_paid_plan(session, "acct-1", tier, source="test", now=NOW)


def test_feature_checks_follow_effective_plan(db_session) -> None:
    service = _service()
    decision = service.check_feature(db_session, "acct-1", PlanFeature.COMPARISON)
    assert decision.allowed is False
    assert decision.reason is DenialReason.FEATURE_REQUIRED

    _subscribe(db_session, PlanTier.PRO)

    assert service.check_feature(db_session, "acct-1", "comparison").allowed is True
    assert service.require_feature(db_session, "acct-1", PlanFeature.EXPORT).plan.tier is PlanTier.PRO
    with pytest.raises(PlanGuardError) as exc:
        service.require_feature(db_session, "acct-1", PlanFeature.DASHBOARD)
    assert exc.value.status_code == 403


def test_metered_minutes_run_out_before_operations(db_session) -> None:
    _subscribe(db_session, PlanTier.PRO)
    service = _service(NOW + timedelta(hours=1))
    for index in range(20):
        with atomic(db_session):
            service.consume_operation(db_session, "acct-1", artifact_id=f"clip-{index}", duration_seconds=300)

    with pytest.raises(PlanGuardError) as exc:
        with atomic(db_session):
            service.consume_operation(db_session, "acct-1", artifact_id="clip-20", duration_seconds=30)

    assert exc.value.reason is DenialReason.MINUTES_EXCEEDED
    assert exc.value.status_code == 429
    view = service.evaluate(db_session, "acct-1")
    assert view.usage.operation_count == 20
    assert view.usage.metered_minutes == 100


def test_describe_paid_subscription(db_session) -> None:
    _subscribe(db_session, PlanTier.COACH)

    payload = _service(NOW + timedelta(days=1)).describe(db_session, "acct-1")

    assert payload["subscription"]["planTier"] == "coach"
    assert payload["subscription"]["status"] == "active"
    assert payload["subscription"]["billingPeriod"] == "monthly"
    assert payload["subscription"]["lapsed"] is False
    assert payload["limits"]["operationsPerPeriod"] == -1
    assert payload["limits"]["delegateCap"] == 10
    assert "dashboard" in payload["limits"]["features"]


def test_describe_lapsed_subscription_reports_free_limits(db_session) -> None:
    _subscribe(db_session, PlanTier.CREATOR)
    with atomic(db_session):
        cancel_subscription(db_session, "acct-1", now=NOW)

    payload = _service(NOW + timedelta(days=45)).describe(db_session, "acct-1")

    assert payload["subscription"]["planTier"] == "free"
    assert payload["subscription"]["status"] == "canceled"
    assert payload["subscription"]["lapsed"] is True
    assert payload["limits"]["operationsPerPeriod"] == 2


def test_pro_plan_selects_all_standard_categories(db_session) -> None:
    _subscribe(db_session, PlanTier.PRO)

    with atomic(db_session):
        result = _service().select_categories(
            db_session,
            "acct-1",
            ["actors", "musicians", "creators", "influencers"],
            primary="creators",
        )

    assert result["selectedCategories"] == ["actors", "musicians", "creators", "influencers"]
    assert result["primaryCategory"] == "creators"


def test_coach_category_is_not_counted_against_cap(db_session) -> None:
    _subscribe(db_session, PlanTier.COACH)

    with atomic(db_session):
        result = _service().select_categories(
            db_session,
            "acct-1",
            ["coach", "actors", "musicians", "creators", "influencers"],
        )

    assert "coach" in result["selectedCategories"]
    assert len(result["selectedCategories"]) == 5


def test_primary_must_be_selected(db_session) -> None:
    with pytest.raises(BillingValidationError) as exc:
        with atomic(db_session):
            _service().select_categories(db_session, "acct-1", ["actors"], primary="musicians")
    assert exc.value.code == "account.invalid_primary"
