from __future__ import annotations

import pytest
from fastapi import HTTPException

from core.plan_constants import PlanTier
from services.billing_errors import InvariantViolationError, TransitionConflictError
from services.entitlement_resolver import DenialReason, EntitlementDecision
from services.plan_guard import PlanGuardError, ensure_allowed
from web.quota_guard import translate_billing_errors


def test_ensure_allowed_passes_through_allowed_decision() -> None:
    decision = EntitlementDecision(allowed=True, limit=10, used=1, remaining=9)
    assert ensure_allowed(decision, PlanTier.PRO) is decision


def test_quota_denial_maps_to_429_problem_detail() -> None:
    decision = EntitlementDecision(allowed=False, reason=DenialReason.QUOTA_EXCEEDED, limit=2, used=2, remaining=0)
    with pytest.raises(PlanGuardError) as exc:
        ensure_allowed(decision, PlanTier.FREE)
    detail = exc.value.to_detail()
    assert exc.value.status_code == 429
    assert detail["code"] == "plan.quota_exceeded"
    assert detail["reason"] == "quota_exceeded"
    assert detail["planTier"] == "free"
    assert detail["quota"] == {"limit": 2, "used": 2, "remaining": 0}


def test_feature_denial_maps_to_403_with_feature() -> None:
    decision = EntitlementDecision(allowed=False, reason=DenialReason.FEATURE_REQUIRED, feature="comparison")
    error = PlanGuardError(decision=decision, plan_tier=PlanTier.CREATOR)
    assert error.status_code == 403
    assert error.to_detail()["feature"] == "comparison"
    assert "quota" not in error.to_detail()


def test_translate_billing_errors_wraps_plan_guard() -> None:
    decision = EntitlementDecision(allowed=False, reason=DenialReason.MINUTES_EXCEEDED, limit=30, used=30, remaining=0)
    with pytest.raises(HTTPException) as exc:
        with translate_billing_errors():
            ensure_allowed(decision, PlanTier.CREATOR)
    assert exc.value.status_code == 429
    assert exc.value.detail["code"] == "plan.minutes_exceeded"


@pytest.mark.parametrize(
    "error, status_code",
    [
        (TransitionConflictError("subscription.transition_conflict", "lost race"), 409),
        (InvariantViolationError("subscription.duplicate_authoritative_row", "two rows"), 500),
    ],
)
def test_translate_billing_errors_uses_error_status(error, status_code: int) -> None:
    with pytest.raises(HTTPException) as exc:
        with translate_billing_errors():
            raise error
    assert exc.value.status_code == status_code
    assert exc.value.detail["code"] == error.code
