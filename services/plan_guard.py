"""Turn entitlement denials into structured errors for API and worker callers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from core.plan_constants import PlanTier
from services.entitlement_resolver import DenialReason, EntitlementDecision

_PROBLEM_TYPE = "https://docs.billing.local/errors/plan-entitlement"

_REASON_MESSAGES: Dict[DenialReason, str] = {
    DenialReason.QUOTA_EXCEEDED: "The operation allowance for this period is used up.",
    DenialReason.MINUTES_EXCEEDED: "The metered minutes for this period are used up.",
    DenialReason.FEATURE_REQUIRED: "This feature is not included in the current plan.",
    DenialReason.CATEGORY_LIMIT_REACHED: "No more categories can be selected on the current plan.",
    DenialReason.ARTIFACT_TOO_LONG: "The upload is longer than the current plan allows.",
    DenialReason.ARTIFACT_TOO_LARGE: "The upload is larger than the current plan allows.",
    DenialReason.DELEGATE_LIMIT_REACHED: "No more delegates can be added on the current plan.",
    DenialReason.INVALID_INPUT: "The request values are invalid.",
}

_QUOTA_REASONS = frozenset({DenialReason.QUOTA_EXCEEDED, DenialReason.MINUTES_EXCEEDED})


@dataclass(slots=True, eq=False)
class PlanGuardError(RuntimeError):
    """Raised when the effective plan denies a gated operation."""

    decision: EntitlementDecision
    plan_tier: PlanTier

    def __post_init__(self) -> None:
        RuntimeError.__init__(self, self.message)

    @property
    def reason(self) -> DenialReason:
        return self.decision.reason or DenialReason.FEATURE_REQUIRED

    @property
    def message(self) -> str:
        return _REASON_MESSAGES.get(self.reason, "The current plan does not allow this operation.")

    @property
    def status_code(self) -> int:
        if self.reason in _QUOTA_REASONS:
            return 429
        if self.reason is DenialReason.INVALID_INPUT:
            return 400
        return 403

    @property
    def code(self) -> str:
        return f"plan.{self.reason.value}"

    def to_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {
            "type": _PROBLEM_TYPE,
            "title": self.message,
            "status": self.status_code,
            "detail": self.message,
            "code": self.code,
            "reason": self.reason.value,
            "planTier": self.plan_tier.value,
        }
        if self.decision.feature:
            detail["feature"] = self.decision.feature
        if self.decision.limit is not None:
            detail["quota"] = {
                "limit": self.decision.limit,
                "used": self.decision.used,
                "remaining": self.decision.remaining,
            }
        return detail


def ensure_allowed(decision: EntitlementDecision, plan_tier: PlanTier) -> EntitlementDecision:
    if decision.allowed:
        return decision
    raise PlanGuardError(decision=decision, plan_tier=plan_tier)


__all__ = ["PlanGuardError", "ensure_allowed"]
