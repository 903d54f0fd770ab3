"""Exception taxonomy shared by billing services and routers."""

from __future__ import annotations

from typing import Any, Dict, Optional


class BillingError(RuntimeError):
    """Base error carrying a machine-readable code and an HTTP status hint."""

    status_code: int = 400

    def __init__(self, code: str, message: str, *, status_code: Optional[int] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.context = dict(context or {})

    def to_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.context:
            detail["context"] = self.context
        return detail


class BillingValidationError(BillingError):
    """Malformed request or unknown identifier. Nothing was written."""

    status_code = 400


class TransitionConflictError(BillingError):
    """The row's current status does not admit the transition (lost race or repeated action)."""

    status_code = 409


class UpstreamUnavailableError(BillingError):
    status_code = 502


class InvariantViolationError(BillingError):
    """Persisted state contradicts a structural invariant; never repaired automatically."""

    status_code = 500


class ReconcilerUnavailableError(BillingError):
    """The idempotency lookup could not be performed; the provider should retry."""

    status_code = 503


__all__ = [
    "BillingError",
    "BillingValidationError",
    "InvariantViolationError",
    "ReconcilerUnavailableError",
    "TransitionConflictError",
    "UpstreamUnavailableError",
]
