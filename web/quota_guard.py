"""Translate billing and entitlement errors into HTTP responses."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from fastapi import HTTPException

from core.logging import get_logger
from services.billing_errors import BillingError, InvariantViolationError
from services.plan_guard import PlanGuardError

logger = get_logger(__name__)


def plan_guard_http_exception(exc: PlanGuardError) -> HTTPException:
    """RFC7807-style body so clients can route to the right upgrade prompt."""
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


def billing_http_exception(exc: BillingError) -> HTTPException:
    if isinstance(exc, InvariantViolationError):
        logger.error("Invariant violation surfaced to API: %s", exc.message, extra={"code": exc.code, **exc.context})
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


@contextmanager
def translate_billing_errors() -> Iterator[None]:
    try:
        yield
    except PlanGuardError as exc:
        raise plan_guard_http_exception(exc) from exc
    except BillingError as exc:
        raise billing_http_exception(exc) from exc


__all__ = ["billing_http_exception", "plan_guard_http_exception", "translate_billing_errors"]
