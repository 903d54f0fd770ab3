"""Prometheus counters for callbacks, transitions, coupons, denials and sweeps."""

from __future__ import annotations

from core.logging import get_logger
from services.prometheus_helpers import build_counter, build_gauge

logger = get_logger(__name__)

_CALLBACK_COUNTER = build_counter(
    "billing_payment_callbacks",
    "Payment gateway notifications grouped by source and reconciliation result.",
    ("source", "result"),
)
_TRANSITION_COUNTER = build_counter(
    "billing_subscription_transitions",
    "Subscription lifecycle transitions applied.",
    ("transition",),
)
_COUPON_COUNTER = build_counter(
    "billing_coupon_redemptions",
    "Coupon redemption attempts grouped by result.",
    ("result",),
)
_DENIAL_COUNTER = build_counter(
    "billing_entitlement_denials",
    "Gated operations denied, grouped by machine-readable reason.",
    ("reason",),
)
_SWEEPER_COUNTER = build_counter(
    "billing_sweeper_expired",
    "Subscriptions expired by the downgrade sweeper.",
)
_SWEEPER_LAST_RUN = build_gauge(
    "billing_sweeper_last_run_timestamp",
    "Unix timestamp of the last completed sweeper pass.",
)


def observe_callback(source: str, result: str) -> None:
    if _CALLBACK_COUNTER is None:
        return
    _CALLBACK_COUNTER.labels(source=source or "unknown", result=result or "unknown").inc()


def observe_transition(transition: str) -> None:
    if _TRANSITION_COUNTER is None:
        return
    _TRANSITION_COUNTER.labels(transition=transition).inc()


def observe_coupon(result: str) -> None:
    if _COUPON_COUNTER is None:
        return
    _COUPON_COUNTER.labels(result=result).inc()


def observe_denial(reason: str) -> None:
    if _DENIAL_COUNTER is None:
        return
    _DENIAL_COUNTER.labels(reason=reason).inc()


def observe_sweep(expired: int, finished_at: float) -> None:
    if _SWEEPER_COUNTER is not None and expired > 0:
        _SWEEPER_COUNTER.inc(expired)
    if _SWEEPER_LAST_RUN is None:
        return
    try:
        _SWEEPER_LAST_RUN.set(finished_at)
    except ValueError:
        logger.debug("Failed to set sweeper timestamp gauge: %s", finished_at)


__all__ = [
    "observe_callback",
    "observe_coupon",
    "observe_denial",
    "observe_sweep",
    "observe_transition",
]
