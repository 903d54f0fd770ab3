"""Idempotent reconciliation of gateway notifications into lifecycle transitions.

Both the browser redirect callback and the asynchronous IPN funnel into
:meth:`PaymentReconciler.reconcile`. Whichever arrives first performs the
transition; the other finds the stored ``PaymentEvent`` and returns the same
result.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from core.config import BillingSettings, load_billing_settings
from core.logging import get_logger
from core.plan_constants import BillingPeriod, SubscriptionStatus, parse_plan_tier
from core.timeutils import ensure_utc, utcnow
from models.payments import PaymentEvent, PaymentOrder
from services import billing_metrics
from services.billing_errors import (
    BillingValidationError,
    ReconcilerUnavailableError,
    TransitionConflictError,
)
from services.payments.callback_utils import SOURCE_REDIRECT, PaymentNotification
from services.payments.order_context import find_order
from services.subscription_lifecycle import (
    assign_paid_plan,
    atomic,
    get_snapshot,
    renew_subscription,
)

logger = get_logger(__name__)

OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"

_RETRY_MESSAGE = "The payment was not confirmed. The subscription is unchanged; please try again."


@dataclass(frozen=True)
class ReconcileResult:
    status: str
    success: bool
    external_reference: Optional[str] = None
    account_id: Optional[str] = None
    order_reference: Optional[str] = None
    tier: Optional[str] = None
    needs_retry: bool = False
    duplicate: bool = False
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "success": self.success,
            "externalReference": self.external_reference,
            "accountId": self.account_id,
            "orderReference": self.order_reference,
            "tier": self.tier,
            "needsRetry": self.needs_retry,
            "duplicate": self.duplicate,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReconcileResult":
        return cls(
            status=str(data.get("status") or "unknown"),
            success=bool(data.get("success")),
            external_reference=data.get("externalReference"),
            account_id=data.get("accountId"),
            order_reference=data.get("orderReference"),
            tier=data.get("tier"),
            needs_retry=bool(data.get("needsRetry")),
            duplicate=bool(data.get("duplicate")),
            message=data.get("message"),
        )


def pending_result(notification: PaymentNotification) -> ReconcileResult:
    return ReconcileResult(
        status="pending",
        success=False,
        external_reference=notification.external_reference,
        order_reference=notification.order_reference,
        message="Payment confirmation is still in progress.",
    )


class PaymentReconciler:
    def __init__(
        self,
        *,
        settings: Optional[BillingSettings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings
        self._clock = clock

    @property
    def settings(self) -> BillingSettings:
        return self._settings or load_billing_settings()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def reconcile(self, session: Session, notification: PaymentNotification) -> ReconcileResult:
        key = notification.external_reference
        if not key:
            raise BillingValidationError("payments.missing_reference", "The notification carries no order or transaction reference.")

        existing = self._lookup(session, key)
        if existing is not None and (existing.outcome == OUTCOME_SUCCESS or not notification.is_success):
            billing_metrics.observe_callback(notification.source, "duplicate")
            logger.info("Duplicate payment notification ignored.", extra={"external_reference": key})
            return replace(ReconcileResult.from_dict(existing.result or {}), duplicate=True)

        try:
            with atomic(session):
                result = self._apply(session, notification, key, existing)
        except IntegrityError:
            # a concurrent delivery inserted the same key first; its result wins
            stored = self._lookup(session, key)
            if stored is None:
                raise
            billing_metrics.observe_callback(notification.source, "duplicate")
            return replace(ReconcileResult.from_dict(stored.result or {}), duplicate=True)

        billing_metrics.observe_callback(notification.source, result.status)
        return result

    async def confirm_redirect(
        self,
        notification: PaymentNotification,
        *,
        session_factory: Callable[[], Session],
        timeout: Optional[float] = None,
    ) -> ReconcileResult:
        """Reconcile from the redirect path, waiting at most ``timeout`` seconds.

        A timeout or an unavailable store yields ``pending``: the IPN may still
        complete the transition and the client re-reads the subscription.
        """

        limit = timeout if timeout is not None else self.settings.confirm_timeout_seconds

        def _run() -> ReconcileResult:
            session = session_factory()
            try:
                return self.reconcile(session, notification)
            finally:
                session.close()

        try:
            return await asyncio.wait_for(asyncio.to_thread(_run), timeout=limit)
        except asyncio.TimeoutError:
            logger.warning(
                "Redirect confirmation timed out after %.1fs; reporting pending.",
                limit,
                extra={"external_reference": notification.external_reference},
            )
        except (ReconcilerUnavailableError, SQLAlchemyError) as exc:
            logger.warning(
                "Redirect confirmation could not reach the store (%s); reporting pending.",
                exc,
                extra={"external_reference": notification.external_reference},
            )
        billing_metrics.observe_callback(notification.source, "pending")
        return pending_result(notification)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _lookup(session: Session, key: str) -> Optional[PaymentEvent]:
        try:
            stmt = select(PaymentEvent).where(PaymentEvent.external_reference == key)
            return session.execute(stmt).scalars().first()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("Payment idempotency lookup failed: %s", exc, extra={"external_reference": key})
            raise ReconcilerUnavailableError(
                "payments.idempotency_check_failed",
                "Could not verify whether this notification was already processed.",
            ) from exc

    def _guard(self, notification: PaymentNotification, order: PaymentOrder, now: datetime) -> Tuple[bool, Optional[str]]:
        if not notification.is_success:
            return False, "status_not_success"
        if not notification.has_transaction_id:
            return False, "missing_transaction_id"
        if notification.source == SOURCE_REDIRECT and order.status != "completed":
            created_at = ensure_utc(order.created_at)
            if created_at is not None:
                elapsed = (now - created_at).total_seconds()
                if elapsed < self.settings.min_elapsed_seconds:
                    return False, "confirmed_too_soon"
                if elapsed > timedelta(hours=self.settings.order_ttl_hours).total_seconds():
                    return False, "order_expired"
        return True, None

    def _record(
        self,
        session: Session,
        existing: Optional[PaymentEvent],
        notification: PaymentNotification,
        key: str,
        outcome: str,
        result: ReconcileResult,
        order: Optional[PaymentOrder],
    ) -> None:
        event = existing
        if event is None:
            event = PaymentEvent(external_reference=key, source=notification.source)
            session.add(event)
        event.account_id = order.account_id if order is not None else None
        event.order_reference = order.order_reference if order is not None else notification.order_reference
        event.source = notification.source
        event.outcome = outcome
        event.requested_tier = order.plan_tier if order is not None else None
        event.raw_status = notification.status_code
        event.result = result.to_dict()
        event.payload = notification.safe_payload()
        session.flush()

    def _apply(
        self,
        session: Session,
        notification: PaymentNotification,
        key: str,
        existing: Optional[PaymentEvent],
    ) -> ReconcileResult:
        now = self._clock()
        order = find_order(
            session,
            gateway_order_number=notification.gateway_order_number,
            order_reference=notification.order_reference,
            transaction_number=notification.transaction_number,
            uniq_id=notification.uniq_id,
            lock=True,
        )
        if order is None:
            result = ReconcileResult(
                status="order_not_found",
                success=False,
                external_reference=key,
                order_reference=notification.order_reference,
                message="No checkout order matches this notification.",
            )
            logger.warning("Payment notification for unknown order.", extra={"external_reference": key})
            self._record(session, existing, notification, key, OUTCOME_FAILURE, result, None)
            return result

        base = dict(
            external_reference=key,
            account_id=order.account_id,
            order_reference=order.order_reference,
            tier=order.plan_tier,
        )
        ok, reason = self._guard(notification, order, now)
        if not ok:
            if order.status == "pending" and reason == "status_not_success":
                order.status = "failed"
            result = ReconcileResult(status="rejected", success=False, needs_retry=True, message=_RETRY_MESSAGE, **base)
            logger.info(
                "Payment notification not applied (%s).",
                reason,
                extra={"external_reference": key, "account_id": order.account_id, "raw_status": notification.status_code},
            )
            self._record(session, existing, notification, key, OUTCOME_FAILURE, replace(result, status=reason or "rejected"), order)
            return replace(result, status=reason or "rejected")

        self._remember_gateway_ids(order, notification)
        if order.status == "completed" and not notification.is_renewal:
            result = ReconcileResult(status="already_applied", success=True, duplicate=True, **base)
        elif order.status == "completed":
            result = self._renew(session, notification, order, now, base)
        else:
            result = self._activate(session, notification, order, now, base)
            order.status = "completed"
            order.completed_at = now
        self._record(session, existing, notification, key, OUTCOME_SUCCESS, result, order)
        return result

    @staticmethod
    def _remember_gateway_ids(order: PaymentOrder, notification: PaymentNotification) -> None:
        order.gateway_order_number = order.gateway_order_number or notification.gateway_order_number
        order.transaction_number = order.transaction_number or notification.transaction_number
        order.uniq_id = order.uniq_id or notification.uniq_id
        if notification.recurring_id:
            order.recurring_id = notification.recurring_id

    def _activate(
        self,
        session: Session,
        notification: PaymentNotification,
        order: PaymentOrder,
        now: datetime,
        base: Dict[str, Any],
    ) -> ReconcileResult:
        tier = parse_plan_tier(order.plan_tier)
        if tier is None:
            logger.error("Order carries an unknown tier %s.", order.plan_tier, extra={"order_reference": order.order_reference})
            return ReconcileResult(status="unknown_tier", success=False, **base)
        try:
            assign_paid_plan(
                session,
                order.account_id,
                tier,
                source=f"payment_{notification.source}",
                now=now,
                billing_period=BillingPeriod(order.billing_period),
                recurring_id=notification.recurring_id or order.recurring_id,
                context={"orderReference": order.order_reference},
            )
        except TransitionConflictError as exc:
            logger.error(
                "Paid order could not be applied: %s",
                exc.message,
                extra={"account_id": order.account_id, "order_reference": order.order_reference},
            )
            return ReconcileResult(status="not_applied", success=True, message=exc.message, **base)
        return ReconcileResult(status="applied", success=True, **base)

    def _renew(
        self,
        session: Session,
        notification: PaymentNotification,
        order: PaymentOrder,
        now: datetime,
        base: Dict[str, Any],
    ) -> ReconcileResult:
        snapshot = get_snapshot(session, order.account_id)
        if snapshot is not None and snapshot.status is SubscriptionStatus.ACTIVE and snapshot.tier.value == order.plan_tier:
            renew_subscription(
                session,
                order.account_id,
                source=f"payment_{notification.source}",
                now=now,
                recurring_id=notification.recurring_id,
            )
            return ReconcileResult(status="renewed", success=True, **base)
        # renewal charge arrived after the subscription lapsed or changed: reassign the paid tier
        return self._activate(session, notification, order, now, base)


payment_reconciler = PaymentReconciler()

__all__ = ["PaymentReconciler", "ReconcileResult", "payment_reconciler", "pending_result"]
