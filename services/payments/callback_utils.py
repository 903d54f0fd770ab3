"""Parsing helpers for gateway redirect callbacks and IPN notifications."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

# the single documented status value that means the charge was confirmed
SUCCESS_STATUS_CODE = "0"

SOURCE_REDIRECT = "redirect"
SOURCE_IPN = "ipn"

EVENT_PAYMENT_SUCCESS = "payment_success"
EVENT_PAYMENT_FAILED = "payment_failed"
EVENT_RECURRING_PAYMENT = "recurring_payment"


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class PaymentNotification:
    source: str
    order_reference: Optional[str] = None
    gateway_order_number: Optional[str] = None
    transaction_number: Optional[str] = None
    uniq_id: Optional[str] = None
    status_code: Optional[str] = None
    event_type: Optional[str] = None
    recurring_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_params(cls, params: Mapping[str, Any], *, source: str) -> "PaymentNotification":
        return cls(
            source=source,
            order_reference=_clean(params.get("order_reference") or params.get("orderReference")),
            gateway_order_number=_clean(params.get("ordernumber") or params.get("orderNumber")),
            transaction_number=_clean(
                params.get("transactionInternalNumber") or params.get("transaction_internal_number")
            ),
            uniq_id=_clean(params.get("uniqId") or params.get("uniq_id")),
            status_code=_clean(params.get("statusCode") if "statusCode" in params else params.get("status_code")),
            event_type=_clean(params.get("eventType") or params.get("event_type")),
            recurring_id=_clean(params.get("recurringId") or params.get("RecurringId") or params.get("recurring_id")),
            payload={str(key): value for key, value in params.items()},
        )

    @property
    def is_success(self) -> bool:
        """Only the exact documented code counts; a missing or garbled field never does."""
        return self.status_code == SUCCESS_STATUS_CODE

    @property
    def has_transaction_id(self) -> bool:
        return bool(self.gateway_order_number or self.transaction_number)

    @property
    def is_renewal(self) -> bool:
        return self.event_type == EVENT_RECURRING_PAYMENT

    @property
    def external_reference(self) -> Optional[str]:
        """Idempotency key: the gateway's transaction identity, falling back to our order reference."""

        for prefix, value in (
            ("txn", self.transaction_number),
            ("gwo", self.gateway_order_number),
            ("uid", self.uniq_id),
            ("ord", self.order_reference),
        ):
            if value:
                return f"{prefix}:{value}"
        return None

    def safe_payload(self) -> Dict[str, Any]:
        """Payload without card-token material, suitable for persistence."""

        redacted = {"token", "Last4Digits", "TokenExpirationMonth", "TokenExpirationYear"}
        return {key: value for key, value in self.payload.items() if key not in redacted}


__all__ = [
    "EVENT_PAYMENT_FAILED",
    "EVENT_PAYMENT_SUCCESS",
    "EVENT_RECURRING_PAYMENT",
    "PaymentNotification",
    "SOURCE_IPN",
    "SOURCE_REDIRECT",
    "SUCCESS_STATUS_CODE",
]
