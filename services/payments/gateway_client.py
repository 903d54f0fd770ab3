"""HTTP client for the hosted payment-page gateway."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from core.config import load_billing_settings
from core.logging import get_logger

logger = get_logger(__name__)

PAYMENT_PAGE_PATH = "/api/ExternalAPI/GetPaymentPageRedirectUrl"
STOP_RECURRING_PATH = "/api/ExternalAPI/StopRecurringCharge"
RESUME_RECURRING_PATH = "/api/ExternalAPI/ResumeRecurringCharge"

# deal type 4 is a recurring subscription; interval codes are gateway-defined
_DEAL_TYPE_SUBSCRIPTION = 4
_RECURRING_INTERVAL = {"monthly": 5, "yearly": 4}


class GatewayError(RuntimeError):
    """Raised when the gateway rejects a request or cannot be reached."""

    def __init__(self, status_code: int, message: str, *, payload: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}


class GatewayNotConfiguredError(RuntimeError):
    """Raised when gateway credentials are missing from the environment."""


@dataclass(slots=True)
class GatewayClient:
    api_key: str
    api_secret: str
    base_url: str
    timeout: float = 10.0

    def _credentials(self) -> Dict[str, str]:
        return {"API_Key": self.api_key, "API_Secret": self.api_secret}

    async def _request(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"
        body = {**self._credentials(), **payload}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=body)
        except httpx.HTTPError as exc:
            raise GatewayError(503, f"Payment gateway unreachable: {exc}") from exc
        if response.status_code >= 400:
            try:
                data = response.json()
            except ValueError:
                data = {"body": response.text}
            message = data.get("message") or data.get("error") or "Payment gateway request failed."
            logger.warning("Payment gateway error %s: %s", response.status_code, data)
            raise GatewayError(response.status_code, message, payload=data)
        try:
            return response.json()
        except ValueError:
            return {"body": response.text}

    async def create_payment_page(
        self,
        *,
        order_reference: str,
        amount: float,
        product_name: str,
        billing_period: str,
        redirect_url: Optional[str],
        customer_email: Optional[str] = None,
        language: str = "he",
    ) -> Dict[str, Any]:
        """Request a hosted payment-page URL for a recurring order."""

        payload: Dict[str, Any] = {
            "DealType": _DEAL_TYPE_SUBSCRIPTION,
            "OrderReference": order_reference,
            "OrderTotalSum": amount,
            "InitialAmount": amount,
            "Products": [{"ProductName": product_name, "Price": amount}],
            "Customer": {"Email": customer_email or ""},
            "RedirectAddress": redirect_url,
            "Currency": "ILS",
            "Language": "en" if language == "en" else "he",
            "RecuringInterval": _RECURRING_INTERVAL.get(billing_period, 5),
            "NumberOfPayments": 12 if billing_period == "yearly" else 1,
        }
        logger.info("Requesting payment page for order=%s", order_reference)
        data = await self._request(PAYMENT_PAGE_PATH, payload)
        url = data.get("url") or data.get("redirectUrl")
        if not url:
            raise GatewayError(502, "Payment gateway did not return a payment page URL.", payload=data)
        return {"url": url, "raw": data}

    async def stop_recurring_charge(self, recurring_id: str) -> Dict[str, Any]:
        logger.info("Stopping recurring charge recurring_id=%s", recurring_id)
        return await self._request(STOP_RECURRING_PATH, {"RecurringId": recurring_id})

    async def resume_recurring_charge(self, recurring_id: str) -> Dict[str, Any]:
        logger.info("Resuming recurring charge recurring_id=%s", recurring_id)
        return await self._request(RESUME_RECURRING_PATH, {"RecurringId": recurring_id})


def get_gateway_client() -> GatewayClient:
    settings = load_billing_settings()
    if not settings.gateway_configured:
        raise GatewayNotConfiguredError("Payment gateway credentials are not configured.")
    return GatewayClient(
        api_key=settings.gateway_api_key or "",
        api_secret=settings.gateway_api_secret or "",
        base_url=settings.gateway_base_url or "",
        timeout=settings.gateway_timeout_seconds,
    )


__all__ = [
    "GatewayClient",
    "GatewayError",
    "GatewayNotConfiguredError",
    "get_gateway_client",
]
