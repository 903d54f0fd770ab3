"""Billing configuration resolved from the environment."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

from core.env import env_float, env_int, env_str
from core.logging import get_logger

load_dotenv()

logger = get_logger(__name__)


@dataclass(frozen=True)
class BillingSettings:
    gateway_base_url: Optional[str]
    gateway_api_key: Optional[str]
    gateway_api_secret: Optional[str]
    gateway_timeout_seconds: float
    redirect_url: Optional[str]
    confirm_timeout_seconds: float
    min_elapsed_seconds: int
    order_ttl_hours: int
    cron_secret: Optional[str]
    renewal_grace_hours: int
    sweeper_batch_size: int
    sweeper_interval_minutes: int
    notify_webhook_url: Optional[str]

    @property
    def gateway_configured(self) -> bool:
        return bool(self.gateway_base_url and self.gateway_api_key and self.gateway_api_secret)

    @property
    def cron_configured(self) -> bool:
        return bool(self.cron_secret)


@lru_cache(maxsize=1)
def load_billing_settings() -> BillingSettings:
    """Read settings once; call ``load_billing_settings.cache_clear()`` after env changes."""

    settings = BillingSettings(
        gateway_base_url=(env_str("PAYMENT_GATEWAY_BASE_URL") or "").rstrip("/") or None,
        gateway_api_key=env_str("PAYMENT_GATEWAY_API_KEY"),
        gateway_api_secret=env_str("PAYMENT_GATEWAY_API_SECRET"),
        gateway_timeout_seconds=env_float("PAYMENT_GATEWAY_TIMEOUT_SECONDS", 10.0, minimum=0.5),
        redirect_url=env_str("PAYMENT_REDIRECT_URL"),
        confirm_timeout_seconds=env_float("PAYMENT_CONFIRM_TIMEOUT_SECONDS", 5.0, minimum=0.1),
        min_elapsed_seconds=env_int("PAYMENT_MIN_ELAPSED_SECONDS", 55, minimum=0),
        order_ttl_hours=env_int("PAYMENT_ORDER_TTL_HOURS", 72, minimum=1),
        cron_secret=env_str("CRON_SECRET"),
        renewal_grace_hours=env_int("SUBSCRIPTION_RENEWAL_GRACE_HOURS", 72, minimum=0),
        sweeper_batch_size=env_int("SWEEPER_BATCH_SIZE", 500, minimum=1),
        sweeper_interval_minutes=env_int("SWEEPER_INTERVAL_MINUTES", 60, minimum=1),
        notify_webhook_url=env_str("NOTIFY_WEBHOOK_URL"),
    )
    if not settings.gateway_configured:
        logger.warning("Payment gateway credentials are incomplete; checkout and gateway sync are disabled.")
    if not settings.cron_configured:
        logger.warning("CRON_SECRET is not set; the downgrade sweeper endpoint is disabled.")
    return settings


__all__ = ["BillingSettings", "load_billing_settings"]
