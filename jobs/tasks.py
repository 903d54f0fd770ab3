"""Celery tasks for periodic billing maintenance."""

from __future__ import annotations

from typing import Any, Dict, Optional

from celery import shared_task

from core.logging import get_logger
from database import SessionLocal
from services.downgrade_sweeper import run_sweep

logger = get_logger(__name__)


@shared_task(name="billing.downgrade_expired")
def downgrade_expired(batch_size: Optional[int] = None) -> Dict[str, Any]:
    """Expire lapsed subscriptions back to the free tier."""
    result = run_sweep(SessionLocal, batch_size=batch_size)
    if result.expired:
        logger.info("Sweeper expired %d subscription(s).", result.expired)
    return result.to_dict()
