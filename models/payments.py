from __future__ import annotations

import uuid

from sqlalchemy import JSON, Column, DateTime, Float, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func

from core.timeutils import utcnow
from database import Base


class PaymentOrder(Base):
    """Server-held checkout context; callbacks resolve the account from here only."""

    __tablename__ = "billing_payment_orders"
    __table_args__ = {"extend_existing": True}

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_reference = Column(String(64), nullable=False, unique=True, index=True)
    account_id = Column(String(64), nullable=False, index=True)
    plan_tier = Column(String(32), nullable=False)
    billing_period = Column(String(16), nullable=False)
    amount = Column(Float, nullable=False)
    status = Column(String(16), nullable=False, default="pending", index=True)
    gateway_order_number = Column(String(128), nullable=True, index=True)
    transaction_number = Column(String(128), nullable=True, index=True)
    uniq_id = Column(String(128), nullable=True, index=True)
    recurring_id = Column(String(128), nullable=True)
    payment_url = Column(Text, nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class PaymentEvent(Base):
    """Gateway notification log; ``external_reference`` is the idempotency key."""

    __tablename__ = "billing_payment_events"
    __table_args__ = {"extend_existing": True}

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    external_reference = Column(String(160), nullable=False, unique=True, index=True)
    account_id = Column(String(64), nullable=True, index=True)
    order_reference = Column(String(64), nullable=True, index=True)
    source = Column(String(16), nullable=False)
    outcome = Column(String(16), nullable=False, index=True)
    requested_tier = Column(String(32), nullable=True)
    raw_status = Column(String(32), nullable=True)
    result = Column(JSON, nullable=True)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


__all__ = ["PaymentEvent", "PaymentOrder"]
