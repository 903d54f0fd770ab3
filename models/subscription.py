"""Authoritative subscription rows and their transition log."""

from __future__ import annotations

import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func

from core.timeutils import utcnow
from database import Base


class Subscription(Base):
    """One row per account; absence of a row means the implicit free tier."""

    __tablename__ = "billing_subscriptions"
    __table_args__ = (
        UniqueConstraint("account_id", name="uq_billing_subscriptions_account"),
        {"extend_existing": True},
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(String(64), nullable=False, index=True)
    plan_tier = Column(String(32), nullable=False, default="free")
    status = Column(String(16), nullable=False, default="active", index=True)
    billing_period = Column(String(16), nullable=True)
    period_start = Column(DateTime(timezone=True), nullable=False)
    period_end = Column(DateTime(timezone=True), nullable=True, index=True)
    plan_assigned_at = Column(DateTime(timezone=True), nullable=True)
    auto_renew = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    paused_at = Column(DateTime(timezone=True), nullable=True)
    bonus_operations = Column(Integer, nullable=False, default=0)
    bonus_categories = Column(Integer, nullable=False, default=0)
    gateway_recurring_id = Column(String(128), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class SubscriptionEvent(Base):
    """Append-only audit trail of lifecycle transitions."""

    __tablename__ = "billing_subscription_events"
    __table_args__ = {"extend_existing": True}

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(String(64), nullable=False, index=True)
    event_type = Column(String(32), nullable=False, index=True)
    source = Column(String(32), nullable=False)
    from_status = Column(String(16), nullable=True)
    to_status = Column(String(16), nullable=True)
    from_tier = Column(String(32), nullable=True)
    to_tier = Column(String(32), nullable=True)
    context = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False, index=True)


__all__ = ["Subscription", "SubscriptionEvent"]
