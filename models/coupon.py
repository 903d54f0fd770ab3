"""Promotional codes and their write-once redemption rows."""

from __future__ import annotations

import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func

from core.timeutils import utcnow
from database import Base


class Coupon(Base):
    __tablename__ = "billing_coupons"
    __table_args__ = {"extend_existing": True}

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # stored upper-cased; lookups normalise the same way
    code = Column(String(64), nullable=False, unique=True, index=True)
    description = Column(String(255), nullable=True)
    discount_type = Column(String(16), nullable=True)
    discount_value = Column(Float, nullable=True)
    trial_tier = Column(String(32), nullable=True)
    trial_days = Column(Integer, nullable=True)
    bonus_operations = Column(Integer, nullable=False, default=0)
    bonus_categories = Column(Integer, nullable=False, default=0)
    max_redemptions = Column(Integer, nullable=True)
    redemption_count = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


class CouponRedemption(Base):
    __tablename__ = "billing_coupon_redemptions"
    __table_args__ = (
        UniqueConstraint("coupon_code", "account_id", name="uq_billing_coupon_redemption"),
        {"extend_existing": True},
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    coupon_code = Column(String(64), nullable=False, index=True)
    account_id = Column(String(64), nullable=False, index=True)
    effect = Column(String(32), nullable=False)
    redeemed_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


__all__ = ["Coupon", "CouponRedemption"]
