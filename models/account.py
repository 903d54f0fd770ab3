"""Account profile mirror of the authoritative subscription."""

from __future__ import annotations

from sqlalchemy import JSON, Column, DateTime, Float, String
from sqlalchemy.sql import func

from core.timeutils import utcnow
from database import Base


class Account(Base):
    """Per-account profile; tier/status columns are a mirror kept in sync by lifecycle transitions."""

    __tablename__ = "billing_accounts"
    __table_args__ = {"extend_existing": True}

    id = Column(String(64), primary_key=True)
    email = Column(String(320), nullable=True, index=True)
    locale = Column(String(16), nullable=False, default="he")
    role = Column(String(16), nullable=False, default="standard")
    plan_tier = Column(String(32), nullable=False, default="free")
    subscription_status = Column(String(16), nullable=True)
    subscription_period_end = Column(DateTime(timezone=True), nullable=True)
    selected_categories = Column(JSON, nullable=False, default=list)
    primary_category = Column(String(32), nullable=True)
    pending_discount_type = Column(String(16), nullable=True)
    pending_discount_value = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


__all__ = ["Account"]
