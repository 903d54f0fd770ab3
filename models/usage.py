from __future__ import annotations

import uuid

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID

from core.timeutils import utcnow
from database import Base


class UsageEvent(Base):
    """Immutable billable event. Rows are inserted once and never updated."""

    __tablename__ = "billing_usage_events"
    __table_args__ = (
        UniqueConstraint("account_id", "kind", "artifact_id", name="uq_billing_usage_artifact"),
        {"extend_existing": True},
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(String(64), nullable=False, index=True)
    kind = Column(String(32), nullable=False)
    # operations count 1 each; metered durations are stored in seconds
    quantity = Column(Integer, nullable=False, default=1)
    artifact_id = Column(String(128), nullable=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)


__all__ = ["UsageEvent"]
