"""UsageRecord model for free-tier daily limits."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class UsageRecord(Base):
    """One accepted feature invocation, bucketed by UTC day."""

    __tablename__ = "usage_records"
    __table_args__ = (
        UniqueConstraint("user_id", "feature", "idempotency_key", name="uq_usage_records_idempotency"),
        Index("ix_usage_records_user_feature_date", "user_id", "feature", "usage_date"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    feature = Column(String, nullable=False)
    usage_date = Column(DateTime(timezone=True), nullable=False)  # UTC midnight
    idempotency_key = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    account = relationship("Account", back_populates="usage_records")
