"""PaymentRecord model for completed provider payments."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class PaymentRecord(Base):
    """A completed payment. payment_id is unique across deliveries and retries."""

    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    provider = Column(String, nullable=False, default="razorpay")
    payment_id = Column(String, unique=True, nullable=False)
    order_id = Column(String, nullable=True)
    plan = Column(String, nullable=False)
    amount = Column(Integer, nullable=False, default=0)  # minor units (paise, cents)
    currency = Column(String, nullable=False, default="INR")
    status = Column(String, nullable=False, default="success")
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    account = relationship("Account", back_populates="payments")
