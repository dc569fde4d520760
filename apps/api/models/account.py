"""Account model: identity plus subscription and credit state."""

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String, false
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Account(Base):
    """One row per authenticated user; the source of truth for entitlement."""

    __tablename__ = "accounts"
    __table_args__ = (CheckConstraint("credits >= 0", name="ck_accounts_credits_non_negative"),)

    id = Column(String, primary_key=True)  # user id issued by the identity provider
    email = Column(String, unique=True, nullable=True, index=True)
    subscription_tier = Column(String, nullable=False, default="free", server_default="free")
    subscription_status = Column(String, nullable=False, default="inactive", server_default="inactive")
    plan_expiry = Column(DateTime(timezone=True), nullable=True)
    is_admin = Column(Boolean, nullable=False, default=False, server_default=false())
    credits = Column(Integer, nullable=False, default=100, server_default="100")

    stripe_customer_id = Column(String, nullable=True, index=True)
    stripe_subscription_id = Column(String, nullable=True, index=True)
    razorpay_payment_id = Column(String, nullable=True)
    razorpay_order_id = Column(String, nullable=True)
    razorpay_subscription_id = Column(String, nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    credit_transactions = relationship("CreditTransaction", back_populates="account", cascade="all, delete-orphan")
    usage_records = relationship("UsageRecord", back_populates="account", cascade="all, delete-orphan")
    payments = relationship("PaymentRecord", back_populates="account", cascade="all, delete-orphan")
