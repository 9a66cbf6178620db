"""CheckoutSession model"""
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Column, ForeignKey, Index, Integer, Numeric, String, Text, text
from sqlalchemy.orm import relationship

from billing.models.base import Base, UTCDateTime, enum_column_type, utcnow


class CheckoutSessionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class CheckoutSession(Base):
    """A checkout proposal sent to the gateway. Never billing truth on its own."""
    __tablename__ = "checkout_sessions"
    __table_args__ = (
        # At most one open session per subscription
        Index(
            "uq_checkout_sessions_open_subscription",
            "subscription_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=False)
    payment_method_id = Column(Integer, ForeignKey("payment_methods.id"), nullable=False)
    coupon_id = Column(Integer, ForeignKey("coupons.id"), nullable=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=True, index=True)
    status = Column(enum_column_type(CheckoutSessionStatus), default=CheckoutSessionStatus.PENDING, nullable=False)
    transaction_id = Column(String(100), unique=True, nullable=False, index=True)
    gateway_preference_id = Column(String(255), nullable=True, index=True)
    checkout_url = Column(Text, nullable=True)
    sandbox_checkout_url = Column(Text, nullable=True)
    success_url = Column(Text, nullable=True)
    cancel_url = Column(Text, nullable=True)
    original_amount = Column(Numeric(10, 2), nullable=False)
    discount_amount = Column(Numeric(10, 2), default=0, nullable=False)
    final_amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    session_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)
    completed_at = Column(UTCDateTime, nullable=True)

    subscription = relationship("Subscription", back_populates="checkout_sessions")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Lazy wall-clock expiry check"""
        return (now or utcnow()) > self.expires_at

    def is_open(self, now: Optional[datetime] = None) -> bool:
        return self.status == CheckoutSessionStatus.PENDING and not self.is_expired(now)
