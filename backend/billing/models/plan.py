"""SubscriptionPlan model"""
from enum import Enum

from sqlalchemy import Boolean, CheckConstraint, Column, Integer, Numeric, String, Text

from billing.models.base import Base, UTCDateTime, enum_column_type, utcnow


class BillingInterval(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    SEMIANNUAL = "SEMIANNUAL"
    ANNUAL = "ANNUAL"


class SubscriptionPlan(Base):
    """Plan catalog entry. Price and interval are frozen once subscribed to."""
    __tablename__ = "subscription_plans"
    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_subscription_plans_price_non_negative"),
        CheckConstraint("interval_count >= 1", name="ck_subscription_plans_interval_count"),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    interval = Column(enum_column_type(BillingInterval), default=BillingInterval.MONTHLY, nullable=False)
    interval_count = Column(Integer, default=1, nullable=False)
    trial_days = Column(Integer, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    max_job_offers = Column(Integer, default=0, nullable=False)
    max_featured_job_offers = Column(Integer, default=0, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)
