"""Subscription and transition history models"""
from enum import Enum

from sqlalchemy import JSON, Boolean, Column, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from billing.models.base import Base, UTCDateTime, enum_column_type, utcnow


class SubscriptionStatus(str, Enum):
    PENDING = "PENDING"
    TRIAL = "TRIAL"
    ACTIVE = "ACTIVE"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAST_DUE = "PAST_DUE"
    ON_HOLD = "ON_HOLD"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"


TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED})
GRACE_STATUSES = frozenset({SubscriptionStatus.PAST_DUE, SubscriptionStatus.ON_HOLD})


class TransitionSource(str, Enum):
    USER = "USER"
    WEBHOOK = "WEBHOOK"
    SYNC = "SYNC"
    SYSTEM = "SYSTEM"


class Subscription(Base):
    """A user's subscription to a plan and its billing state"""
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=False)
    payment_method_id = Column(Integer, ForeignKey("payment_methods.id"), nullable=False)
    coupon_id = Column(Integer, ForeignKey("coupons.id"), nullable=True)
    checkout_session_id = Column(Integer, nullable=True)  # session that opened this subscription
    status = Column(enum_column_type(SubscriptionStatus), default=SubscriptionStatus.PENDING, nullable=False, index=True)
    status_changed_at = Column(UTCDateTime, default=utcnow, nullable=False)
    is_paused = Column(Boolean, default=False, nullable=False)
    paused_at = Column(UTCDateTime, nullable=True)
    current_period_start = Column(UTCDateTime, nullable=True)
    current_period_end = Column(UTCDateTime, nullable=True)
    next_billing_date = Column(UTCDateTime, nullable=True)
    trial_ends_at = Column(UTCDateTime, nullable=True)
    used_job_offers = Column(Integer, default=0, nullable=False)
    used_featured_job_offers = Column(Integer, default=0, nullable=False)
    gateway_subscription_id = Column(String(255), unique=True, nullable=True, index=True)
    gateway_preference_id = Column(String(255), nullable=True, index=True)
    last_payment_at = Column(UTCDateTime, nullable=True)  # gateway timestamp of the latest applied payment
    renewal_failures = Column(Integer, default=0, nullable=False)
    renewal_attempted_at = Column(UTCDateTime, nullable=True)
    canceled_at = Column(UTCDateTime, nullable=True)
    cancel_reason = Column(Text, nullable=True)
    subscription_metadata = Column("metadata", JSON, nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    user = relationship("User", back_populates="subscriptions")
    plan = relationship("SubscriptionPlan")
    payment_method = relationship("PaymentMethod")
    coupon = relationship("Coupon")
    checkout_sessions = relationship("CheckoutSession", back_populates="subscription")
    payments = relationship("Payment", back_populates="subscription", order_by="Payment.id")
    transitions = relationship("SubscriptionTransition", back_populates="subscription",
                               order_by="SubscriptionTransition.id")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def remaining_job_offers(self) -> int:
        return max((self.plan.max_job_offers if self.plan else 0) - self.used_job_offers, 0)

    @property
    def remaining_featured_job_offers(self) -> int:
        return max((self.plan.max_featured_job_offers if self.plan else 0) - self.used_featured_job_offers, 0)


class SubscriptionTransition(Base):
    """Append-only status history of a subscription"""
    __tablename__ = "subscription_transitions"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True)
    from_status = Column(enum_column_type(SubscriptionStatus), nullable=True)
    to_status = Column(enum_column_type(SubscriptionStatus), nullable=False)
    action = Column(String(50), nullable=False)  # 'create', 'confirm_payment', 'cancel', 'pause', ...
    source = Column(enum_column_type(TransitionSource), nullable=False)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True)
    reason = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    subscription = relationship("Subscription", back_populates="transitions")
