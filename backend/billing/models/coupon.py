"""Coupon, plan restriction and usage ledger models"""
from enum import Enum

from sqlalchemy import (
    Boolean, Column, ForeignKey, Index, Integer, Numeric, String, UniqueConstraint, event
)
from sqlalchemy.orm import relationship

from billing.models.base import Base, UTCDateTime, enum_column_type, utcnow


class DiscountType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"


class CouponStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    EXPIRED = "EXPIRED"


class Coupon(Base):
    __tablename__ = "coupons"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(50), unique=True, nullable=False, index=True)
    discount_type = Column(enum_column_type(DiscountType), nullable=False)
    discount_value = Column(Numeric(10, 2), nullable=False)
    max_discount_amount = Column(Numeric(10, 2), nullable=True)
    applies_to_all_plans = Column(Boolean, default=True, nullable=False)
    status = Column(enum_column_type(CouponStatus), default=CouponStatus.ACTIVE, nullable=False)
    starts_at = Column(UTCDateTime, nullable=True)
    expires_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    restrictions = relationship("CouponPlanRestriction", back_populates="coupon", cascade="all, delete-orphan")

    @property
    def restricted_plan_ids(self) -> frozenset:
        return frozenset(r.plan_id for r in self.restrictions)

    def is_valid_at(self, now) -> bool:
        """Active status and inside the optional validity window"""
        if self.status != CouponStatus.ACTIVE:
            return False
        if self.starts_at is not None and now < self.starts_at:
            return False
        if self.expires_at is not None and now > self.expires_at:
            return False
        return True


class CouponPlanRestriction(Base):
    __tablename__ = "coupon_plan_restrictions"
    __table_args__ = (
        UniqueConstraint("coupon_id", "plan_id", name="uq_coupon_plan_restrictions_coupon_plan"),
    )

    id = Column(Integer, primary_key=True, index=True)
    coupon_id = Column(Integer, ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id", ondelete="CASCADE"), nullable=False)

    coupon = relationship("Coupon", back_populates="restrictions")


class CouponUsage(Base):
    """Append-only ledger of applied discounts, one row per checkout session"""
    __tablename__ = "coupon_usages"
    __table_args__ = (
        Index("ix_coupon_usages_coupon_user", "coupon_id", "user_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    coupon_id = Column(Integer, ForeignKey("coupons.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    checkout_session_id = Column(Integer, ForeignKey("checkout_sessions.id"), nullable=False, unique=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True)
    original_amount = Column(Numeric(10, 2), nullable=False)
    discount_amount = Column(Numeric(10, 2), nullable=False)
    final_amount = Column(Numeric(10, 2), nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)


class ImmutableLedgerError(Exception):
    """Raised when code tries to modify or delete a coupon usage entry"""


@event.listens_for(CouponUsage, "before_update")
def _refuse_coupon_usage_update(mapper, connection, target):
    raise ImmutableLedgerError(f"Coupon usage {target.id} is immutable")


@event.listens_for(CouponUsage, "before_delete")
def _refuse_coupon_usage_delete(mapper, connection, target):
    raise ImmutableLedgerError(f"Coupon usage {target.id} cannot be deleted")
