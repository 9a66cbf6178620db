"""PaymentMethod model"""
from enum import Enum

from sqlalchemy import Boolean, Column, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from billing.models.base import Base, UTCDateTime, enum_column_type, utcnow


class PaymentMethodType(str, Enum):
    CREDIT_CARD = "CREDIT_CARD"
    DEBIT_CARD = "DEBIT_CARD"
    PIX = "PIX"
    BANK_SLIP = "BANK_SLIP"
    BANK_TRANSFER = "BANK_TRANSFER"
    GATEWAY_CHECKOUT = "GATEWAY_CHECKOUT"  # the gateway's own universal checkout


class PaymentMethod(Base):
    """Payment method a user picked for their subscriptions"""
    __tablename__ = "payment_methods"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(enum_column_type(PaymentMethodType), nullable=False)
    gateway_payment_method_id = Column(String(50), nullable=True)  # card brand, e.g. 'visa'
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    user = relationship("User", back_populates="payment_methods")
