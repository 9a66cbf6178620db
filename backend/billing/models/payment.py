"""Payment model"""
from enum import Enum

from sqlalchemy import JSON, Boolean, Column, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship

from billing.models.base import Base, UTCDateTime, enum_column_type, utcnow


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    IN_PROCESS = "IN_PROCESS"
    IN_MEDIATION = "IN_MEDIATION"
    CHARGED_BACK = "CHARGED_BACK"


# Statuses the gateway may still move forward
UNSETTLED_PAYMENT_STATUSES = frozenset({
    PaymentStatus.PENDING, PaymentStatus.IN_PROCESS, PaymentStatus.IN_MEDIATION
})

# Forward moves a recorded payment may still make
PAYMENT_STATUS_PROGRESSIONS = {
    PaymentStatus.PENDING: frozenset(PaymentStatus) - {PaymentStatus.PENDING},
    PaymentStatus.IN_PROCESS: frozenset(PaymentStatus) - {PaymentStatus.IN_PROCESS, PaymentStatus.PENDING},
    PaymentStatus.IN_MEDIATION: frozenset(PaymentStatus) - {PaymentStatus.IN_MEDIATION, PaymentStatus.PENDING},
    PaymentStatus.APPROVED: frozenset({PaymentStatus.REFUNDED, PaymentStatus.CHARGED_BACK}),
}


class Payment(Base):
    """A gateway payment ingested for a subscription, keyed by the gateway id"""
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True)
    gateway_payment_id = Column(String(255), unique=True, nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=True)
    status = Column(enum_column_type(PaymentStatus), nullable=False)
    payment_date = Column(UTCDateTime, nullable=False)  # gateway-reported timestamp
    gateway_status = Column(String(50), nullable=False)
    gateway_status_detail = Column(String(255), nullable=True)
    payment_type = Column(String(50), nullable=True)
    raw_response = Column(JSON, nullable=True)
    status_history = Column(JSON, nullable=True)
    applied = Column(Boolean, default=False, nullable=False)  # was the latest settled payment when recorded
    covers_period_end = Column(UTCDateTime, nullable=True)  # billing period this payment paid for
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    subscription = relationship("Subscription", back_populates="payments")

    def can_progress_to(self, status: PaymentStatus) -> bool:
        return status in PAYMENT_STATUS_PROGRESSIONS.get(self.status, frozenset())
