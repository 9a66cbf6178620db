"""WebhookEvent model"""
from enum import Enum

from sqlalchemy import JSON, Boolean, Column, Integer, String, Text

from billing.models.base import Base, UTCDateTime, enum_column_type, utcnow


class WebhookProcessStatus(str, Enum):
    RECEIVED = "RECEIVED"
    PROCESSED = "PROCESSED"
    IGNORED = "IGNORED"
    FAILED = "FAILED"


class WebhookEvent(Base):
    """Payment gateway notification log"""
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    source = Column(String(50), default="mercadopago", nullable=False)
    event_type = Column(String(100), nullable=False, index=True)
    action = Column(String(100), nullable=True)
    resource_id = Column(String(255), nullable=True, index=True)
    live_mode = Column(Boolean, default=False, nullable=False)
    payload = Column(JSON, nullable=False)
    process_status = Column(enum_column_type(WebhookProcessStatus), default=WebhookProcessStatus.RECEIVED, nullable=False)
    outcome = Column(String(50), nullable=True)  # reconciler action, e.g. 'payment_recorded', 'duplicate'
    subscription_id = Column(Integer, nullable=True, index=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    processed_at = Column(UTCDateTime, nullable=True)
