"""User model"""
from enum import Enum

from sqlalchemy import Column, Integer, String
from sqlalchemy.orm import relationship

from billing.models.base import Base, UTCDateTime, enum_column_type, utcnow


class UserRole(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


ADMIN_ROLES = frozenset({UserRole.ADMIN, UserRole.SUPER_ADMIN})


class User(Base):
    """Billing view of an account; authentication lives elsewhere"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    document_number = Column(String(20), nullable=True)  # CPF (11 digits) or CNPJ (14 digits)
    role = Column(enum_column_type(UserRole), default=UserRole.USER, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    payment_methods = relationship("PaymentMethod", back_populates="user", cascade="all, delete-orphan")
    subscriptions = relationship("Subscription", back_populates="user")

    @property
    def document_type(self):
        if not self.document_number:
            return None
        digits = "".join(ch for ch in self.document_number if ch.isdigit())
        return "CNPJ" if len(digits) == 14 else "CPF"
