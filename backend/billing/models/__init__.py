"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from billing.models.base import Base
from billing.models.user import User, UserRole
from billing.models.payment_method import PaymentMethod, PaymentMethodType
from billing.models.plan import BillingInterval, SubscriptionPlan
from billing.models.coupon import (
    Coupon, CouponPlanRestriction, CouponStatus, CouponUsage, DiscountType, ImmutableLedgerError
)
from billing.models.checkout_session import CheckoutSession, CheckoutSessionStatus
from billing.models.subscription import (
    Subscription, SubscriptionStatus, SubscriptionTransition, TransitionSource
)
from billing.models.payment import Payment, PaymentStatus
from billing.models.webhook_event import WebhookEvent, WebhookProcessStatus

# Export all for convenience
__all__ = [
    "Base", "User", "UserRole", "PaymentMethod", "PaymentMethodType",
    "BillingInterval", "SubscriptionPlan",
    "Coupon", "CouponPlanRestriction", "CouponStatus", "CouponUsage", "DiscountType",
    "ImmutableLedgerError", "CheckoutSession", "CheckoutSessionStatus",
    "Subscription", "SubscriptionStatus", "SubscriptionTransition", "TransitionSource",
    "Payment", "PaymentStatus", "WebhookEvent", "WebhookProcessStatus",
]
