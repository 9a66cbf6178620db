"""Pydantic schemas for the billing boundary"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Generic, Optional, TypeVar

from pydantic import BaseModel, Field

from billing.core.errors import BillingError
from billing.models.subscription import Subscription
from billing.models.user import ADMIN_ROLES, UserRole

T = TypeVar("T")


class ErrorPayload(BaseModel):
    kind: str
    code: str
    message: str
    retriable: bool = False
    details: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_error(cls, error: BillingError) -> "ErrorPayload":
        return cls(**error.to_payload())


class ServiceResult(BaseModel, Generic[T]):
    """Discriminated result of a boundary operation: ``data`` on success, ``error`` otherwise"""
    success: bool
    data: Optional[T] = None
    error: Optional[ErrorPayload] = None

    @classmethod
    def ok(cls, data: Any = None) -> "ServiceResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: BillingError) -> "ServiceResult":
        return cls(success=False, error=ErrorPayload.from_error(error))


class Actor(BaseModel):
    """Caller identity as established by the upstream auth layer"""
    user_id: int
    role: UserRole = UserRole.USER

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


class CheckoutRequest(BaseModel):
    plan_id: int
    payment_method_id: int
    coupon_id: Optional[int] = None
    back_url: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class CheckoutResult(BaseModel):
    checkout_url: str
    preference_id: str
    subscription_id: int
    checkout_session_id: int
    expires_at: datetime
    test_mode: bool
    original_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal


class SubscriptionView(BaseModel):
    id: int
    user_id: int
    plan_id: int
    status: str
    is_paused: bool
    paused_at: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    used_job_offers: int
    remaining_job_offers: int
    used_featured_job_offers: int
    remaining_featured_job_offers: int
    gateway_subscription_id: Optional[str] = None
    gateway_preference_id: Optional[str] = None
    renewal_failures: int = 0
    canceled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None

    @classmethod
    def from_model(cls, subscription: Subscription) -> "SubscriptionView":
        return cls(
            id=subscription.id,
            user_id=subscription.user_id,
            plan_id=subscription.plan_id,
            status=subscription.status.value,
            is_paused=subscription.is_paused,
            paused_at=subscription.paused_at,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            next_billing_date=subscription.next_billing_date,
            trial_ends_at=subscription.trial_ends_at,
            used_job_offers=subscription.used_job_offers,
            remaining_job_offers=subscription.remaining_job_offers,
            used_featured_job_offers=subscription.used_featured_job_offers,
            remaining_featured_job_offers=subscription.remaining_featured_job_offers,
            gateway_subscription_id=subscription.gateway_subscription_id,
            gateway_preference_id=subscription.gateway_preference_id,
            renewal_failures=subscription.renewal_failures or 0,
            canceled_at=subscription.canceled_at,
            cancel_reason=subscription.cancel_reason,
        )


class RenewalResult(BaseModel):
    subscription_id: int
    renewed: bool
    status: str
    current_period_end: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    failure_reason: Optional[str] = None
    renewal_failures: int = 0


class ReconcileResult(BaseModel):
    success: bool = True
    action: str
    resource_id: Optional[str] = None
    resource_type: Optional[str] = None
    status: Optional[str] = None
    subscription_id: Optional[int] = None
    payment_id: Optional[str] = None
    message: Optional[str] = None


class WebhookNotification(BaseModel):
    """Gateway push notification, normalized from the modern and legacy shapes"""
    type: str
    action: Optional[str] = None
    resource_id: Optional[str] = None
    live_mode: bool = False
    date_created: Optional[datetime] = None
    raw_payload: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], query: Optional[Dict[str, str]] = None) -> "WebhookNotification":
        """Accepts ``{type, action, data: {id}}`` or legacy ``{topic, resource}`` bodies.

        Query parameters (``type``/``topic`` and ``data.id``/``id``) fill in
        whatever the body leaves out.
        """
        query = query or {}
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}

        event_type = payload.get("type") or payload.get("topic") or query.get("type") or query.get("topic") or ""
        resource_id = data.get("id") or query.get("data.id") or query.get("id")
        if not resource_id and payload.get("resource"):
            # Legacy notifications carry a resource URL or a bare id
            resource_id = str(payload["resource"]).rstrip("/").rsplit("/", 1)[-1]

        return cls(
            type=str(event_type).lower(),
            action=payload.get("action"),
            resource_id=str(resource_id) if resource_id is not None else None,
            live_mode=bool(payload.get("live_mode", False)),
            date_created=payload.get("date_created"),
            raw_payload=payload,
        )
