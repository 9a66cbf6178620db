"""Payment gateway client (MercadoPago REST API).

Gateway JSON is parsed into the strict models below as soon as it is
received; nothing outside this module touches raw response dictionaries
except to store them as forensic snapshots.
"""
import hashlib
import hmac
from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Optional, Protocol, Tuple

import httpx
from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, field_validator

from billing.core.errors import BillingError, ErrorCode, ErrorKind
from billing.core.logging import gateway_logger
from billing.core.metrics import gateway_requests_counter
from billing.models.payment import PaymentStatus
from billing.models.subscription import SubscriptionStatus

logger = gateway_logger

# Gateway expects JSON numbers for amounts
Amount = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


def _as_str(value):
    return str(value) if value is not None else None


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ============================================================================
# REQUEST MODELS
# ============================================================================

class PreferenceItem(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    quantity: int = 1
    currency_id: str
    unit_price: Amount


class PayerIdentification(BaseModel):
    type: str
    number: str


class PreferencePayer(BaseModel):
    email: str
    name: Optional[str] = None
    identification: Optional[PayerIdentification] = None


class BackUrls(BaseModel):
    success: str
    failure: str
    pending: str


class PaymentExclusions(BaseModel):
    excluded_payment_methods: List[Dict[str, str]] = Field(default_factory=list)
    excluded_payment_types: List[Dict[str, str]] = Field(default_factory=list)
    installments: int = 1


class PreferenceRequest(BaseModel):
    items: List[PreferenceItem]
    payer: PreferencePayer
    back_urls: BackUrls
    external_reference: str
    auto_return: str = "approved"
    payment_methods: PaymentExclusions = Field(default_factory=PaymentExclusions)
    notification_url: Optional[str] = None
    expires: bool = True
    expiration_date_to: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# RESPONSE MODELS
# ============================================================================

class Preference(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    init_point: str
    sandbox_init_point: Optional[str] = None
    external_reference: Optional[str] = None

    coerce_ids = field_validator("id", "external_reference", mode="before")(_as_str)


class GatewayPayment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    status: str
    status_detail: Optional[str] = None
    transaction_amount: Decimal
    currency_id: Optional[str] = None
    date_created: datetime
    date_approved: Optional[datetime] = None
    external_reference: Optional[str] = None
    preference_id: Optional[str] = None
    payment_type_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    raw: Dict[str, Any] = Field(default_factory=dict, exclude=True)

    coerce_ids = field_validator("id", "external_reference", "preference_id", mode="before")(_as_str)
    utc_dates = field_validator("date_created", "date_approved", mode="after")(_as_utc)

    @field_validator("metadata", mode="before")
    @classmethod
    def metadata_or_empty(cls, v):
        return v or {}

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "GatewayPayment":
        return cls.model_validate({**data, "raw": data})

    @property
    def reported_at(self) -> datetime:
        """Gateway timestamp used to order notifications"""
        return self.date_approved or self.date_created

    @property
    def local_status(self) -> PaymentStatus:
        return map_payment_status(self.status)


class GatewaySubscription(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    status: str
    external_reference: Optional[str] = None
    date_created: Optional[datetime] = None
    last_modified: Optional[datetime] = None
    next_payment_date: Optional[datetime] = None
    raw: Dict[str, Any] = Field(default_factory=dict, exclude=True)

    coerce_ids = field_validator("id", "external_reference", mode="before")(_as_str)
    utc_dates = field_validator("date_created", "last_modified", "next_payment_date", mode="after")(_as_utc)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "GatewaySubscription":
        return cls.model_validate({**data, "raw": data})


# ============================================================================
# STATUS MAPPING
# ============================================================================

PAYMENT_STATUS_MAP = {
    "approved": PaymentStatus.APPROVED,
    "authorized": PaymentStatus.APPROVED,
    "rejected": PaymentStatus.REJECTED,
    "cancelled": PaymentStatus.CANCELLED,
    "in_process": PaymentStatus.IN_PROCESS,
    "in_mediation": PaymentStatus.IN_MEDIATION,
    "refunded": PaymentStatus.REFUNDED,
    "charged_back": PaymentStatus.CHARGED_BACK,
    "pending": PaymentStatus.PENDING,
}

SUBSCRIPTION_STATUS_MAP = {
    "authorized": (SubscriptionStatus.ACTIVE, False),
    "paused": (SubscriptionStatus.ACTIVE, True),
    "cancelled": (SubscriptionStatus.CANCELED, False),
    "ended": (SubscriptionStatus.EXPIRED, False),
    "pending": (SubscriptionStatus.PENDING, False),
}


def map_payment_status(gateway_status: Optional[str]) -> PaymentStatus:
    return PAYMENT_STATUS_MAP.get((gateway_status or "").lower(), PaymentStatus.PENDING)


def map_subscription_status(gateway_status: Optional[str]) -> Tuple[SubscriptionStatus, bool]:
    """Returns (status, paused) for a gateway preapproval status"""
    return SUBSCRIPTION_STATUS_MAP.get((gateway_status or "").lower(), (SubscriptionStatus.PENDING, False))


# ============================================================================
# WEBHOOK SIGNATURE
# ============================================================================

def parse_signature_header(header: Optional[str]) -> Dict[str, str]:
    """Split ``ts=...,v1=...`` into its parts"""
    parts = {}
    for chunk in (header or "").split(","):
        key, sep, value = chunk.strip().partition("=")
        if sep:
            parts[key.strip()] = value.strip()
    return parts


def verify_webhook_signature(
    secret: str,
    signature_header: Optional[str],
    request_id: Optional[str],
    data_id: Optional[str],
    allow_unsigned: bool = False
) -> bool:
    """Check the ``x-signature`` header of a gateway notification.

    The signed manifest is ``id:{data.id};request-id:{x-request-id};ts:{ts};``
    hashed with HMAC-SHA256. Without a configured secret the check only passes
    when ``allow_unsigned`` is set (non-production environments).
    """
    if not secret:
        if not allow_unsigned:
            logger.warning("Webhook secret not configured, rejecting notification")
        return allow_unsigned

    parts = parse_signature_header(signature_header)
    ts, received = parts.get("ts"), parts.get("v1")
    if not ts or not received:
        logger.warning("Webhook received without a usable x-signature header")
        return False

    manifest = ""
    if data_id:
        # Alphanumeric ids are signed in lowercase
        manifest += f"id:{data_id.lower()};"
    if request_id:
        manifest += f"request-id:{request_id};"
    manifest += f"ts:{ts};"

    expected = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, received):
        logger.warning(f"Invalid webhook signature for resource {data_id}")
        return False
    return True


# ============================================================================
# CLIENT
# ============================================================================

class PaymentGatewayClient(Protocol):
    """Operations the billing core needs from the payment gateway"""

    def create_preference(self, request: PreferenceRequest, idempotency_key: str) -> Preference: ...

    def get_preference(self, preference_id: str) -> Preference: ...

    def search_payments(
        self,
        preference_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        external_reference: Optional[str] = None
    ) -> List[GatewayPayment]: ...

    def get_payment(self, payment_id: str) -> GatewayPayment: ...

    def get_subscription(self, subscription_id: str) -> GatewaySubscription: ...


class MercadoPagoGateway:
    """MercadoPago REST client with bounded timeouts.

    Timeouts, transport errors and 5xx responses raise a retriable
    GATEWAY_UNAVAILABLE ``BillingError``; 404 raises NOT_FOUND.
    """

    def __init__(
        self,
        access_token: str,
        base_url: str = "https://api.mercadopago.com",
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self._client = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout),
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    def close(self):
        self._client.close()

    def _request(self, operation: str, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            gateway_requests_counter.labels(operation=operation, outcome="timeout").inc()
            logger.warning(f"Gateway {operation} timed out: {e}")
            raise BillingError.gateway_unavailable(
                ErrorCode.GATEWAY_TIMEOUT, "Payment gateway did not answer in time", operation=operation
            ) from e
        except httpx.RequestError as e:
            gateway_requests_counter.labels(operation=operation, outcome="transport_error").inc()
            logger.warning(f"Gateway {operation} failed: {e}")
            raise BillingError.gateway_unavailable(
                ErrorCode.GATEWAY_ERROR, "Payment gateway is unreachable", operation=operation
            ) from e

        if response.status_code >= 500:
            gateway_requests_counter.labels(operation=operation, outcome="server_error").inc()
            logger.error(f"Gateway {operation} returned {response.status_code}: {response.text[:500]}")
            raise BillingError.gateway_unavailable(
                ErrorCode.GATEWAY_ERROR, "Payment gateway error", operation=operation,
                status_code=response.status_code
            )
        if response.status_code == 404:
            gateway_requests_counter.labels(operation=operation, outcome="not_found").inc()
            raise BillingError.not_found(
                ErrorCode.GATEWAY_RESOURCE_NOT_FOUND, f"Gateway resource not found ({operation})",
                operation=operation
            )
        if response.status_code >= 400:
            gateway_requests_counter.labels(operation=operation, outcome="client_error").inc()
            logger.error(f"Gateway {operation} rejected request ({response.status_code}): {response.text[:500]}")
            raise BillingError(
                ErrorKind.BAD_REQUEST, ErrorCode.GATEWAY_ERROR, "Payment gateway rejected the request",
                {"operation": operation, "status_code": response.status_code}
            )

        gateway_requests_counter.labels(operation=operation, outcome="success").inc()
        return response.json()

    def create_preference(self, request: PreferenceRequest, idempotency_key: str) -> Preference:
        data = self._request(
            "create_preference", "POST", "/checkout/preferences",
            json=request.model_dump(mode="json", exclude_none=True),
            headers={"X-Idempotency-Key": idempotency_key},
        )
        return Preference.model_validate(data)

    def get_preference(self, preference_id: str) -> Preference:
        data = self._request("get_preference", "GET", f"/checkout/preferences/{preference_id}")
        return Preference.model_validate(data)

    def search_payments(
        self,
        preference_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        external_reference: Optional[str] = None
    ) -> List[GatewayPayment]:
        params = {"sort": "date_created", "criteria": "desc"}
        if preference_id:
            params["preference_id"] = preference_id
        if subscription_id:
            params["preapproval_id"] = subscription_id
        if external_reference:
            params["external_reference"] = external_reference
        data = self._request("search_payments", "GET", "/v1/payments/search", params=params)
        return [GatewayPayment.from_api(item) for item in data.get("results") or []]

    def get_payment(self, payment_id: str) -> GatewayPayment:
        data = self._request("get_payment", "GET", f"/v1/payments/{payment_id}")
        return GatewayPayment.from_api(data)

    def get_subscription(self, subscription_id: str) -> GatewaySubscription:
        data = self._request("get_subscription", "GET", f"/preapproval/{subscription_id}")
        return GatewaySubscription.from_api(data)
