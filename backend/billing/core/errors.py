"""Billing error model.

Every expected failure in the billing core is a ``BillingError`` carrying an
``ErrorKind`` (what class of failure it is, used for HTTP mapping and retry
decisions) and an ``ErrorCode`` (the precise reason, shown to callers).
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    BAD_REQUEST = "BAD_REQUEST"
    GATEWAY_UNAVAILABLE = "GATEWAY_UNAVAILABLE"
    CONFLICT = "CONFLICT"
    ACCESS_DENIED = "ACCESS_DENIED"


class ErrorCode(str, Enum):
    USER_NOT_FOUND = "USER_NOT_FOUND"
    PLAN_NOT_FOUND = "PLAN_NOT_FOUND"
    PAYMENT_METHOD_NOT_FOUND = "PAYMENT_METHOD_NOT_FOUND"
    COUPON_NOT_FOUND = "COUPON_NOT_FOUND"
    SUBSCRIPTION_NOT_FOUND = "SUBSCRIPTION_NOT_FOUND"
    CHECKOUT_SESSION_NOT_FOUND = "CHECKOUT_SESSION_NOT_FOUND"
    PLAN_INACTIVE = "PLAN_INACTIVE"
    PAYMENT_METHOD_INACTIVE = "PAYMENT_METHOD_INACTIVE"
    COUPON_NOT_APPLICABLE = "COUPON_NOT_APPLICABLE"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    SESSION_CONSUMED = "SESSION_CONSUMED"
    CONCURRENT_UPDATE = "CONCURRENT_UPDATE"
    GATEWAY_TIMEOUT = "GATEWAY_TIMEOUT"
    GATEWAY_ERROR = "GATEWAY_ERROR"
    GATEWAY_RESOURCE_NOT_FOUND = "GATEWAY_RESOURCE_NOT_FOUND"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    ACCESS_DENIED = "ACCESS_DENIED"


RETRIABLE_KINDS = frozenset({ErrorKind.GATEWAY_UNAVAILABLE, ErrorKind.CONFLICT})

# Used by the API layer; every kind must be listed
HTTP_STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.BAD_REQUEST: 400,
    ErrorKind.GATEWAY_UNAVAILABLE: 503,
    ErrorKind.CONFLICT: 409,
    ErrorKind.ACCESS_DENIED: 403,
}


class BillingError(Exception):
    """Expected domain failure raised by billing components"""

    def __init__(
        self,
        kind: ErrorKind,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.kind = kind
        self.code = code
        self.message = message
        self.details = details or {}

    @property
    def retriable(self) -> bool:
        return self.kind in RETRIABLE_KINDS

    def to_payload(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "code": self.code.value,
            "message": self.message,
            "retriable": self.retriable,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"BillingError({self.kind.value}, {self.code.value}, {self.message!r})"

    # Constructors for the common cases

    @classmethod
    def not_found(cls, code: ErrorCode, message: str, **details) -> "BillingError":
        return cls(ErrorKind.NOT_FOUND, code, message, details)

    @classmethod
    def bad_request(cls, code: ErrorCode, message: str, **details) -> "BillingError":
        return cls(ErrorKind.BAD_REQUEST, code, message, details)

    @classmethod
    def invalid_transition(cls, current_status: str, action: str, **details) -> "BillingError":
        return cls(
            ErrorKind.BAD_REQUEST,
            ErrorCode.INVALID_TRANSITION,
            f"Cannot {action} a subscription in status {current_status}",
            {"status": current_status, "action": action, **details}
        )

    @classmethod
    def gateway_unavailable(cls, code: ErrorCode, message: str, **details) -> "BillingError":
        return cls(ErrorKind.GATEWAY_UNAVAILABLE, code, message, details)

    @classmethod
    def conflict(cls, code: ErrorCode, message: str, **details) -> "BillingError":
        return cls(ErrorKind.CONFLICT, code, message, details)

    @classmethod
    def access_denied(cls, message: str = "You do not have access to this subscription", **details) -> "BillingError":
        return cls(ErrorKind.ACCESS_DENIED, ErrorCode.ACCESS_DENIED, message, details)
