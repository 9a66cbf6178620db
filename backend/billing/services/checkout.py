"""Checkout initiation"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from billing.core.config import CHECKOUT_SESSION_TTL
from billing.core.errors import BillingError, ErrorCode
from billing.core.metrics import checkouts_counter
from billing.models.checkout_session import CheckoutSession, CheckoutSessionStatus
from billing.models.coupon import Coupon, CouponUsage
from billing.models.payment_method import PaymentMethod, PaymentMethodType
from billing.models.plan import SubscriptionPlan
from billing.models.subscription import Subscription, TransitionSource
from billing.models.user import User
from billing.schemas.billing import CheckoutResult
from billing.services.discount import CouponTerms, DiscountResult, calculate_discount
from billing.services.gateway import (
    BackUrls, PayerIdentification, PaymentExclusions, PaymentGatewayClient,
    PreferenceItem, PreferencePayer, PreferenceRequest
)
from billing.services.lifecycle import SubscriptionLifecycleManager
from billing.services.stores import CheckoutSessionStore

logger = logging.getLogger(__name__)

# Gateway payment type ids per local payment family
GATEWAY_PAYMENT_TYPES = {
    PaymentMethodType.CREDIT_CARD: "credit_card",
    PaymentMethodType.DEBIT_CARD: "debit_card",
    PaymentMethodType.PIX: "pix",
    PaymentMethodType.BANK_SLIP: "ticket",
    PaymentMethodType.BANK_TRANSFER: "bank_transfer",
}

CARD_BRANDS = ("visa", "master", "amex", "elo", "hipercard", "diners")


def build_payment_exclusions(method_type: PaymentMethodType, brand: Optional[str] = None) -> PaymentExclusions:
    """Restrict the gateway checkout to the family (and card brand) the user picked.

    The gateway's own checkout allows everything.
    """
    if method_type == PaymentMethodType.GATEWAY_CHECKOUT:
        return PaymentExclusions()

    allowed = GATEWAY_PAYMENT_TYPES[method_type]
    excluded_types = [
        {"id": gateway_type} for gateway_type in GATEWAY_PAYMENT_TYPES.values() if gateway_type != allowed
    ]
    excluded_methods: List[Dict[str, str]] = []
    if method_type == PaymentMethodType.CREDIT_CARD and brand:
        excluded_methods = [{"id": other} for other in CARD_BRANDS if other != brand.lower()]
    return PaymentExclusions(excluded_payment_methods=excluded_methods, excluded_payment_types=excluded_types)


def generate_transaction_id(now: datetime) -> str:
    """Correlation id sent to the gateway as external reference"""
    return f"sub_{int(now.timestamp() * 1000)}_{secrets.token_hex(4)}"


@dataclass
class CheckoutContext:
    user: User
    plan: SubscriptionPlan
    payment_method: PaymentMethod
    coupon: Optional[Coupon]
    pricing: DiscountResult


class CheckoutOrchestrator:
    """Opens a PENDING subscription and a checkout session against a new gateway preference.

    Every call mints a fresh transaction id and preference, so a failed call
    can simply be retried; sessions that are never paid expire on their own.
    """

    def __init__(
        self,
        db: Session,
        sessions: CheckoutSessionStore,
        lifecycle: SubscriptionLifecycleManager,
        gateway: PaymentGatewayClient,
        frontend_url: str,
        currency: str = "BRL",
        test_mode: bool = True
    ):
        self.db = db
        self.sessions = sessions
        self.lifecycle = lifecycle
        self.gateway = gateway
        self.frontend_url = frontend_url.rstrip("/")
        self.currency = currency
        self.test_mode = test_mode

    def _load_context(
        self,
        user_id: int,
        plan_id: int,
        payment_method_id: int,
        coupon_id: Optional[int],
        now: datetime
    ) -> CheckoutContext:
        user = self.db.query(User).filter(User.id == user_id).first()
        if not user:
            raise BillingError.not_found(ErrorCode.USER_NOT_FOUND, "User not found", user_id=user_id)

        plan = self.db.query(SubscriptionPlan).filter(SubscriptionPlan.id == plan_id).first()
        if not plan:
            raise BillingError.not_found(ErrorCode.PLAN_NOT_FOUND, "Plan not found", plan_id=plan_id)
        if not plan.is_active:
            raise BillingError.bad_request(
                ErrorCode.PLAN_INACTIVE, "This plan is no longer available", plan_id=plan_id
            )

        payment_method = (
            self.db.query(PaymentMethod)
            .filter(PaymentMethod.id == payment_method_id, PaymentMethod.user_id == user_id)
            .first()
        )
        if not payment_method:
            raise BillingError.not_found(
                ErrorCode.PAYMENT_METHOD_NOT_FOUND, "Payment method not found",
                payment_method_id=payment_method_id
            )
        if not payment_method.is_active:
            raise BillingError.bad_request(
                ErrorCode.PAYMENT_METHOD_INACTIVE, "This payment method is disabled",
                payment_method_id=payment_method_id
            )

        coupon = None
        terms = None
        if coupon_id is not None:
            coupon = self.db.query(Coupon).filter(Coupon.id == coupon_id).first()
            if not coupon:
                raise BillingError.bad_request(ErrorCode.COUPON_NOT_FOUND, "Coupon not found", coupon_id=coupon_id)
            terms = CouponTerms.from_coupon(coupon, now)
            if not terms.active:
                logger.info(f"Coupon {coupon.code} is not valid at {now.isoformat()}, charging full price")

        pricing = calculate_discount(plan.price, terms, plan.id)
        if not pricing.has_discount:
            coupon = None
        return CheckoutContext(user, plan, payment_method, coupon, pricing)

    def _build_preference(
        self,
        ctx: CheckoutContext,
        transaction_id: str,
        back_url: Optional[str],
        expires_at: datetime
    ) -> PreferenceRequest:
        base_url = (back_url or self.frontend_url).rstrip("/")
        identification = None
        if ctx.user.document_number:
            identification = PayerIdentification(type=ctx.user.document_type, number=ctx.user.document_number)

        return PreferenceRequest(
            items=[PreferenceItem(
                id=str(ctx.plan.id),
                title=ctx.plan.name,
                description=ctx.plan.description,
                quantity=1,
                currency_id=self.currency,
                unit_price=ctx.pricing.final_amount,
            )],
            payer=PreferencePayer(email=ctx.user.email, name=ctx.user.name, identification=identification),
            back_urls=BackUrls(
                success=f"{base_url}/subscription/success",
                failure=f"{base_url}/subscription/failure",
                pending=f"{base_url}/subscription/pending",
            ),
            external_reference=transaction_id,
            payment_methods=build_payment_exclusions(
                ctx.payment_method.type, ctx.payment_method.gateway_payment_method_id
            ),
            expiration_date_to=expires_at,
            metadata={
                "transaction_id": transaction_id,
                "user_id": ctx.user.id,
                "plan_id": ctx.plan.id,
                "coupon_id": ctx.coupon.id if ctx.coupon else None,
            },
        )

    def init_checkout(
        self,
        user_id: int,
        plan_id: int,
        payment_method_id: int,
        coupon_id: Optional[int] = None,
        back_url: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> CheckoutResult:
        """Validate, price and open a checkout. The caller commits."""
        now = now or datetime.now(timezone.utc)
        ctx = self._load_context(user_id, plan_id, payment_method_id, coupon_id, now)

        transaction_id = generate_transaction_id(now)
        expires_at = now + CHECKOUT_SESSION_TTL
        preference = self.gateway.create_preference(
            self._build_preference(ctx, transaction_id, back_url, expires_at),
            idempotency_key=transaction_id,
        )
        checkout_url = preference.sandbox_init_point if self.test_mode and preference.sandbox_init_point \
            else preference.init_point

        subscription = self.lifecycle.create(Subscription(
            user_id=ctx.user.id,
            plan=ctx.plan,
            payment_method_id=ctx.payment_method.id,
            coupon_id=ctx.coupon.id if ctx.coupon else None,
            gateway_preference_id=preference.id,
            subscription_metadata={
                "transaction_id": transaction_id,
                "preference_id": preference.id,
                "checkout_url": checkout_url,
            },
        ), now, TransitionSource.USER)

        base_url = (back_url or self.frontend_url).rstrip("/")
        session = self.sessions.add(CheckoutSession(
            user_id=ctx.user.id,
            plan_id=ctx.plan.id,
            payment_method_id=ctx.payment_method.id,
            coupon_id=ctx.coupon.id if ctx.coupon else None,
            subscription_id=subscription.id,
            status=CheckoutSessionStatus.PENDING,
            transaction_id=transaction_id,
            gateway_preference_id=preference.id,
            checkout_url=preference.init_point,
            sandbox_checkout_url=preference.sandbox_init_point,
            success_url=f"{base_url}/subscription/success",
            cancel_url=f"{base_url}/subscription/failure",
            original_amount=ctx.pricing.original_amount,
            discount_amount=ctx.pricing.discount_amount,
            final_amount=ctx.pricing.final_amount,
            currency=self.currency,
            session_metadata={"test_mode": self.test_mode},
            created_at=now,
            expires_at=expires_at,
        ))
        subscription.checkout_session_id = session.id

        if ctx.coupon is not None:
            # Same unit of work as the session: a discount is never counted without its session
            self.db.add(CouponUsage(
                coupon_id=ctx.coupon.id,
                user_id=ctx.user.id,
                checkout_session_id=session.id,
                subscription_id=subscription.id,
                original_amount=ctx.pricing.original_amount,
                discount_amount=ctx.pricing.discount_amount,
                final_amount=ctx.pricing.final_amount,
                created_at=now,
            ))
        self.db.flush()

        checkouts_counter.labels(outcome="created").inc()
        logger.info(
            f"Checkout {transaction_id} opened for user {ctx.user.id}, plan {ctx.plan.id}: "
            f"{ctx.pricing.final_amount} {self.currency} (discount {ctx.pricing.discount_amount})"
        )
        return CheckoutResult(
            checkout_url=checkout_url,
            preference_id=preference.id,
            subscription_id=subscription.id,
            checkout_session_id=session.id,
            expires_at=expires_at,
            test_mode=self.test_mode,
            original_amount=ctx.pricing.original_amount,
            discount_amount=ctx.pricing.discount_amount,
            final_amount=ctx.pricing.final_amount,
        )

    def resume_checkout(self, session_id: int, user_id: int, now: datetime) -> CheckoutResult:
        """Return the URL of a session that can still be paid.

        Reusing an expired or already consumed session is a CONFLICT. Expiry is
        a wall-clock comparison, so no sweep is needed for this check.
        """
        session = self.sessions.get(session_id)
        if not session or session.user_id != user_id:
            raise BillingError.not_found(
                ErrorCode.CHECKOUT_SESSION_NOT_FOUND, "Checkout session not found", checkout_session_id=session_id
            )
        if session.status == CheckoutSessionStatus.COMPLETED:
            raise BillingError.conflict(
                ErrorCode.SESSION_CONSUMED, "This checkout was already paid", checkout_session_id=session_id
            )
        if session.status != CheckoutSessionStatus.PENDING or session.is_expired(now):
            raise BillingError.conflict(
                ErrorCode.SESSION_EXPIRED, "This checkout has expired, start a new one",
                checkout_session_id=session_id
            )
        checkout_url = session.sandbox_checkout_url if self.test_mode and session.sandbox_checkout_url \
            else session.checkout_url
        return CheckoutResult(
            checkout_url=checkout_url,
            preference_id=session.gateway_preference_id,
            subscription_id=session.subscription_id,
            checkout_session_id=session.id,
            expires_at=session.expires_at,
            test_mode=self.test_mode,
            original_amount=session.original_amount,
            discount_amount=session.discount_amount,
            final_amount=session.final_amount,
        )
