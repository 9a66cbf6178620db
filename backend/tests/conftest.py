"""Shared pytest fixtures for test suite"""
import os
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Generator

# Must be set before billing modules read their settings
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("MAINTENANCE_ENABLED", "false")
os.environ.setdefault("OTEL_EXPORTER_OTLP_ENDPOINT", "")

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from billing.container import BillingContainer
from billing.core.config import Settings
from billing.core.errors import BillingError, ErrorCode
from billing.db.session import get_db
from billing.models import Base
from billing.models.coupon import Coupon, CouponPlanRestriction, CouponStatus, DiscountType
from billing.models.payment_method import PaymentMethod, PaymentMethodType
from billing.models.plan import BillingInterval, SubscriptionPlan
from billing.models.user import User, UserRole
from billing.schemas.billing import Actor, CheckoutRequest
from billing.services.gateway import GatewayPayment, GatewaySubscription, Preference


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

T0 = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Controllable clock handed to the billing service"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeGateway:
    """In-memory payment gateway implementing the client protocol"""

    def __init__(self):
        self.preferences = {}
        self.payments = {}
        self.subscriptions = {}
        self.preference_requests = []
        self.fail_with = None
        self.calls = []

    def _call(self, operation: str):
        self.calls.append(operation)
        if self.fail_with is not None:
            raise self.fail_with

    @staticmethod
    def _missing(what: str, resource_id: str):
        return BillingError.not_found(
            ErrorCode.GATEWAY_RESOURCE_NOT_FOUND, f"{what} {resource_id} not found", resource_id=resource_id
        )

    def fail_next_calls(self, error: BillingError = None):
        self.fail_with = error or BillingError.gateway_unavailable(
            ErrorCode.GATEWAY_TIMEOUT, "Payment gateway did not answer in time"
        )

    # Test helpers

    def add_payment(self, payment_id, status, at, preference_id=None, external_reference=None,
                    amount="80.00", status_detail=None, preapproval_id=None) -> GatewayPayment:
        data = {
            "id": payment_id,
            "status": status,
            "status_detail": status_detail or status,
            "transaction_amount": amount,
            "currency_id": "BRL",
            "date_created": at.isoformat(),
            "date_approved": at.isoformat() if status == "approved" else None,
            "external_reference": external_reference,
            "preference_id": preference_id,
            "payment_type_id": "credit_card",
            "preapproval_id": preapproval_id,
        }
        payment = GatewayPayment.from_api(data)
        self.payments[payment.id] = payment
        return payment

    def add_subscription(self, subscription_id, status, external_reference=None,
                         next_payment_date=None) -> GatewaySubscription:
        gs = GatewaySubscription.from_api({
            "id": subscription_id,
            "status": status,
            "external_reference": external_reference,
            "next_payment_date": next_payment_date.isoformat() if next_payment_date else None,
        })
        self.subscriptions[gs.id] = gs
        return gs

    # Protocol

    def create_preference(self, request, idempotency_key):
        self._call("create_preference")
        number = len(self.preferences) + 1
        preference = Preference(
            id=f"pref-{number}",
            init_point=f"https://gateway.test/checkout?pref_id=pref-{number}",
            sandbox_init_point=f"https://sandbox.gateway.test/checkout?pref_id=pref-{number}",
            external_reference=request.external_reference,
        )
        self.preferences[preference.id] = preference
        self.preference_requests.append((request, idempotency_key))
        return preference

    def get_preference(self, preference_id):
        self._call("get_preference")
        if preference_id not in self.preferences:
            raise self._missing("Preference", preference_id)
        return self.preferences[preference_id]

    def search_payments(self, preference_id=None, subscription_id=None, external_reference=None):
        self._call("search_payments")
        results = []
        for payment in self.payments.values():
            if preference_id and payment.preference_id != preference_id:
                continue
            if subscription_id and payment.raw.get("preapproval_id") != subscription_id:
                continue
            if external_reference and payment.external_reference != external_reference:
                continue
            results.append(payment)
        return sorted(results, key=lambda p: p.date_created, reverse=True)

    def get_payment(self, payment_id):
        self._call("get_payment")
        if str(payment_id) not in self.payments:
            raise self._missing("Payment", payment_id)
        return self.payments[str(payment_id)]

    def get_subscription(self, subscription_id):
        self._call("get_subscription")
        if subscription_id not in self.subscriptions:
            raise self._missing("Subscription", subscription_id)
        return self.subscriptions[subscription_id]


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    # Create all tables
    Base.metadata.create_all(bind=test_engine)

    # Create session
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        # Drop all tables after test
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def fake_redis():
    """Redis client using fakeredis (Lua enabled for lock release)"""
    return fakeredis.FakeStrictRedis(decode_responses=True)


@pytest.fixture(scope="function")
def clock() -> FrozenClock:
    return FrozenClock(T0)


@pytest.fixture(scope="function")
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture(scope="function")
def test_settings() -> Settings:
    return Settings(
        DATABASE_URL=TEST_DATABASE_URL,
        ENVIRONMENT="test",
        FRONTEND_URL="http://localhost:3000",
        GATEWAY_ACCESS_TOKEN="TEST-token",
        GATEWAY_WEBHOOK_SECRET="",
        GATEWAY_TEST_MODE=True,
        SUBSCRIPTION_GRACE_PERIOD_DAYS=3,
        MAX_RENEWAL_FAILURES=3,
        SUBSCRIPTION_LOCK_WAIT=0.1,
        MAINTENANCE_ENABLED=False,
        OTEL_EXPORTER_OTLP_ENDPOINT="",
    )


@pytest.fixture(scope="function")
def container(test_settings, gateway, fake_redis, clock) -> BillingContainer:
    return BillingContainer(settings=test_settings, gateway=gateway, redis=fake_redis, clock=clock)


@pytest.fixture(scope="function")
def service(container, db_session):
    return container.billing_service(db_session)


@pytest.fixture(scope="function")
def client(container, db_session: Session) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and fake gateway/Redis"""
    from billing.main import create_app

    app = create_app(container)

    # Override get_db dependency to use test database
    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db

    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()


# ============================================================================
# MODEL FIXTURES
# ============================================================================

@pytest.fixture(scope="function")
def test_user(db_session: Session) -> User:
    user = User(email="ana@example.com", name="Ana Souza", document_number="123.456.789-09")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope="function")
def test_user_2(db_session: Session) -> User:
    """Second user for ownership tests"""
    user = User(email="bruno@example.com", name="Bruno Lima")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope="function")
def admin_user(db_session: Session) -> User:
    user = User(email="admin@example.com", name="Admin", role=UserRole.ADMIN)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope="function")
def actor(test_user) -> Actor:
    return Actor(user_id=test_user.id)


@pytest.fixture(scope="function")
def admin_actor(admin_user) -> Actor:
    return Actor(user_id=admin_user.id, role=UserRole.ADMIN)


@pytest.fixture(scope="function")
def payment_method(db_session: Session, test_user) -> PaymentMethod:
    method = PaymentMethod(
        user_id=test_user.id, type=PaymentMethodType.CREDIT_CARD, gateway_payment_method_id="visa"
    )
    db_session.add(method)
    db_session.commit()
    return method


@pytest.fixture(scope="function")
def plan(db_session: Session) -> SubscriptionPlan:
    plan = SubscriptionPlan(
        name="Pro",
        description="Pro plan",
        price=Decimal("100.00"),
        interval=BillingInterval.MONTHLY,
        interval_count=1,
        max_job_offers=10,
        max_featured_job_offers=2,
    )
    db_session.add(plan)
    db_session.commit()
    return plan


@pytest.fixture(scope="function")
def trial_plan(db_session: Session) -> SubscriptionPlan:
    plan = SubscriptionPlan(
        name="Pro Trial",
        price=Decimal("100.00"),
        interval=BillingInterval.MONTHLY,
        trial_days=7,
    )
    db_session.add(plan)
    db_session.commit()
    return plan


@pytest.fixture(scope="function")
def coupon(db_session: Session) -> Coupon:
    """20% off every plan"""
    coupon = Coupon(
        code="WELCOME20",
        discount_type=DiscountType.PERCENTAGE,
        discount_value=Decimal("20"),
        status=CouponStatus.ACTIVE,
    )
    db_session.add(coupon)
    db_session.commit()
    return coupon


@pytest.fixture(scope="function")
def restricted_coupon(db_session: Session, plan) -> Coupon:
    """Fixed 30 off, capped at 10, only for ``plan``"""
    coupon = Coupon(
        code="PRO10",
        discount_type=DiscountType.FIXED,
        discount_value=Decimal("30"),
        max_discount_amount=Decimal("10"),
        applies_to_all_plans=False,
    )
    coupon.restrictions.append(CouponPlanRestriction(plan_id=plan.id))
    db_session.add(coupon)
    db_session.commit()
    return coupon


@pytest.fixture(scope="function")
def checkout(service, actor, plan, payment_method):
    """A freshly opened checkout for ``test_user`` on ``plan`` (no coupon)"""
    result = service.init_checkout(
        actor, CheckoutRequest(plan_id=plan.id, payment_method_id=payment_method.id)
    )
    assert result.success, result.error
    return result.data


@pytest.fixture(scope="function")
def active_subscription(service, checkout, gateway, clock, db_session):
    """Subscription activated by an approved payment notification"""
    from billing.models.subscription import Subscription
    from billing.schemas.billing import WebhookNotification

    gateway.add_payment("pay-initial", "approved", clock.now, preference_id=checkout.preference_id)
    result = service.process_webhook(WebhookNotification(type="payment", action="payment.created",
                                                         resource_id="pay-initial"))
    assert result.success, result.error
    return db_session.get(Subscription, checkout.subscription_id)
