"""Webhook and sync reconciliation tests"""
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from billing.container import BillingContainer
from billing.core.errors import ErrorCode, ErrorKind
from billing.models import Base
from billing.models.checkout_session import CheckoutSession, CheckoutSessionStatus
from billing.models.payment import Payment, PaymentStatus
from billing.models.payment_method import PaymentMethod, PaymentMethodType
from billing.models.plan import BillingInterval, SubscriptionPlan
from billing.models.subscription import (
    Subscription, SubscriptionStatus, SubscriptionTransition, TransitionSource
)
from billing.models.user import User
from billing.models.webhook_event import WebhookEvent, WebhookProcessStatus
from billing.schemas.billing import Actor, CheckoutRequest, WebhookNotification
from billing.services.lifecycle import add_months

S = SubscriptionStatus


def payment_notification(payment_id):
    return WebhookNotification(type="payment", action="payment.updated", resource_id=payment_id)


def confirm_transitions(db_session, subscription_id):
    return (
        db_session.query(SubscriptionTransition)
        .filter(
            SubscriptionTransition.subscription_id == subscription_id,
            SubscriptionTransition.action == "confirm_payment",
        )
        .all()
    )


@pytest.mark.critical
class TestPaymentWebhooks:
    """Push notifications for payments"""

    def test_approved_payment_activates_subscription(self, service, checkout, gateway, clock, db_session):
        gateway.add_payment("pay-1", "approved", clock.now, preference_id=checkout.preference_id)

        result = service.process_webhook(payment_notification("pay-1"))

        assert result.success
        assert result.data.action == "payment_recorded"
        assert result.data.status == "ACTIVE"
        assert result.data.subscription_id == checkout.subscription_id

        subscription = db_session.get(Subscription, checkout.subscription_id)
        assert subscription.status == S.ACTIVE
        assert subscription.last_payment_at == clock.now
        session = db_session.get(CheckoutSession, checkout.checkout_session_id)
        assert session.status == CheckoutSessionStatus.COMPLETED
        assert session.completed_at == clock.now

        payment = db_session.query(Payment).one()
        assert payment.applied is True
        assert payment.status == PaymentStatus.APPROVED

    def test_duplicate_notification_is_applied_once(self, service, checkout, gateway, clock, db_session):
        gateway.add_payment("pay-1", "approved", clock.now, preference_id=checkout.preference_id)

        first = service.process_webhook(payment_notification("pay-1"))
        second = service.process_webhook(payment_notification("pay-1"))

        assert first.data.action == "payment_recorded"
        assert second.success
        assert second.data.action == "duplicate"
        assert db_session.query(Payment).count() == 1
        assert len(confirm_transitions(db_session, checkout.subscription_id)) == 1

        events = db_session.query(WebhookEvent).order_by(WebhookEvent.id).all()
        assert [e.process_status for e in events] == [WebhookProcessStatus.PROCESSED, WebhookProcessStatus.IGNORED]
        assert events[1].outcome == "duplicate"

    def test_out_of_order_rejection_does_not_regress(self, service, checkout, gateway, clock, db_session):
        t1 = clock.now + timedelta(minutes=5)
        t2 = clock.now + timedelta(minutes=10)
        gateway.add_payment("pay-a", "approved", t2, preference_id=checkout.preference_id)
        gateway.add_payment("pay-b", "rejected", t1, preference_id=checkout.preference_id)

        service.process_webhook(payment_notification("pay-a"))
        result = service.process_webhook(payment_notification("pay-b"))

        assert result.data.action == "recorded_stale"
        subscription = db_session.get(Subscription, checkout.subscription_id)
        assert subscription.status == S.ACTIVE
        assert subscription.last_payment_at == t2
        recorded = {p.gateway_payment_id: p for p in db_session.query(Payment).all()}
        assert set(recorded) == {"pay-a", "pay-b"}
        assert recorded["pay-b"].applied is False

    def test_in_order_rejection_then_approval(self, service, checkout, gateway, clock, db_session):
        gateway.add_payment("pay-b", "rejected", clock.now + timedelta(minutes=5),
                            preference_id=checkout.preference_id)
        gateway.add_payment("pay-a", "approved", clock.now + timedelta(minutes=10),
                            preference_id=checkout.preference_id)

        failed = service.process_webhook(payment_notification("pay-b"))
        assert failed.data.status == "PAYMENT_FAILED"
        recovered = service.process_webhook(payment_notification("pay-a"))
        assert recovered.data.status == "ACTIVE"

    def test_pending_payment_progresses_to_approved(self, service, checkout, gateway, clock, db_session):
        gateway.add_payment("pay-1", "pending", clock.now, preference_id=checkout.preference_id)
        pending = service.process_webhook(payment_notification("pay-1"))
        assert pending.data.action == "payment_pending"
        assert pending.data.status == "PENDING"

        gateway.add_payment("pay-1", "approved", clock.now + timedelta(hours=1),
                            preference_id=checkout.preference_id)
        approved = service.process_webhook(payment_notification("pay-1"))

        assert approved.data.action == "payment_recorded"
        assert approved.data.status == "ACTIVE"
        payment = db_session.query(Payment).one()
        assert payment.status == PaymentStatus.APPROVED
        assert [h["status"] for h in payment.status_history] == ["PENDING", "APPROVED"]

    def test_refund_puts_subscription_on_hold(self, service, active_subscription, gateway, clock, db_session):
        gateway.add_payment("pay-initial", "refunded", clock.now + timedelta(days=2), preference_id="pref-1")

        result = service.process_webhook(payment_notification("pay-initial"))

        assert result.data.action == "payment_recorded"
        assert result.data.status == "ON_HOLD"
        assert db_session.query(Payment).count() == 1

    def test_recurring_charge_advances_period(self, service, active_subscription, gateway, clock, db_session):
        period_end = active_subscription.current_period_end
        gateway.add_payment("pay-recurring", "approved", clock.advance(days=31), preference_id="pref-1")

        result = service.process_webhook(payment_notification("pay-recurring"))

        assert result.data.action == "payment_recorded"
        assert result.data.status == "ACTIVE"
        db_session.refresh(active_subscription)
        assert active_subscription.current_period_start == period_end
        assert active_subscription.current_period_end == add_months(period_end, 1)
        assert active_subscription.next_billing_date == active_subscription.current_period_end
        payment = db_session.query(Payment).filter(Payment.gateway_payment_id == "pay-recurring").one()
        assert payment.covers_period_end == active_subscription.current_period_end

    def test_recurring_charge_pays_for_one_period(self, service, actor, active_subscription, gateway, clock,
                                                  db_session):
        gateway.add_payment("pay-recurring", "approved", clock.advance(days=31), preference_id="pref-1")
        service.process_webhook(payment_notification("pay-recurring"))
        redelivered = service.process_webhook(payment_notification("pay-recurring"))
        assert redelivered.data.action == "duplicate"
        db_session.refresh(active_subscription)
        period_end = active_subscription.current_period_end

        renewal = service.renew_subscription(actor, active_subscription.id)

        assert renewal.data.renewed is False
        assert renewal.data.current_period_end == period_end

    def test_approved_cannot_go_back_to_pending(self, service, active_subscription, gateway, clock):
        gateway.add_payment("pay-initial", "pending", clock.now, preference_id="pref-1")
        result = service.process_webhook(payment_notification("pay-initial"))
        assert result.data.action == "duplicate"
        assert result.data.status == "ACTIVE"

    def test_payment_for_canceled_subscription_is_recorded_only(self, service, actor, active_subscription,
                                                                gateway, clock, db_session):
        service.cancel_subscription(actor, active_subscription.id)
        gateway.add_payment("pay-late", "approved", clock.now + timedelta(days=1), preference_id="pref-1")

        result = service.process_webhook(payment_notification("pay-late"))

        assert result.success
        assert result.data.status == "CANCELED"
        assert db_session.query(Payment).count() == 2

    def test_resolves_by_transaction_reference(self, service, checkout, gateway, clock, db_session):
        session = db_session.get(CheckoutSession, checkout.checkout_session_id)
        gateway.add_payment("pay-1", "approved", clock.now, external_reference=session.transaction_id)

        result = service.process_webhook(payment_notification("pay-1"))
        assert result.data.subscription_id == checkout.subscription_id

    def test_unknown_subscription_is_noop(self, service, checkout, gateway, clock, db_session):
        gateway.add_payment("pay-x", "approved", clock.now, external_reference="someone-elses-reference")

        result = service.process_webhook(payment_notification("pay-x"))

        assert result.success
        assert result.data.action == "unknown_subscription"
        assert db_session.query(Payment).count() == 0
        event = db_session.query(WebhookEvent).one()
        assert event.process_status == WebhookProcessStatus.IGNORED

    def test_unsupported_type_is_ignored(self, service, db_session):
        result = service.process_webhook(WebhookNotification(type="merchant_order", resource_id="123"))
        assert result.success
        assert result.data.action == "ignored"

    def test_gateway_outage_is_retriable(self, service, checkout, gateway, clock, db_session):
        gateway.add_payment("pay-1", "approved", clock.now, preference_id=checkout.preference_id)
        gateway.fail_next_calls()

        result = service.process_webhook(payment_notification("pay-1"))

        assert result.success is False
        assert result.error.retriable is True
        event = db_session.query(WebhookEvent).one()
        assert event.process_status == WebhookProcessStatus.FAILED
        assert db_session.get(Subscription, checkout.subscription_id).status == S.PENDING

    def test_concurrent_update_is_conflict(self, service, checkout, gateway, clock, fake_redis, db_session):
        from billing.db.redis import subscription_lock_key
        gateway.add_payment("pay-1", "approved", clock.now, preference_id=checkout.preference_id)
        fake_redis.set(subscription_lock_key(checkout.subscription_id), "other-worker", ex=30)

        result = service.process_webhook(payment_notification("pay-1"))

        assert result.error.kind == ErrorKind.CONFLICT.value
        assert result.error.code == ErrorCode.CONCURRENT_UPDATE.value
        assert db_session.query(Payment).count() == 0


@pytest.mark.critical
class TestConcurrentDelivery:
    """Two workers handling the same notification at the same time"""

    @pytest.fixture
    def file_sessions(self, tmp_path):
        # Separate connections per worker need a database file, not :memory:
        engine = create_engine(
            f"sqlite:///{tmp_path / 'billing.db'}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        Base.metadata.create_all(bind=engine)
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
        engine.dispose()

    @pytest.fixture
    def shared_container(self, test_settings, gateway, fake_redis, clock):
        settings = test_settings.model_copy(update={"SUBSCRIPTION_LOCK_WAIT": 10.0})
        return BillingContainer(settings=settings, gateway=gateway, redis=fake_redis, clock=clock)

    @pytest.fixture
    def opened(self, file_sessions, shared_container):
        db = file_sessions()
        try:
            user = User(email="ana@example.com", name="Ana Souza")
            plan = SubscriptionPlan(name="Pro", price=Decimal("100.00"), interval=BillingInterval.MONTHLY)
            db.add_all([user, plan])
            db.commit()
            method = PaymentMethod(
                user_id=user.id, type=PaymentMethodType.CREDIT_CARD, gateway_payment_method_id="visa"
            )
            db.add(method)
            db.commit()
            result = shared_container.billing_service(db).init_checkout(
                Actor(user_id=user.id), CheckoutRequest(plan_id=plan.id, payment_method_id=method.id)
            )
            assert result.success, result.error
            return result.data
        finally:
            db.close()

    def test_parallel_redelivery_is_applied_once(self, file_sessions, shared_container, opened, gateway, clock):
        gateway.add_payment("pay-1", "approved", clock.now, preference_id=opened.preference_id)
        start = threading.Barrier(2)

        def deliver():
            db = file_sessions()
            try:
                service = shared_container.billing_service(db)
                start.wait(timeout=10)
                return service.process_webhook(payment_notification("pay-1"))
            finally:
                db.close()

        with ThreadPoolExecutor(max_workers=2) as pool:
            futures = [pool.submit(deliver) for _ in range(2)]
            results = [future.result(timeout=60) for future in futures]

        assert all(result.success for result in results)
        assert sorted(result.data.action for result in results) == ["duplicate", "payment_recorded"]

        db = file_sessions()
        try:
            assert db.query(Payment).count() == 1
            assert len(confirm_transitions(db, opened.subscription_id)) == 1
            assert db.get(Subscription, opened.subscription_id).status == S.ACTIVE
        finally:
            db.close()


@pytest.mark.high
class TestSubscriptionWebhooks:
    """Push notifications for gateway-side recurring subscriptions"""

    def test_paused_at_gateway_pauses_locally(self, service, active_subscription, gateway, db_session):
        gateway.add_subscription("preapp-1", "paused", external_reference=str(active_subscription.id))

        result = service.process_webhook(WebhookNotification(type="subscription_preapproval",
                                                             resource_id="preapp-1"))

        assert result.data.action == "subscription_updated"
        db_session.refresh(active_subscription)
        assert active_subscription.is_paused is True
        assert active_subscription.gateway_subscription_id == "preapp-1"

    def test_cancelled_at_gateway(self, service, active_subscription, gateway, db_session):
        gateway.add_subscription("preapp-1", "cancelled", external_reference=str(active_subscription.id))
        service.process_webhook(WebhookNotification(type="preapproval", resource_id="preapp-1"))

        db_session.refresh(active_subscription)
        assert active_subscription.status == S.CANCELED

    def test_authorized_is_unchanged_for_active(self, service, active_subscription, gateway):
        gateway.add_subscription("preapp-1", "authorized", external_reference=str(active_subscription.id))
        result = service.process_webhook(WebhookNotification(type="subscription_preapproval",
                                                             resource_id="preapp-1"))
        assert result.data.action == "subscription_unchanged"


@pytest.mark.critical
class TestSync:
    """Pull reconciliation"""

    def test_expired_checkout_is_closed(self, service, actor, checkout, clock, db_session):
        clock.advance(hours=25)

        result = service.sync_subscription_status(actor, checkout.subscription_id)

        assert result.success
        assert result.data.action == "checkout_expired"
        assert result.data.status == "PENDING"
        session = db_session.get(CheckoutSession, checkout.checkout_session_id)
        assert session.status == CheckoutSessionStatus.EXPIRED

    def test_open_checkout_without_payment(self, service, actor, checkout):
        result = service.sync_subscription_status(actor, checkout.subscription_id)
        assert result.data.action == "no_payment"
        assert result.data.status == "PENDING"

    def test_sync_replays_payments_in_order(self, service, actor, checkout, gateway, clock, db_session):
        gateway.add_payment("pay-old", "rejected", clock.now, preference_id=checkout.preference_id)
        gateway.add_payment("pay-new", "approved", clock.now + timedelta(minutes=3),
                            preference_id=checkout.preference_id)

        result = service.sync_subscription_status(actor, checkout.subscription_id)

        assert result.data.action == "payment_recorded"
        assert result.data.payment_id == "pay-new"
        assert result.data.status == "ACTIVE"
        history = confirm_transitions(db_session, checkout.subscription_id)
        assert [t.to_status for t in history] == [S.PAYMENT_FAILED, S.ACTIVE]
        assert all(t.source == TransitionSource.SYNC for t in history)

    def test_sync_keeps_approved_payment_behind_pending_one(self, service, actor, checkout, gateway, clock,
                                                             db_session):
        gateway.add_payment("pay-a1", "approved", clock.now, preference_id=checkout.preference_id)
        gateway.add_payment("pay-a2", "pending", clock.now + timedelta(minutes=5),
                            preference_id=checkout.preference_id)

        result = service.sync_subscription_status(actor, checkout.subscription_id)

        assert result.data.action == "payment_recorded"
        assert result.data.payment_id == "pay-a1"
        assert result.data.status == "ACTIVE"
        recorded = {p.gateway_payment_id: p.status for p in db_session.query(Payment).all()}
        assert recorded == {"pay-a1": PaymentStatus.APPROVED, "pay-a2": PaymentStatus.PENDING}

        again = service.sync_subscription_status(actor, checkout.subscription_id)
        assert again.data.action == "duplicate"
        assert again.data.status == "ACTIVE"
        assert db_session.query(Payment).count() == 2
        assert len(confirm_transitions(db_session, checkout.subscription_id)) == 1

    def test_sync_then_webhook_is_duplicate(self, service, actor, checkout, gateway, clock, db_session):
        gateway.add_payment("pay-1", "approved", clock.now, preference_id=checkout.preference_id)
        service.sync_subscription_status(actor, checkout.subscription_id)

        result = service.process_webhook(payment_notification("pay-1"))

        assert result.data.action == "duplicate"
        assert len(confirm_transitions(db_session, checkout.subscription_id)) == 1

    def test_late_payment_still_applies_after_expiry(self, service, actor, checkout, gateway, clock):
        clock.advance(hours=25)
        service.sync_subscription_status(actor, checkout.subscription_id)
        gateway.add_payment("pay-late", "approved", clock.now, preference_id=checkout.preference_id)

        result = service.process_webhook(payment_notification("pay-late"))
        assert result.data.status == "ACTIVE"

    def test_sync_gateway_subscription(self, service, actor, checkout, gateway, db_session):
        subscription = db_session.get(Subscription, checkout.subscription_id)
        subscription.gateway_subscription_id = "preapp-9"
        db_session.commit()
        gateway.add_subscription("preapp-9", "authorized")

        result = service.sync_subscription_status(actor, checkout.subscription_id)

        assert result.data.action == "subscription_updated"
        assert result.data.status == "ACTIVE"
        assert gateway.calls[-1] == "get_subscription"

    def test_sync_other_users_subscription_denied(self, service, checkout, test_user_2, gateway):
        result = service.sync_subscription_status(Actor(user_id=test_user_2.id), checkout.subscription_id)
        assert result.error.kind == ErrorKind.ACCESS_DENIED.value
        assert "search_payments" not in gateway.calls


@pytest.mark.medium
class TestWebhookNotification:
    """Normalization of incoming notification bodies"""

    def test_modern_payload(self):
        notification = WebhookNotification.from_payload({
            "type": "payment", "action": "payment.created", "data": {"id": 12345}, "live_mode": True
        })
        assert notification.type == "payment"
        assert notification.resource_id == "12345"
        assert notification.live_mode is True

    def test_legacy_payload(self):
        notification = WebhookNotification.from_payload({
            "topic": "payment", "resource": "https://api.mercadopago.com/v1/payments/987"
        })
        assert notification.type == "payment"
        assert notification.resource_id == "987"

    def test_query_parameters_fill_gaps(self):
        notification = WebhookNotification.from_payload({}, {"type": "payment", "data.id": "55"})
        assert notification.type == "payment"
        assert notification.resource_id == "55"
