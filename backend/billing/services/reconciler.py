"""Reconciliation of local subscriptions against the payment gateway.

Push (webhook) and pull (sync) share one ingestion path:

1. resolve the local subscription for the gateway resource;
2. take the per-subscription lock and reload the row;
3. short-circuit if the gateway payment id is already recorded with the
   same status (redelivery);
4. insert the payment, then let the lifecycle manager derive the new status,
   unless the payment is older than the latest applied one (stale
   notifications are recorded but never regress the status);
5. commit once, still holding the lock.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, ContextManager, List, Optional

from sqlalchemy.orm import Session

from billing.core.errors import BillingError, ErrorCode
from billing.core.logging import webhook_logger
from billing.core.metrics import webhooks_counter
from billing.models.checkout_session import CheckoutSession, CheckoutSessionStatus
from billing.models.payment import UNSETTLED_PAYMENT_STATUSES, Payment, PaymentStatus
from billing.models.subscription import Subscription, SubscriptionStatus, TransitionSource
from billing.models.webhook_event import WebhookEvent, WebhookProcessStatus
from billing.schemas.billing import ReconcileResult, WebhookNotification
from billing.services.gateway import GatewayPayment, GatewaySubscription, PaymentGatewayClient
from billing.services.lifecycle import SubscriptionLifecycleManager, payment_from_gateway
from billing.services.stores import CheckoutSessionStore, SubscriptionStore

logger = logging.getLogger(__name__)

PAYMENT_EVENT_TYPES = frozenset({"payment"})
SUBSCRIPTION_EVENT_TYPES = frozenset({"subscription_preapproval", "preapproval", "subscription"})

LockFactory = Callable[[int], ContextManager]


class WebhookReconciler:
    def __init__(
        self,
        db: Session,
        subscriptions: SubscriptionStore,
        sessions: CheckoutSessionStore,
        lifecycle: SubscriptionLifecycleManager,
        gateway: PaymentGatewayClient,
        lock_factory: LockFactory
    ):
        self.db = db
        self.subscriptions = subscriptions
        self.sessions = sessions
        self.lifecycle = lifecycle
        self.gateway = gateway
        self.lock_factory = lock_factory

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_payment_subscription(self, gp: GatewayPayment) -> Optional[Subscription]:
        recorded = self.subscriptions.get_payment_by_gateway_id(gp.id)
        if recorded is not None:
            return self.subscriptions.get(recorded.subscription_id)
        for reference in (gp.external_reference, gp.metadata.get("subscription_id"),
                          gp.metadata.get("transaction_id"), gp.preference_id):
            subscription = self.subscriptions.find_by_gateway_reference(reference)
            if subscription is not None:
                return subscription
        return None

    def resolve_gateway_subscription(self, gs: GatewaySubscription) -> Optional[Subscription]:
        for reference in (gs.id, gs.external_reference):
            subscription = self.subscriptions.find_by_gateway_reference(reference)
            if subscription is not None:
                return subscription
        return None

    # ------------------------------------------------------------------
    # Ingestion (caller holds the subscription lock)
    # ------------------------------------------------------------------

    def _ingest_payment(
        self,
        subscription: Subscription,
        gp: GatewayPayment,
        source: TransitionSource,
        now: datetime
    ) -> ReconcileResult:
        status = gp.local_status
        existing = self.subscriptions.get_payment_by_gateway_id(gp.id)

        if existing is not None:
            if existing.status == status or not existing.can_progress_to(status):
                logger.info(
                    f"Payment {gp.id} already recorded as {existing.status.value}, "
                    f"skipping {status.value} for subscription {subscription.id}"
                )
                return self._result("duplicate", gp.id, "payment", subscription)
            payment = self._progress_payment(existing, gp)
        else:
            payment = self.subscriptions.add_payment(payment_from_gateway(subscription, gp))

        if status in UNSETTLED_PAYMENT_STATUSES:
            return self._result("payment_pending", gp.id, "payment", subscription)

        if subscription.last_payment_at is not None and payment.payment_date < subscription.last_payment_at:
            logger.info(
                f"Payment {gp.id} ({status.value} at {payment.payment_date.isoformat()}) is older than the "
                f"latest applied payment of subscription {subscription.id}, recorded without transition"
            )
            return self._result("recorded_stale", gp.id, "payment", subscription)

        self.lifecycle.confirm_payment(subscription, payment, source, now)
        payment.applied = True
        subscription.last_payment_at = payment.payment_date

        if status == PaymentStatus.APPROVED:
            session = self.sessions.get_open_for_subscription(subscription.id)
            if session is not None:
                self.sessions.mark_completed(session, now)
        return self._result("payment_recorded", gp.id, "payment", subscription)

    def _ingest_payments(
        self,
        subscription: Subscription,
        payments: List[GatewayPayment],
        source: TransitionSource,
        now: datetime
    ) -> ReconcileResult:
        """Replay payments oldest first; reports the outcome of the latest settled one"""
        reported = None
        for gp in payments:
            result = self._ingest_payment(subscription, gp, source, now)
            if reported is None or gp.local_status not in UNSETTLED_PAYMENT_STATUSES:
                reported = result
        return reported.model_copy(update={"status": subscription.status.value})

    def _progress_payment(self, payment: Payment, gp: GatewayPayment) -> Payment:
        """Move a recorded payment forward (pending -> settled, approved -> refunded)"""
        status = gp.local_status
        logger.info(f"Payment {gp.id} progressed {payment.status.value} -> {status.value}")
        payment.status = status
        payment.gateway_status = gp.status
        payment.gateway_status_detail = gp.status_detail
        payment.payment_date = gp.reported_at
        payment.raw_response = gp.raw
        payment.status_history = list(payment.status_history or []) + [
            {"status": status.value, "at": gp.reported_at.isoformat()}
        ]
        self.db.flush()
        return payment

    def _apply_gateway_subscription(
        self,
        subscription: Subscription,
        gs: GatewaySubscription,
        source: TransitionSource,
        now: datetime
    ) -> ReconcileResult:
        if not subscription.gateway_subscription_id:
            subscription.gateway_subscription_id = gs.id
        changed = self.lifecycle.apply_gateway_status(subscription, gs, source, now)
        return self._result(
            "subscription_updated" if changed else "subscription_unchanged", gs.id, "subscription", subscription
        )

    @staticmethod
    def _result(action: str, resource_id: Optional[str], resource_type: str,
                subscription: Optional[Subscription], message: Optional[str] = None) -> ReconcileResult:
        return ReconcileResult(
            success=True,
            action=action,
            resource_id=resource_id,
            resource_type=resource_type,
            status=subscription.status.value if subscription is not None else None,
            subscription_id=subscription.id if subscription is not None else None,
            payment_id=resource_id if resource_type == "payment" else None,
            message=message,
        )

    def _locked(self, subscription_id: int, apply: Callable[[Subscription], ReconcileResult]) -> ReconcileResult:
        with self.lock_factory(subscription_id):
            subscription = self.subscriptions.get_for_update(subscription_id)
            if subscription is None:
                raise BillingError.not_found(
                    ErrorCode.SUBSCRIPTION_NOT_FOUND, "Subscription not found", subscription_id=subscription_id
                )
            result = apply(subscription)
            self.db.commit()
        return result

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def log_notification(self, notification: WebhookNotification) -> WebhookEvent:
        event = WebhookEvent(
            event_type=notification.type or "unknown",
            action=notification.action,
            resource_id=notification.resource_id,
            live_mode=notification.live_mode,
            payload=notification.raw_payload,
            process_status=WebhookProcessStatus.RECEIVED,
        )
        self.db.add(event)
        self.db.commit()
        webhook_logger.info(
            f"Received {notification.type} notification ({notification.action}) for resource "
            f"{notification.resource_id}, logged as event {event.id}"
        )
        return event

    def finish_notification(self, event: WebhookEvent, status: WebhookProcessStatus,
                            outcome: Optional[str] = None, subscription_id: Optional[int] = None,
                            error_message: Optional[str] = None) -> None:
        event.process_status = status
        event.outcome = outcome
        event.subscription_id = subscription_id
        event.error_message = error_message
        event.processed_at = datetime.now(timezone.utc)
        self.db.commit()
        webhooks_counter.labels(type=event.event_type, outcome=outcome or status.value.lower()).inc()

    def process_notification(self, notification: WebhookNotification, now: Optional[datetime] = None) -> ReconcileResult:
        """Apply one gateway notification. Unknown resources are a successful no-op."""
        now = now or datetime.now(timezone.utc)
        event = self.log_notification(notification)
        try:
            result = self._dispatch(notification, now)
        except Exception as e:
            self.db.rollback()
            self.finish_notification(event, WebhookProcessStatus.FAILED, outcome="error", error_message=str(e))
            raise

        status = WebhookProcessStatus.PROCESSED if result.subscription_id else WebhookProcessStatus.IGNORED
        if result.action == "duplicate":
            status = WebhookProcessStatus.IGNORED
        self.finish_notification(event, status, outcome=result.action, subscription_id=result.subscription_id)
        return result

    def _dispatch(self, notification: WebhookNotification, now: datetime) -> ReconcileResult:
        if not notification.resource_id:
            return ReconcileResult(action="ignored", resource_type=notification.type,
                                   message="Notification has no resource id")

        if notification.type in PAYMENT_EVENT_TYPES:
            gp = self.gateway.get_payment(notification.resource_id)
            subscription = self.resolve_payment_subscription(gp)
            if subscription is None:
                webhook_logger.info(f"No local subscription for payment {gp.id}, dropping notification")
                return ReconcileResult(action="unknown_subscription", resource_id=gp.id, resource_type="payment",
                                       payment_id=gp.id, message="No matching subscription")
            return self._locked(
                subscription.id, lambda sub: self._ingest_payment(sub, gp, TransitionSource.WEBHOOK, now)
            )

        if notification.type in SUBSCRIPTION_EVENT_TYPES:
            gs = self.gateway.get_subscription(notification.resource_id)
            subscription = self.resolve_gateway_subscription(gs)
            if subscription is None:
                webhook_logger.info(f"No local subscription for gateway subscription {gs.id}, dropping notification")
                return ReconcileResult(action="unknown_subscription", resource_id=gs.id,
                                       resource_type="subscription", message="No matching subscription")
            return self._locked(
                subscription.id,
                lambda sub: self._apply_gateway_subscription(sub, gs, TransitionSource.WEBHOOK, now)
            )

        webhook_logger.info(f"Ignoring unsupported notification type {notification.type}")
        return ReconcileResult(action="ignored", resource_id=notification.resource_id,
                               resource_type=notification.type, message="Unsupported notification type")

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    def sync_subscription(self, subscription_id: int, now: Optional[datetime] = None) -> ReconcileResult:
        """Reconcile one subscription on demand. Access control is the caller's job."""
        now = now or datetime.now(timezone.utc)
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None:
            raise BillingError.not_found(
                ErrorCode.SUBSCRIPTION_NOT_FOUND, "Subscription not found", subscription_id=subscription_id
            )

        if subscription.gateway_subscription_id:
            gs = self.gateway.get_subscription(subscription.gateway_subscription_id)
            return self._locked(
                subscription.id,
                lambda sub: self._apply_gateway_subscription(sub, gs, TransitionSource.SYNC, now)
            )

        session = self.sessions.latest_for_subscription(subscription.id)
        if session is not None and subscription.status == SubscriptionStatus.PENDING:
            if session.status == CheckoutSessionStatus.EXPIRED or (
                session.status == CheckoutSessionStatus.PENDING and session.is_expired(now)
            ):
                return self._locked(subscription.id, lambda sub: self._expire_checkout(sub, session))

        preference_id = session.gateway_preference_id if session is not None else None
        preference_id = preference_id or subscription.gateway_preference_id
        if not preference_id:
            return ReconcileResult(
                action="no_external_reference", resource_type="subscription",
                status=subscription.status.value, subscription_id=subscription.id,
                message="Subscription has no gateway reference to sync against"
            )

        payments = self.gateway.search_payments(preference_id=preference_id)
        if not payments:
            return ReconcileResult(
                action="no_payment", resource_id=preference_id, resource_type="preference",
                status=subscription.status.value, subscription_id=subscription.id,
                message="No payment found for this checkout yet"
            )

        ordered = sorted(payments, key=lambda p: p.reported_at)
        return self._locked(
            subscription.id, lambda sub: self._ingest_payments(sub, ordered, TransitionSource.SYNC, now)
        )

    def _expire_checkout(self, subscription: Subscription, session: CheckoutSession) -> ReconcileResult:
        self.db.refresh(session)
        if session.status == CheckoutSessionStatus.COMPLETED or subscription.status != SubscriptionStatus.PENDING:
            # Paid while we were waiting for the lock
            return self._result("subscription_unchanged", session.gateway_preference_id, "preference", subscription)
        if session.status == CheckoutSessionStatus.PENDING:
            self.sessions.mark_expired(session)
            logger.info(f"Checkout session {session.id} of subscription {subscription.id} expired unpaid")
        return ReconcileResult(
            action="checkout_expired", resource_id=session.gateway_preference_id, resource_type="preference",
            status=subscription.status.value, subscription_id=subscription.id,
            message="Checkout session expired without payment"
        )
