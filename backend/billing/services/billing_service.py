"""Boundary operations of the billing core.

Each public method returns a ``ServiceResult``. Expected failures
(``BillingError``) roll the unit of work back and come back as an error
result; anything else is logged, rolled back and re-raised.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from billing.core.errors import BillingError, ErrorCode
from billing.core.otel import get_tracer
from billing.models.subscription import Subscription, TransitionSource
from billing.schemas.billing import (
    Actor, CheckoutRequest, RenewalResult, ServiceResult, SubscriptionView, WebhookNotification
)
from billing.services.checkout import CheckoutOrchestrator
from billing.services.lifecycle import SubscriptionLifecycleManager
from billing.services.reconciler import LockFactory, WebhookReconciler
from billing.services.stores import CheckoutSessionStore, SubscriptionStore

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


class BillingService:
    def __init__(
        self,
        db: Session,
        subscriptions: SubscriptionStore,
        sessions: CheckoutSessionStore,
        lifecycle: SubscriptionLifecycleManager,
        checkout: CheckoutOrchestrator,
        reconciler: WebhookReconciler,
        lock_factory: LockFactory,
        grace_period_days: int = 3,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        self.db = db
        self.subscriptions = subscriptions
        self.sessions = sessions
        self.lifecycle = lifecycle
        self.checkout = checkout
        self.reconciler = reconciler
        self.lock_factory = lock_factory
        self.grace_period_days = grace_period_days
        self.clock = clock

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _run(self, operation: str, fn: Callable[[], object]) -> ServiceResult:
        with tracer.start_as_current_span(f"billing.{operation}"):
            try:
                return ServiceResult.ok(fn())
            except BillingError as e:
                self.db.rollback()
                logger.info(f"{operation} failed: {e.kind.value}/{e.code.value} {e.message}")
                return ServiceResult.fail(e)
            except StaleDataError as e:
                # Row version moved underneath us despite the lock (lock TTL elapsed)
                self.db.rollback()
                logger.warning(f"{operation} lost an optimistic lock race: {e}")
                return ServiceResult.fail(BillingError.conflict(
                    ErrorCode.CONCURRENT_UPDATE, "Subscription was modified concurrently, try again"
                ))
            except Exception as e:
                self.db.rollback()
                logger.error(f"Unexpected error in {operation}: {e}", exc_info=True)
                raise

    def _authorized(self, subscription_id: int, actor: Actor) -> Subscription:
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None:
            raise BillingError.not_found(
                ErrorCode.SUBSCRIPTION_NOT_FOUND, "Subscription not found", subscription_id=subscription_id
            )
        if subscription.user_id != actor.user_id and not actor.is_admin:
            logger.warning(f"User {actor.user_id} denied access to subscription {subscription_id}")
            raise BillingError.access_denied(subscription_id=subscription_id)
        return subscription

    @contextmanager
    def _locked_subscription(self, subscription_id: int, actor: Actor):
        """Authorize, lock and reload a subscription; commits on clean exit"""
        self._authorized(subscription_id, actor)
        with self.lock_factory(subscription_id):
            subscription = self.subscriptions.get_for_update(subscription_id)
            yield subscription
            self.db.commit()

    @staticmethod
    def _source(actor: Actor) -> TransitionSource:
        return TransitionSource.SYSTEM if actor.is_admin else TransitionSource.USER

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def init_checkout(self, actor: Actor, request: CheckoutRequest) -> ServiceResult:
        def op():
            result = self.checkout.init_checkout(
                user_id=actor.user_id,
                plan_id=request.plan_id,
                payment_method_id=request.payment_method_id,
                coupon_id=request.coupon_id,
                back_url=request.back_url,
                now=self.clock(),
            )
            self.db.commit()
            return result
        return self._run("init_checkout", op)

    def resume_checkout(self, actor: Actor, checkout_session_id: int) -> ServiceResult:
        return self._run(
            "resume_checkout",
            lambda: self.checkout.resume_checkout(checkout_session_id, actor.user_id, self.clock())
        )

    def get_subscription(self, actor: Actor, subscription_id: int) -> ServiceResult:
        return self._run(
            "get_subscription",
            lambda: SubscriptionView.from_model(self._authorized(subscription_id, actor))
        )

    def cancel_subscription(self, actor: Actor, subscription_id: int, reason: Optional[str] = None) -> ServiceResult:
        def op():
            with self._locked_subscription(subscription_id, actor) as subscription:
                self.lifecycle.cancel(subscription, reason, self._source(actor), self.clock())
            return SubscriptionView.from_model(subscription)
        return self._run("cancel_subscription", op)

    def pause_subscription(self, actor: Actor, subscription_id: int) -> ServiceResult:
        def op():
            with self._locked_subscription(subscription_id, actor) as subscription:
                self.lifecycle.pause(subscription, self._source(actor), self.clock())
            return SubscriptionView.from_model(subscription)
        return self._run("pause_subscription", op)

    def resume_subscription(self, actor: Actor, subscription_id: int) -> ServiceResult:
        def op():
            with self._locked_subscription(subscription_id, actor) as subscription:
                self.lifecycle.resume(subscription, self._source(actor), self.clock())
            return SubscriptionView.from_model(subscription)
        return self._run("resume_subscription", op)

    def renew_subscription(self, actor: Actor, subscription_id: int) -> ServiceResult:
        def op():
            with self._locked_subscription(subscription_id, actor) as subscription:
                outcome = self.lifecycle.renew(subscription, self._source(actor), self.clock())
            return RenewalResult(
                subscription_id=subscription.id,
                renewed=outcome.renewed,
                status=subscription.status.value,
                current_period_end=subscription.current_period_end,
                next_billing_date=subscription.next_billing_date,
                failure_reason=outcome.failure_reason,
                renewal_failures=subscription.renewal_failures,
            )
        return self._run("renew_subscription", op)

    def sync_subscription_status(self, actor: Actor, subscription_id: int) -> ServiceResult:
        def op():
            self._authorized(subscription_id, actor)
            return self.reconciler.sync_subscription(subscription_id, self.clock())
        return self._run("sync_subscription_status", op)

    def process_webhook(self, notification: WebhookNotification) -> ServiceResult:
        return self._run(
            "process_webhook",
            lambda: self.reconciler.process_notification(notification, self.clock())
        )

    def expire_overdue_subscriptions(self) -> ServiceResult:
        """Maintenance: expire grace-state subscriptions past the window and reap stale sessions"""
        def op():
            now = self.clock()
            cutoff = now - timedelta(days=self.grace_period_days)
            expired = []
            for candidate in self.subscriptions.list_due_for_expiry(cutoff):
                try:
                    with self.lock_factory(candidate.id):
                        subscription = self.subscriptions.get_for_update(candidate.id)
                        if self.lifecycle.expire(subscription, now, self.grace_period_days):
                            expired.append(subscription.id)
                        self.db.commit()
                except BillingError as e:
                    self.db.rollback()
                    logger.warning(f"Skipping expiry of subscription {candidate.id}: {e.message}")
            stale_sessions = self.sessions.expire_stale(now)
            self.db.commit()
            return {"expired_subscriptions": expired, "expired_checkout_sessions": stale_sessions}
        return self._run("expire_overdue_subscriptions", op)
