"""Persistence for subscriptions and checkout sessions.

Stores flush but never commit: the operation holding the subscription lock
owns the unit of work and commits it once.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from billing.models.checkout_session import CheckoutSession, CheckoutSessionStatus
from billing.models.payment import Payment
from billing.models.subscription import (
    GRACE_STATUSES, Subscription, SubscriptionTransition
)

logger = logging.getLogger(__name__)


class SubscriptionStore:
    def __init__(self, db: Session):
        self.db = db

    def get(self, subscription_id: int) -> Optional[Subscription]:
        return self.db.query(Subscription).filter(Subscription.id == subscription_id).first()

    def get_for_update(self, subscription_id: int) -> Optional[Subscription]:
        """Reload with a row lock, discarding any stale identity-map state"""
        return (
            self.db.query(Subscription)
            .filter(Subscription.id == subscription_id)
            .populate_existing()
            .with_for_update()
            .first()
        )

    def find_by_gateway_reference(self, reference: Optional[str]) -> Optional[Subscription]:
        """Resolve a correlation value sent back by the gateway.

        Accepts a local subscription id, a checkout transaction id, a gateway
        preference id or a gateway subscription id.
        """
        if not reference:
            return None
        reference = str(reference).strip()

        if reference.isdigit():
            subscription = self.get(int(reference))
            if subscription:
                return subscription

        subscription = (
            self.db.query(Subscription)
            .filter(or_(
                Subscription.gateway_subscription_id == reference,
                Subscription.gateway_preference_id == reference,
            ))
            .first()
        )
        if subscription:
            return subscription

        session = (
            self.db.query(CheckoutSession)
            .filter(or_(
                CheckoutSession.transaction_id == reference,
                CheckoutSession.gateway_preference_id == reference,
            ))
            .first()
        )
        if session and session.subscription_id:
            return self.get(session.subscription_id)
        return None

    def add(self, subscription: Subscription) -> Subscription:
        self.db.add(subscription)
        self.db.flush()
        return subscription

    def record_transition(self, transition: SubscriptionTransition) -> SubscriptionTransition:
        self.db.add(transition)
        self.db.flush()
        return transition

    # Payments

    def get_payment_by_gateway_id(self, gateway_payment_id: str) -> Optional[Payment]:
        return self.db.query(Payment).filter(Payment.gateway_payment_id == gateway_payment_id).first()

    def add_payment(self, payment: Payment) -> Payment:
        self.db.add(payment)
        self.db.flush()
        return payment

    def list_due_for_expiry(self, cutoff: datetime) -> List[Subscription]:
        """Grace-state subscriptions whose status is older than ``cutoff``"""
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.status.in_(list(GRACE_STATUSES)),
                Subscription.status_changed_at <= cutoff,
            )
            .order_by(Subscription.id)
            .all()
        )


class CheckoutSessionStore:
    def __init__(self, db: Session):
        self.db = db

    def get(self, session_id: int) -> Optional[CheckoutSession]:
        return self.db.query(CheckoutSession).filter(CheckoutSession.id == session_id).first()

    def get_open_for_subscription(self, subscription_id: int) -> Optional[CheckoutSession]:
        """The pending session of a subscription, expired or not"""
        return (
            self.db.query(CheckoutSession)
            .filter(
                CheckoutSession.subscription_id == subscription_id,
                CheckoutSession.status == CheckoutSessionStatus.PENDING,
            )
            .first()
        )

    def latest_for_subscription(self, subscription_id: int) -> Optional[CheckoutSession]:
        return (
            self.db.query(CheckoutSession)
            .filter(CheckoutSession.subscription_id == subscription_id)
            .order_by(CheckoutSession.created_at.desc(), CheckoutSession.id.desc())
            .first()
        )

    def add(self, session: CheckoutSession) -> CheckoutSession:
        self.db.add(session)
        self.db.flush()
        return session

    def mark_completed(self, session: CheckoutSession, now: datetime) -> None:
        session.status = CheckoutSessionStatus.COMPLETED
        session.completed_at = now
        self.db.flush()

    def mark_expired(self, session: CheckoutSession) -> None:
        session.status = CheckoutSessionStatus.EXPIRED
        self.db.flush()

    def expire_stale(self, now: datetime) -> int:
        """Bulk-mark pending sessions past their expiry. Returns the row count."""
        count = (
            self.db.query(CheckoutSession)
            .filter(
                CheckoutSession.status == CheckoutSessionStatus.PENDING,
                CheckoutSession.expires_at < now,
            )
            .update({CheckoutSession.status: CheckoutSessionStatus.EXPIRED}, synchronize_session=False)
        )
        if count:
            logger.info(f"Marked {count} stale checkout sessions as expired")
        return count
