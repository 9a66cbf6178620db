"""Composition root: builds billing components from configuration"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from billing.core.config import Settings
from billing.db.redis import SubscriptionLock, get_redis_client
from billing.services.billing_service import BillingService
from billing.services.checkout import CheckoutOrchestrator
from billing.services.gateway import MercadoPagoGateway, PaymentGatewayClient, verify_webhook_signature
from billing.services.lifecycle import SubscriptionLifecycleManager
from billing.services.reconciler import WebhookReconciler
from billing.services.stores import CheckoutSessionStore, SubscriptionStore

logger = logging.getLogger(__name__)


@dataclass
class BillingContainer:
    """Process-wide collaborators. Database-bound services are built per session."""
    settings: Settings
    gateway: PaymentGatewayClient
    redis: Any
    clock: Callable[[], datetime] = field(default=lambda: datetime.now(timezone.utc))

    def lock_factory(self):
        return partial(
            SubscriptionLock,
            self.redis,
            timeout=self.settings.SUBSCRIPTION_LOCK_TIMEOUT,
            wait=self.settings.SUBSCRIPTION_LOCK_WAIT,
        )

    def billing_service(self, db: Session) -> BillingService:
        lock_factory = self.lock_factory()
        subscriptions = SubscriptionStore(db)
        sessions = CheckoutSessionStore(db)
        lifecycle = SubscriptionLifecycleManager(
            subscriptions, self.gateway, max_renewal_failures=self.settings.MAX_RENEWAL_FAILURES
        )
        checkout = CheckoutOrchestrator(
            db, sessions, lifecycle, self.gateway,
            frontend_url=self.settings.FRONTEND_URL,
            currency=self.settings.CURRENCY,
            test_mode=self.settings.GATEWAY_TEST_MODE,
        )
        reconciler = WebhookReconciler(db, subscriptions, sessions, lifecycle, self.gateway, lock_factory)
        return BillingService(
            db, subscriptions, sessions, lifecycle, checkout, reconciler, lock_factory,
            grace_period_days=self.settings.SUBSCRIPTION_GRACE_PERIOD_DAYS,
            clock=self.clock,
        )

    def verify_webhook(self, signature: str, request_id: str, data_id: str) -> bool:
        return verify_webhook_signature(
            self.settings.GATEWAY_WEBHOOK_SECRET, signature, request_id, data_id,
            allow_unsigned=not self.settings.is_production,
        )


def build_container(config: Optional[Settings] = None) -> BillingContainer:
    """Wire the production container. The only reader of the global settings."""
    if config is None:
        from billing.core.config import settings as config
    gateway = MercadoPagoGateway(
        access_token=config.GATEWAY_ACCESS_TOKEN,
        base_url=config.GATEWAY_API_BASE,
        timeout=config.GATEWAY_TIMEOUT_SECONDS,
    )
    logger.info(f"Billing container built (gateway {config.GATEWAY_API_BASE}, test mode {config.GATEWAY_TEST_MODE})")
    return BillingContainer(settings=config, gateway=gateway, redis=get_redis_client())
