"""Subscription state machine.

Every status change of a subscription goes through
``SubscriptionLifecycleManager``, whatever triggered it (user action,
webhook, sync, maintenance). Each change writes a ``SubscriptionTransition``
row in the same unit of work as the change itself.

    PENDING/TRIAL/PAST_DUE --approved--> ACTIVE
    ACTIVE --newer approved charge--> ACTIVE, next period
    PENDING --rejected--> PAYMENT_FAILED
    ACTIVE/TRIAL --rejected--> PAST_DUE
    ACTIVE/TRIAL/PAST_DUE --refunded/charged back--> ON_HOLD
    PAST_DUE/ON_HOLD --grace window elapsed--> EXPIRED
    any non-terminal --cancel--> CANCELED

Pause is a flag over ACTIVE. CANCELED and EXPIRED are terminal.
"""
import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from billing.core.errors import BillingError
from billing.core.metrics import subscription_transitions_counter
from billing.models.payment import Payment, PaymentStatus
from billing.models.plan import BillingInterval, SubscriptionPlan
from billing.models.subscription import (
    GRACE_STATUSES, Subscription, SubscriptionStatus,
    SubscriptionTransition, TransitionSource
)
from billing.services.gateway import (
    GatewayPayment, GatewaySubscription, PaymentGatewayClient, map_subscription_status
)
from billing.services.stores import SubscriptionStore

logger = logging.getLogger(__name__)

S = SubscriptionStatus

# Statuses an approved payment (re)activates
ACTIVATABLE_STATUSES = frozenset({S.PENDING, S.TRIAL, S.PAST_DUE, S.PAYMENT_FAILED, S.ON_HOLD})
RENEWABLE_STATUSES = frozenset({S.ACTIVE, S.TRIAL, S.PAST_DUE})

_MONTHS_PER_INTERVAL = {
    BillingInterval.MONTHLY: 1,
    BillingInterval.QUARTERLY: 3,
    BillingInterval.SEMIANNUAL: 6,
    BillingInterval.ANNUAL: 12,
}


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping to the last day of shorter months"""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def add_interval(start: datetime, interval: BillingInterval, count: int = 1) -> datetime:
    if count < 1:
        raise ValueError(f"interval_count must be >= 1, got {count}")
    if interval == BillingInterval.DAILY:
        return start + timedelta(days=count)
    if interval == BillingInterval.WEEKLY:
        return start + timedelta(weeks=count)
    return add_months(start, _MONTHS_PER_INTERVAL[interval] * count)


def plan_period_end(plan: SubscriptionPlan, start: datetime) -> datetime:
    return add_interval(start, plan.interval, plan.interval_count or 1)


@dataclass
class RenewalOutcome:
    subscription: Subscription
    renewed: bool
    failure_reason: Optional[str] = None
    payment: Optional[Payment] = None


class SubscriptionLifecycleManager:
    def __init__(
        self,
        store: SubscriptionStore,
        gateway: PaymentGatewayClient,
        max_renewal_failures: int = 3
    ):
        self.store = store
        self.gateway = gateway
        self.max_renewal_failures = max_renewal_failures

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _transition(
        self,
        subscription: Subscription,
        to_status: SubscriptionStatus,
        action: str,
        source: TransitionSource,
        now: datetime,
        payment: Optional[Payment] = None,
        reason: Optional[str] = None
    ) -> SubscriptionTransition:
        from_status = subscription.status
        if from_status != to_status:
            subscription.status = to_status
            subscription.status_changed_at = now
        transition = self.store.record_transition(SubscriptionTransition(
            subscription_id=subscription.id,
            from_status=from_status,
            to_status=to_status,
            action=action,
            source=source,
            payment_id=payment.id if payment is not None else None,
            reason=reason,
            created_at=now,
        ))
        subscription_transitions_counter.labels(
            from_status=from_status.value if from_status else "NONE",
            to_status=to_status.value,
            source=source.value
        ).inc()
        logger.info(
            f"Subscription {subscription.id}: {from_status.value if from_status else None} -> "
            f"{to_status.value} ({action}, {source.value})"
        )
        return transition

    def _start_first_period(self, subscription: Subscription, now: datetime) -> None:
        """Open the first billing period on activation.

        Trial days are added in front of the first paid interval, so a trial
        plan bills again at ``trial_ends_at`` plus one interval.
        """
        start = now
        if subscription.trial_ends_at is not None and subscription.trial_ends_at > now:
            start = subscription.trial_ends_at
        subscription.current_period_start = now
        subscription.current_period_end = plan_period_end(subscription.plan, start)
        subscription.next_billing_date = subscription.current_period_end

    def _advance_period(self, subscription: Subscription, now: datetime) -> None:
        start = subscription.current_period_end or now
        if start < now and subscription.status != S.ACTIVE:
            # Lapsed subscriptions restart from the payment, not from the old period
            start = now
        subscription.current_period_start = start
        subscription.current_period_end = plan_period_end(subscription.plan, start)
        subscription.next_billing_date = subscription.current_period_end

    def _apply_recurring_charge(
        self,
        subscription: Subscription,
        payment: Payment,
        source: TransitionSource,
        now: datetime
    ) -> None:
        """An approved charge on an ACTIVE subscription pays for the next period.

        Each payment pays for at most one period (``covers_period_end``), and
        only a charge newer than ``last_payment_at`` moves the period forward.
        """
        if payment.covers_period_end is not None:
            return
        if subscription.last_payment_at is None:
            # First charge of a period opened by the gateway subscription
            payment.covers_period_end = subscription.current_period_end
            return
        if payment.payment_date <= subscription.last_payment_at:
            return
        self._advance_period(subscription, now)
        payment.covers_period_end = subscription.current_period_end
        self._transition(subscription, S.ACTIVE, "recurring_charge", source, now, payment=payment)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def create(
        self,
        subscription: Subscription,
        now: datetime,
        source: TransitionSource = TransitionSource.USER
    ) -> Subscription:
        """Persist a new subscription awaiting its first payment"""
        subscription.status = S.PENDING
        subscription.status_changed_at = now
        subscription.is_paused = False
        plan = subscription.plan
        if plan is not None and plan.trial_days:
            subscription.trial_ends_at = now + timedelta(days=plan.trial_days)
        self.store.add(subscription)
        self.store.record_transition(SubscriptionTransition(
            subscription_id=subscription.id,
            from_status=None,
            to_status=S.PENDING,
            action="create",
            source=source,
            created_at=now,
        ))
        logger.info(f"Created subscription {subscription.id} for user {subscription.user_id} (PENDING)")
        return subscription

    def confirm_payment(
        self,
        subscription: Subscription,
        payment: Payment,
        source: TransitionSource,
        now: datetime
    ) -> bool:
        """Derive the subscription status from a newly authoritative payment.

        Returns True when the status changed.
        """
        if subscription.is_terminal:
            logger.info(
                f"Ignoring payment {payment.gateway_payment_id} for subscription {subscription.id}: "
                f"status {subscription.status.value} is terminal"
            )
            return False

        status = payment.status
        if status == PaymentStatus.APPROVED:
            subscription.renewal_failures = 0
            if subscription.status == S.ACTIVE:
                self._apply_recurring_charge(subscription, payment, source, now)
                return False
            if subscription.current_period_start is None:
                self._start_first_period(subscription, now)
            else:
                self._advance_period(subscription, now)
            payment.covers_period_end = subscription.current_period_end
            self._transition(subscription, S.ACTIVE, "confirm_payment", source, now, payment=payment)
            return True

        if status in (PaymentStatus.REJECTED, PaymentStatus.CANCELLED):
            if subscription.status == S.PENDING:
                target = S.PAYMENT_FAILED
            elif subscription.status in (S.ACTIVE, S.TRIAL):
                target = S.PAST_DUE
            else:
                return False
            self._transition(
                subscription, target, "confirm_payment", source, now, payment=payment,
                reason=payment.gateway_status_detail
            )
            return True

        if status in (PaymentStatus.REFUNDED, PaymentStatus.CHARGED_BACK):
            if subscription.status not in (S.ACTIVE, S.TRIAL, S.PAST_DUE):
                return False
            self._transition(
                subscription, S.ON_HOLD, "confirm_payment", source, now, payment=payment,
                reason=status.value.lower()
            )
            return True

        # PENDING / IN_PROCESS / IN_MEDIATION: nothing settled yet
        return False

    def apply_gateway_status(
        self,
        subscription: Subscription,
        gateway_subscription: GatewaySubscription,
        source: TransitionSource,
        now: datetime
    ) -> bool:
        """Apply the state of a gateway-side recurring subscription. Returns True on change."""
        if subscription.is_terminal:
            return False

        target, paused = map_subscription_status(gateway_subscription.status)
        if gateway_subscription.next_payment_date is not None:
            subscription.next_billing_date = gateway_subscription.next_payment_date

        if target == S.CANCELED:
            return self.cancel(subscription, "Canceled at payment gateway", source, now)
        if target == S.EXPIRED:
            self._transition(subscription, S.EXPIRED, "gateway_sync", source, now, reason="ended at gateway")
            return True
        if target != S.ACTIVE:
            return False

        changed = False
        if subscription.status != S.ACTIVE:
            if subscription.status not in ACTIVATABLE_STATUSES:
                return False
            if subscription.current_period_start is None:
                self._start_first_period(subscription, now)
            self._transition(subscription, S.ACTIVE, "gateway_sync", source, now)
            changed = True
        if paused and not subscription.is_paused:
            self.pause(subscription, source, now)
            changed = True
        elif not paused and subscription.is_paused:
            self.resume(subscription, source, now)
            changed = True
        return changed

    def cancel(
        self,
        subscription: Subscription,
        reason: Optional[str],
        source: TransitionSource,
        now: datetime
    ) -> bool:
        """Cancel a subscription. Canceling a canceled subscription is a no-op (returns False)."""
        if subscription.status == S.CANCELED:
            return False
        if subscription.is_terminal:
            raise BillingError.invalid_transition(subscription.status.value, "cancel")
        subscription.canceled_at = now
        subscription.cancel_reason = reason
        subscription.is_paused = False
        subscription.paused_at = None
        self._transition(subscription, S.CANCELED, "cancel", source, now, reason=reason)
        return True

    def pause(self, subscription: Subscription, source: TransitionSource, now: datetime) -> None:
        if subscription.status != S.ACTIVE or subscription.is_paused:
            state = "ACTIVE (paused)" if subscription.is_paused else subscription.status.value
            raise BillingError.invalid_transition(state, "pause")
        subscription.is_paused = True
        subscription.paused_at = now
        self._transition(subscription, S.ACTIVE, "pause", source, now)

    def resume(self, subscription: Subscription, source: TransitionSource, now: datetime) -> None:
        if subscription.status != S.ACTIVE or not subscription.is_paused:
            raise BillingError.invalid_transition(subscription.status.value, "resume")
        subscription.is_paused = False
        subscription.paused_at = None
        self._transition(subscription, S.ACTIVE, "resume", source, now)

    def renew(self, subscription: Subscription, source: TransitionSource, now: datetime) -> RenewalOutcome:
        """Manual renewal: look for a new approved payment at the gateway.

        On success the billing period advances from the current period end.
        On failure the subscription keeps its status (until the failure budget
        is exhausted) and the reason is returned to the caller. Gateway
        outages raise a retriable error without counting as a failure.
        """
        if subscription.status not in RENEWABLE_STATUSES or subscription.is_paused:
            state = "ACTIVE (paused)" if subscription.is_paused else subscription.status.value
            raise BillingError.invalid_transition(state, "renew")

        subscription.renewal_attempted_at = now
        candidate = self._find_renewal_payment(subscription)
        if candidate is None:
            return self._renewal_failed(subscription, "No new approved payment found at the gateway", source, now)

        payment = self.store.get_payment_by_gateway_id(candidate.id)
        if payment is None:
            payment = self.store.add_payment(payment_from_gateway(subscription, candidate))
        payment.applied = True
        if subscription.last_payment_at is None or payment.payment_date > subscription.last_payment_at:
            subscription.last_payment_at = payment.payment_date

        previous = subscription.status
        self._advance_period(subscription, now)
        payment.covers_period_end = subscription.current_period_end
        subscription.renewal_failures = 0
        self._transition(subscription, S.ACTIVE, "renew", source, now, payment=payment)
        logger.info(
            f"Renewed subscription {subscription.id} ({previous.value}) until "
            f"{subscription.current_period_end.isoformat()}"
        )
        return RenewalOutcome(subscription, True, payment=payment)

    def _find_renewal_payment(self, subscription: Subscription) -> Optional[GatewayPayment]:
        if subscription.gateway_subscription_id:
            payments = self.gateway.search_payments(subscription_id=subscription.gateway_subscription_id)
        elif subscription.gateway_preference_id:
            payments = self.gateway.search_payments(preference_id=subscription.gateway_preference_id)
        else:
            return None

        for gp in sorted(payments, key=lambda p: p.reported_at, reverse=True):
            if gp.local_status != PaymentStatus.APPROVED:
                continue
            if subscription.last_payment_at is not None and gp.reported_at < subscription.last_payment_at:
                break
            recorded = self.store.get_payment_by_gateway_id(gp.id)
            if recorded is not None and recorded.subscription_id != subscription.id:
                continue
            if recorded is None or recorded.covers_period_end is None:
                return gp
        return None

    def _renewal_failed(
        self,
        subscription: Subscription,
        reason: str,
        source: TransitionSource,
        now: datetime
    ) -> RenewalOutcome:
        subscription.renewal_failures = (subscription.renewal_failures or 0) + 1
        logger.warning(
            f"Renewal of subscription {subscription.id} failed "
            f"({subscription.renewal_failures}/{self.max_renewal_failures}): {reason}"
        )
        if subscription.status == S.ACTIVE and subscription.renewal_failures >= self.max_renewal_failures:
            self._transition(subscription, S.PAST_DUE, "renew", source, now, reason=reason)
        return RenewalOutcome(subscription, False, failure_reason=reason)

    def expire(self, subscription: Subscription, now: datetime, grace_days: int,
               source: TransitionSource = TransitionSource.SYSTEM) -> bool:
        """Expire a grace-state subscription once ``grace_days`` have elapsed"""
        if subscription.status not in GRACE_STATUSES:
            return False
        if subscription.status_changed_at + timedelta(days=grace_days) > now:
            return False
        self._transition(
            subscription, S.EXPIRED, "expire", source, now,
            reason=f"{subscription.status.value} beyond {grace_days} day grace window"
        )
        return True


def payment_from_gateway(subscription: Subscription, gp: GatewayPayment) -> Payment:
    """Map a gateway payment onto a new local Payment row"""
    status = gp.local_status
    return Payment(
        subscription_id=subscription.id,
        gateway_payment_id=gp.id,
        amount=gp.transaction_amount,
        currency=gp.currency_id,
        status=status,
        payment_date=gp.reported_at,
        gateway_status=gp.status,
        gateway_status_detail=gp.status_detail,
        payment_type=gp.payment_type_id,
        raw_response=gp.raw,
        status_history=[{"status": status.value, "at": gp.reported_at.isoformat()}],
    )
