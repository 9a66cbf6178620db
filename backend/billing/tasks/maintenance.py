"""Background maintenance: subscription expiry and checkout session reaping"""
import asyncio
import logging
from typing import Dict

from billing.core.metrics import maintenance_runs_counter
from billing.db.session import SessionLocal
from billing.services.billing_service import BillingService

logger = logging.getLogger(__name__)


def run_maintenance_cycle(service: BillingService) -> Dict:
    """One pass: expire grace-state subscriptions past the window, mark stale sessions expired"""
    result = service.expire_overdue_subscriptions()
    if not result.success:
        maintenance_runs_counter.labels(status="failed").inc()
        logger.warning(f"Maintenance run failed: {result.error.message}")
        return {}
    maintenance_runs_counter.labels(status="success").inc()
    summary = result.data
    if summary["expired_subscriptions"] or summary["expired_checkout_sessions"]:
        logger.info(
            f"Maintenance expired {len(summary['expired_subscriptions'])} subscriptions and "
            f"{summary['expired_checkout_sessions']} checkout sessions"
        )
    return summary


async def maintenance_task(container, interval_seconds: int):
    """Periodic maintenance loop started from the application lifespan"""
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            db = SessionLocal()
            try:
                run_maintenance_cycle(container.billing_service(db))
            finally:
                db.close()
        except asyncio.CancelledError:
            logger.info("Maintenance task stopped")
            raise
        except Exception as e:
            maintenance_runs_counter.labels(status="error").inc()
            logger.error(f"Error in maintenance task: {e}", exc_info=True)
