"""Billing API routes"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from billing.container import BillingContainer
from billing.core.errors import HTTP_STATUS_BY_KIND, ErrorKind
from billing.db.session import get_db
from billing.models.user import UserRole
from billing.schemas.billing import Actor, CancelRequest, CheckoutRequest, ServiceResult, WebhookNotification
from billing.services.billing_service import BillingService

router = APIRouter(prefix="/api/billing", tags=["billing"])
logger = logging.getLogger(__name__)


def get_container(request: Request) -> BillingContainer:
    return request.app.state.container


def get_billing_service(
    db: Session = Depends(get_db),
    container: BillingContainer = Depends(get_container)
) -> BillingService:
    return container.billing_service(db)


def get_current_actor(
    x_user_id: Optional[int] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None)
) -> Actor:
    """Caller identity forwarded by the upstream auth gateway"""
    if x_user_id is None:
        raise HTTPException(401, "Not authenticated")
    try:
        role = UserRole((x_user_role or UserRole.USER.value).upper())
    except ValueError:
        raise HTTPException(401, "Unknown role")
    return Actor(user_id=x_user_id, role=role)


def _respond(result: ServiceResult):
    body = result.model_dump(mode="json")
    if result.success:
        return body
    return JSONResponse(status_code=HTTP_STATUS_BY_KIND[ErrorKind(result.error.kind)], content=body)


@router.post("/checkout")
def create_checkout(
    checkout_request: CheckoutRequest,
    actor: Actor = Depends(get_current_actor),
    service: BillingService = Depends(get_billing_service)
):
    """Open a checkout for a plan and return the gateway checkout URL"""
    return _respond(service.init_checkout(actor, checkout_request))


@router.get("/checkout/{checkout_session_id}")
def get_checkout(
    checkout_session_id: int,
    actor: Actor = Depends(get_current_actor),
    service: BillingService = Depends(get_billing_service)
):
    """Return a still-payable checkout; 409 once it expired or was paid"""
    return _respond(service.resume_checkout(actor, checkout_session_id))


@router.get("/subscriptions/{subscription_id}")
def get_subscription(
    subscription_id: int,
    actor: Actor = Depends(get_current_actor),
    service: BillingService = Depends(get_billing_service)
):
    return _respond(service.get_subscription(actor, subscription_id))


@router.post("/subscriptions/{subscription_id}/cancel")
def cancel_subscription(
    subscription_id: int,
    cancel_request: Optional[CancelRequest] = None,
    actor: Actor = Depends(get_current_actor),
    service: BillingService = Depends(get_billing_service)
):
    reason = cancel_request.reason if cancel_request else None
    return _respond(service.cancel_subscription(actor, subscription_id, reason))


@router.post("/subscriptions/{subscription_id}/pause")
def pause_subscription(
    subscription_id: int,
    actor: Actor = Depends(get_current_actor),
    service: BillingService = Depends(get_billing_service)
):
    return _respond(service.pause_subscription(actor, subscription_id))


@router.post("/subscriptions/{subscription_id}/resume")
def resume_subscription(
    subscription_id: int,
    actor: Actor = Depends(get_current_actor),
    service: BillingService = Depends(get_billing_service)
):
    return _respond(service.resume_subscription(actor, subscription_id))


@router.post("/subscriptions/{subscription_id}/renew")
def renew_subscription(
    subscription_id: int,
    actor: Actor = Depends(get_current_actor),
    service: BillingService = Depends(get_billing_service)
):
    return _respond(service.renew_subscription(actor, subscription_id))


@router.post("/subscriptions/{subscription_id}/sync")
def sync_subscription(
    subscription_id: int,
    actor: Actor = Depends(get_current_actor),
    service: BillingService = Depends(get_billing_service)
):
    """Reconcile a subscription against the gateway on demand"""
    return _respond(service.sync_subscription_status(actor, subscription_id))


@router.post("/webhook")
async def gateway_webhook(
    request: Request,
    container: BillingContainer = Depends(get_container),
    service: BillingService = Depends(get_billing_service)
):
    """Handle payment gateway notifications

    Answers 2xx for processed, duplicate and unknown-resource notifications so
    the gateway stops redelivering them; retriable failures answer 503.
    """
    raw_body = await request.body()
    try:
        payload = json.loads(raw_body or b"{}")
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
        raise HTTPException(400, "Invalid JSON payload")
    if not isinstance(payload, dict):
        raise HTTPException(400, "Invalid JSON payload")

    notification = WebhookNotification.from_payload(payload, dict(request.query_params))
    if not container.verify_webhook(
        request.headers.get("x-signature"), request.headers.get("x-request-id"), notification.resource_id
    ):
        raise HTTPException(400, "Invalid signature")

    try:
        result = service.process_webhook(notification)
    except Exception as e:
        # Unexpected error - log but return 200 to prevent retries
        logger.error(f"Unexpected error processing webhook: {e}", exc_info=True)
        return {"status": "error", "message": "Webhook processing failed"}

    body = result.model_dump(mode="json")
    if not result.success and result.error.retriable:
        return JSONResponse(status_code=503, content=body)
    return body
