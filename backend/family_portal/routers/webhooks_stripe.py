"""Stripe webhook router (signature-verified)"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from family_portal.core.database import get_db
from family_portal.routers.deps import get_notifier
from family_portal.services.notification_service import NotificationService
from family_portal.services.reconcile_service import WebhookReconciler
from family_portal.services.stripe_service import StripeGateway, get_stripe_gateway
from family_portal.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/api/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    notifier: NotificationService = Depends(get_notifier),
):
    """Invalid signatures are rejected before the body is looked at"""
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")
    event = gateway.construct_event(payload, sig_header)

    outcome = WebhookReconciler(db, gateway, notifier).handle_event(event)
    logger.info(
        f"Stripe webhook {outcome}: {event.get('id')}",
        extra={"extra_data": {"event_id": event.get("id"), "event_type": event.get("type"), "outcome": outcome}},
    )
    return {"received": True}
