"""Subscription router: checkout, billing portal, seat / cycle changes"""
import urllib.parse
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from family_portal.core.config import settings
from family_portal.core.database import get_db
from family_portal.core.errors import ProcessorError
from family_portal.core.rate_limit import (
    limiter, CHECKOUT_RATE_LIMIT, PREVIEW_RATE_LIMIT, SUBSCRIPTION_CHANGE_RATE_LIMIT,
)
from family_portal.models.membership import Membership
from family_portal.models.profile import Profile
from family_portal.routers.deps import get_notifier, require_membership, require_parent
from family_portal.schemas.subscription import (
    BillingPortalRequest, ChangePreviewRequest, ChangePreviewResponse, ChangeRequest, ChangeResponse,
    CheckoutCompleteRequest, CheckoutRequest,
)
from family_portal.services.change_planner import build_target_items
from family_portal.services.commit_service import SubscriptionCommitter
from family_portal.services.family_service import get_active_membership
from family_portal.services.notification_service import NotificationService, children_label
from family_portal.services.preview_service import SubscriptionPreviewer
from family_portal.services.provisioning_service import provision_family
from family_portal.services.stripe_service import StripeGateway, get_stripe_gateway, object_id
from family_portal.core.logging import get_logger

router = APIRouter(prefix="/api/subscription", tags=["subscriptions"])
logger = get_logger(__name__)


def _validate_redirect_url(url: str) -> str:
    """Same-origin redirects only"""
    if not url:
        return url
    parsed = urllib.parse.urlparse(url)
    site_parsed = urllib.parse.urlparse(settings.SITE_URL)
    if parsed.netloc and parsed.netloc != site_parsed.netloc:
        raise HTTPException(status_code=400, detail="URL de redirección no válida")
    return url


@router.post("/checkout")
@limiter.limit(CHECKOUT_RATE_LIMIT)
async def checkout(
    request: Request,
    req: CheckoutRequest,
    user: Profile = Depends(require_parent),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    """Stripe Checkout session for a new family plan"""
    if get_active_membership(db, user.family_id):
        raise HTTPException(status_code=400, detail="Ya tienes una membresía activa")

    success_url = _validate_redirect_url(req.success_url) or (
        f"{settings.SITE_URL}/onboarding/hijos?session_id={{CHECKOUT_SESSION_ID}}"
    )
    cancel_url = _validate_redirect_url(req.cancel_url) or f"{settings.SITE_URL}/onboarding/plan"

    checkout_url = gateway.create_checkout_session(
        line_items=build_target_items(req.children_count, req.billing_cycle, gateway.catalog),
        success_url=success_url,
        cancel_url=cancel_url,
        customer_email=user.email,
        metadata={
            "userId": str(user.id),
            "childrenCount": str(req.children_count),
            "billingCycle": req.billing_cycle,
        },
    )
    logger.info(
        f"Checkout session created: profile_id={user.id}, "
        f"children={req.children_count}, cycle={req.billing_cycle}"
    )
    return {"checkout_url": checkout_url}


@router.post("/checkout-complete")
async def checkout_complete(
    req: CheckoutCompleteRequest,
    user: Profile = Depends(require_parent),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    notifier: NotificationService = Depends(get_notifier),
):
    """Provision the family when the user returns before the webhook arrived"""
    try:
        session = gateway.retrieve_checkout_session(req.session_id)
    except ProcessorError:
        raise HTTPException(status_code=400, detail="No se pudo obtener la sesión de pago")

    metadata = session.get("metadata") or {}
    if metadata.get("userId") != str(user.id):
        raise HTTPException(status_code=403, detail="La sesión de pago no corresponde a este usuario")
    if session.get("status") != "complete":
        raise HTTPException(status_code=400, detail="El pago no se ha completado")

    subscription_id = object_id(session.get("subscription"))
    if not subscription_id:
        raise HTTPException(status_code=400, detail="No se encontró la suscripción")

    subscription = gateway.retrieve_subscription(subscription_id)
    children = int(metadata.get("childrenCount") or 1)
    result = provision_family(db, gateway.catalog, user.id, subscription, children)
    if result is None:
        raise HTTPException(status_code=404, detail="Perfil no encontrado")
    if result.created:
        notifier.notify(
            user.id,
            "subscription_created",
            f"¡Bienvenido a {settings.SITE_NAME}!",
            f"Tu membresía familiar con {children_label(children)} ha sido activada exitosamente.",
        )
    logger.info(f"checkout-complete: profile_id={user.id}, family_id={result.family_id}, created={result.created}")
    return {"family_id": result.family_id, "created": result.created}


@router.post("/billing-portal")
async def billing_portal(
    req: BillingPortalRequest,
    membership: Membership = Depends(require_membership),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    """Stripe Billing Portal"""
    if not membership.stripe_customer_id:
        raise HTTPException(status_code=400, detail="No se encontró la información de pago")

    return_url = _validate_redirect_url(req.return_url) or f"{settings.SITE_URL}/membresia"
    url = gateway.create_billing_portal_session(membership.stripe_customer_id, return_url)
    return {"portal_url": url}


# =========================================================
# Seat / cycle changes
# =========================================================

@router.post("/preview", response_model=ChangePreviewResponse)
@limiter.limit(PREVIEW_RATE_LIMIT)
async def preview_change(
    request: Request,
    req: ChangePreviewRequest,
    membership: Membership = Depends(require_membership),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    """What a change would cost, without applying it"""
    previewer = SubscriptionPreviewer(db, gateway)
    preview = previewer.preview(membership, req.new_children_count, req.new_billing_cycle)
    return preview.to_dict()


@router.post("/update", response_model=ChangeResponse)
@limiter.limit(SUBSCRIPTION_CHANGE_RATE_LIMIT)
async def update_subscription(
    request: Request,
    req: ChangeRequest,
    user: Profile = Depends(require_parent),
    membership: Membership = Depends(require_membership),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    notifier: NotificationService = Depends(get_notifier),
):
    committer = SubscriptionCommitter(db, gateway, notifier)
    result = committer.apply_change(
        membership,
        user,
        req.new_children_count,
        req.new_billing_cycle,
        req.children_to_keep,
    )
    return result.to_dict()


@router.post("/cancel-downgrade")
@limiter.limit(SUBSCRIPTION_CHANGE_RATE_LIMIT)
async def cancel_downgrade(
    request: Request,
    user: Profile = Depends(require_parent),
    membership: Membership = Depends(require_membership),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    notifier: NotificationService = Depends(get_notifier),
):
    committer = SubscriptionCommitter(db, gateway, notifier)
    pending = committer.cancel_pending_downgrade(membership, user)
    return {"success": True, "pending_downgrade_id": pending.id, "status": pending.status}


@router.post("/cancel-billing-change")
@limiter.limit(SUBSCRIPTION_CHANGE_RATE_LIMIT)
async def cancel_billing_change(
    request: Request,
    user: Profile = Depends(require_parent),
    membership: Membership = Depends(require_membership),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    notifier: NotificationService = Depends(get_notifier),
):
    committer = SubscriptionCommitter(db, gateway, notifier)
    pending = committer.cancel_pending_billing_change(membership, user)
    return {"success": True, "pending_billing_change_id": pending.id, "status": pending.status}
