"""Stripe webhook reconciliation

Stripe is the source of truth; every write here is an absolute write keyed
by subscription id. Duplicate deliveries are dropped by the processed-event
ledger, and each mutation is additionally guarded by current state.
"""
from typing import Optional

from sqlalchemy.orm import Session

from family_portal.core.config import settings
from family_portal.core.errors import ProcessorError
from family_portal.core.logging import get_logger
from family_portal.models.child import Child
from family_portal.models.family_code import FamilyCode
from family_portal.models.membership import TERMINAL_STATUSES, Membership
from family_portal.models.pending_billing_change import PendingBillingChange
from family_portal.models.pending_downgrade import PendingDowngrade
from family_portal.models.plan import Plan
from family_portal.models.processed_stripe_event import ProcessedStripeEvent
from family_portal.services.change_planner import billing_cycle_from_subscription, seat_count_from_subscription
from family_portal.services.commit_service import (
    cancel_pending_billing_changes, cancel_pending_downgrades, get_pending_billing_change,
    get_pending_downgrade, subscription_metadata,
)
from family_portal.services.mail_service import send_payment_failed_email
from family_portal.services.notification_service import (
    NotificationService, children_label, cycle_label, format_long_date, get_parent_profile,
)
from family_portal.services.plan_service import get_or_create_plan
from family_portal.services.provisioning_service import provision_family
from family_portal.services.stripe_service import (
    StripeGateway, invoice_subscription_id, object_id, subscription_period_end,
)

logger = get_logger(__name__)


def get_membership_by_subscription(db: Session, subscription_id: Optional[str]) -> Optional[Membership]:
    if not subscription_id:
        return None
    return db.query(Membership).filter(
        Membership.stripe_subscription_id == subscription_id,
    ).first()


def revoke_codes_of_removed_children(db: Session, family_id: int, children_to_keep: list) -> int:
    """Revoke the active codes of every child not kept (children stay)"""
    keep = {int(child_id) for child_id in (children_to_keep or [])}
    code_ids = [
        row.family_code_id
        for row in db.query(Child.id, Child.family_code_id).filter(Child.family_id == family_id).all()
        if row.id not in keep and row.family_code_id
    ]
    if not code_ids:
        return 0
    return db.query(FamilyCode).filter(
        FamilyCode.id.in_(code_ids),
        FamilyCode.status == "active",
    ).update({FamilyCode.status: "revoked"}, synchronize_session=False)


class WebhookReconciler:
    def __init__(self, db: Session, gateway: StripeGateway, notifier: NotificationService):
        self.db = db
        self.gateway = gateway
        self.notifier = notifier

    def handle_event(self, event) -> str:
        """Apply one verified event. Returns "duplicate", "ignored" or "processed".

        Handler errors propagate (the route answers 500 and Stripe redelivers);
        the event id is recorded only after its handler succeeded.
        """
        event_id = event.get("id")
        event_type = event.get("type")
        data = (event.get("data") or {}).get("object") or {}

        if self._is_event_processed(event_id):
            logger.info(f"Stripe webhook duplicate skipped: {event_id} ({event_type})")
            return "duplicate"

        handler = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_succeeded": self._handle_payment_succeeded,
            "invoice.payment_failed": self._handle_payment_failed,
        }.get(event_type)
        if handler is None:
            logger.info(f"Unhandled Stripe event: {event_type}")
            return "ignored"

        try:
            handler(data)
        except Exception as e:
            logger.error(f"Stripe webhook handler error: {event_type} ({event_id}) - {e}")
            self.db.rollback()
            raise

        self._record_processed_event(event_id, event_type)
        return "processed"

    # =========================================================
    # Ledger
    # =========================================================

    def _is_event_processed(self, event_id: Optional[str]) -> bool:
        if not event_id:
            return False
        return self.db.query(ProcessedStripeEvent).filter(
            ProcessedStripeEvent.event_id == event_id
        ).first() is not None

    def _record_processed_event(self, event_id: Optional[str], event_type: str):
        if not event_id:
            return
        self.db.add(ProcessedStripeEvent(event_id=event_id, event_type=event_type))
        self.db.commit()

    # =========================================================
    # Handlers
    # =========================================================

    def _handle_checkout_completed(self, session):
        """checkout.session.completed: provision family, membership and parent code"""
        metadata = session.get("metadata") or {}
        profile_id = metadata.get("userId")
        subscription_id = object_id(session.get("subscription"))
        if not profile_id or not subscription_id:
            logger.warning(f"Checkout session without user or subscription: {session.get('id')}")
            return

        subscription = self.gateway.retrieve_subscription(subscription_id)
        children = int(metadata.get("childrenCount") or 1)
        result = provision_family(self.db, self.gateway.catalog, int(profile_id), subscription, children)
        if result is not None and result.created:
            self.notifier.notify(
                int(profile_id),
                "subscription_created",
                f"¡Bienvenido a {settings.SITE_NAME}!",
                f"Tu membresía familiar con {children_label(children)} ha sido activada exitosamente.",
            )

    def _handle_subscription_updated(self, subscription):
        membership = get_membership_by_subscription(self.db, subscription.get("id"))
        if membership is None:
            logger.info(f"subscription.updated for unknown subscription: {subscription.get('id')}")
            return

        catalog = self.gateway.catalog
        period_end = subscription_period_end(subscription)
        billing_cycle = billing_cycle_from_subscription(subscription, catalog)
        was_canceling = bool(membership.cancel_at_period_end)
        now_canceling = bool(subscription.get("cancel_at_period_end"))

        plan = self.db.query(Plan).filter(Plan.id == membership.plan_id).first()
        cached_children = plan.max_children if plan else None
        target_children = seat_count_from_subscription(subscription, catalog)

        applied_downgrade: Optional[PendingDowngrade] = None
        pending_downgrade = get_pending_downgrade(self.db, membership.id)
        if pending_downgrade is not None:
            if period_end and period_end > pending_downgrade.scheduled_for:
                revoked = revoke_codes_of_removed_children(
                    self.db, membership.family_id, pending_downgrade.children_to_keep
                )
                pending_downgrade.status = "applied"
                target_children = pending_downgrade.new_children_count
                applied_downgrade = pending_downgrade
                logger.info(
                    f"Pending downgrade applied: membership_id={membership.id}, "
                    f"children={target_children}, codes_revoked={revoked}"
                )
            elif cached_children is not None:
                # Stripe already carries the lowered seat count; keep the
                # paid-for seats until the period rolls over.
                target_children = cached_children

        applied_billing_change: Optional[PendingBillingChange] = None
        pending_billing = get_pending_billing_change(self.db, membership.id)
        if (
            pending_billing is not None
            and billing_cycle == pending_billing.new_billing_cycle
            and period_end
            and period_end > pending_billing.scheduled_for
        ):
            pending_billing.status = "applied"
            applied_billing_change = pending_billing
            logger.info(
                f"Pending billing change applied: membership_id={membership.id}, "
                f"cycle={pending_billing.new_billing_cycle}"
            )

        if target_children != cached_children:
            new_plan = get_or_create_plan(self.db, target_children)
            membership.plan_id = new_plan.id
            logger.info(
                f"Membership plan synced: membership_id={membership.id}, "
                f"{cached_children}->{new_plan.max_children}"
            )

        if membership.status not in TERMINAL_STATUSES:
            membership.status = "active" if subscription.get("status") == "active" else "past_due"
        if billing_cycle:
            membership.billing_cycle = billing_cycle
        if period_end:
            membership.current_period_end = period_end
        membership.cancel_at_period_end = now_canceling
        self.db.commit()

        # Side effects after the state transition is committed
        if applied_downgrade is not None:
            self._clear_downgrade_metadata(membership, applied_downgrade.new_children_count)
            self.notifier.notify_family(
                membership.family_id,
                "subscription_downgrade_applied",
                "Cambio de plan aplicado",
                f"Tu plan ahora incluye {children_label(applied_downgrade.new_children_count)}.",
            )
        if applied_billing_change is not None:
            self.notifier.notify_family(
                membership.family_id,
                "subscription_cycle_change_applied",
                "Cambio de ciclo aplicado",
                f"Tu facturación ahora es {cycle_label(applied_billing_change.new_billing_cycle)} con "
                f"{children_label(applied_billing_change.new_children_count)}.",
            )
        if now_canceling and not was_canceling:
            self.notifier.notify_family(
                membership.family_id,
                "subscription_cancel_scheduled",
                "Cancelación programada",
                f"Tu suscripción se cancelará el {format_long_date(membership.current_period_end)}.",
            )
        elif was_canceling and not now_canceling:
            self.notifier.notify_family(
                membership.family_id,
                "subscription_reactivated",
                "Suscripción reactivada",
                "Tu suscripción seguirá renovándose automáticamente.",
            )

    def _clear_downgrade_metadata(self, membership: Membership, children: int):
        try:
            self.gateway.update_subscription(
                membership.stripe_subscription_id,
                metadata=subscription_metadata(children),
            )
        except ProcessorError as e:
            logger.error(
                f"Clearing downgrade metadata failed: subscription={membership.stripe_subscription_id} - {e}"
            )

    def _handle_subscription_deleted(self, subscription):
        membership = get_membership_by_subscription(self.db, subscription.get("id"))
        if membership is None or membership.status == "canceled":
            return

        membership.status = "canceled"
        membership.cancel_at_period_end = False
        cancel_pending_downgrades(self.db, membership.id)
        cancel_pending_billing_changes(self.db, membership.id)
        self.db.commit()
        logger.info(f"Membership canceled: membership_id={membership.id}")

        self.notifier.notify_family(
            membership.family_id,
            "subscription_canceled",
            "Suscripción cancelada",
            f"Tu suscripción ha sido cancelada. Gracias por usar {settings.SITE_NAME}.",
        )

    def _handle_payment_succeeded(self, invoice):
        membership = get_membership_by_subscription(self.db, invoice_subscription_id(invoice))
        if membership is None:
            return

        if membership.status == "past_due":
            membership.status = "active"
            self.db.commit()
            logger.info(f"Membership recovered from past_due: membership_id={membership.id}")

        self.notifier.notify_family(
            membership.family_id,
            "subscription_renewed",
            "Suscripción renovada",
            "Tu suscripción se ha renovado exitosamente.",
        )

    def _handle_payment_failed(self, invoice):
        membership = get_membership_by_subscription(self.db, invoice_subscription_id(invoice))
        if membership is None:
            return

        if membership.status not in TERMINAL_STATUSES:
            membership.status = "past_due"
            self.db.commit()
        logger.warning(f"Payment failed: membership_id={membership.id}")

        self.notifier.notify_family(
            membership.family_id,
            "payment_failed",
            "Fallo en el pago",
            "No pudimos procesar tu pago. Por favor actualiza tu método de pago.",
        )
        parent = get_parent_profile(self.db, membership.family_id)
        if parent is not None and parent.email:
            send_payment_failed_email(parent.email, parent.first_name)
