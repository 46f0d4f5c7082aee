"""Commit of a seat-count / billing-cycle change

Stripe is mutated first; local rows are written only once Stripe accepted
the change. The local Membership write on upgrade is an optimistic cache of
what the `customer.subscription.updated` webhook will write again.
"""
import json
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from family_portal.core.errors import (
    InvalidChildSelection, NoPendingChange, ProcessorError, ProcessorUpdateFailed,
)
from family_portal.core.logging import get_logger
from family_portal.models.child import Child
from family_portal.models.membership import Membership
from family_portal.models.pending_billing_change import PendingBillingChange
from family_portal.models.pending_downgrade import PendingDowngrade
from family_portal.models.plan import Plan
from family_portal.models.profile import Profile
from family_portal.services.change_planner import (
    ChangeKind, ChangePlan, build_item_changes, build_target_items, current_phase_items,
    plan_change, plan_item_changes,
)
from family_portal.services.notification_service import (
    NotificationService, children_label, cycle_label, format_long_date,
)
from family_portal.services.plan_service import get_or_create_plan
from family_portal.services.stripe_service import (
    StripeGateway, subscription_items, subscription_period_end, to_timestamp,
)

logger = get_logger(__name__)

OPEN_SCHEDULE_STATUSES = ("active", "not_started")


@dataclass
class ChangeResult:
    kind: str
    new_children: int
    new_billing_cycle: str
    scheduled_for: Optional[datetime]
    cycle_change_overrides_downgrade: bool
    message: str

    def to_dict(self) -> dict:
        return asdict(self)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def subscription_metadata(children: int, pending_downgrade: bool = False, children_to_keep=None) -> dict:
    """Self-describing Stripe metadata (all values are strings)"""
    return {
        "childrenCount": str(children),
        "pendingDowngrade": "true" if pending_downgrade else "false",
        "childrenToKeep": json.dumps(children_to_keep) if children_to_keep else "",
    }


def get_pending_downgrade(db: Session, membership_id: int) -> Optional[PendingDowngrade]:
    return db.query(PendingDowngrade).filter(
        PendingDowngrade.membership_id == membership_id,
        PendingDowngrade.status == "pending",
    ).order_by(PendingDowngrade.id.desc()).first()


def get_pending_billing_change(db: Session, membership_id: int) -> Optional[PendingBillingChange]:
    return db.query(PendingBillingChange).filter(
        PendingBillingChange.membership_id == membership_id,
        PendingBillingChange.status == "pending",
    ).order_by(PendingBillingChange.id.desc()).first()


def cancel_pending_downgrades(db: Session, membership_id: int) -> int:
    """Mark every pending downgrade of the membership canceled (no commit)"""
    return db.query(PendingDowngrade).filter(
        PendingDowngrade.membership_id == membership_id,
        PendingDowngrade.status == "pending",
    ).update({PendingDowngrade.status: "canceled"}, synchronize_session=False)


def cancel_pending_billing_changes(db: Session, membership_id: int) -> int:
    return db.query(PendingBillingChange).filter(
        PendingBillingChange.membership_id == membership_id,
        PendingBillingChange.status == "pending",
    ).update({PendingBillingChange.status: "canceled"}, synchronize_session=False)


def validate_children_to_keep(db: Session, family_id: int, children_to_keep, new_children: int) -> list[int]:
    """Exactly `new_children` distinct ids, all children of the family"""
    if not children_to_keep or len(children_to_keep) != new_children:
        raise InvalidChildSelection(
            f"Debes seleccionar exactamente {children_label(new_children)} para conservar"
        )
    ids = [int(child_id) for child_id in children_to_keep]
    if len(set(ids)) != len(ids):
        raise InvalidChildSelection("La selección de hijos contiene duplicados")
    found = db.query(Child.id).filter(
        Child.family_id == family_id,
        Child.id.in_(ids),
    ).count()
    if found != len(ids):
        raise InvalidChildSelection()
    return ids


class SubscriptionCommitter:
    def __init__(self, db: Session, gateway: StripeGateway, notifier: NotificationService):
        self.db = db
        self.gateway = gateway
        self.notifier = notifier

    def current_children(self, membership: Membership) -> int:
        plan = self.db.query(Plan).filter(Plan.id == membership.plan_id).first()
        return plan.max_children if plan else 1

    # =========================================================
    # Apply
    # =========================================================

    def apply_change(
        self,
        membership: Membership,
        profile: Profile,
        new_children: int,
        new_cycle: Optional[str] = None,
        children_to_keep: Optional[list[int]] = None,
    ) -> ChangeResult:
        plan = plan_change(
            self.current_children(membership),
            membership.billing_cycle,
            new_children,
            new_cycle,
        )
        keep_ids = None
        if plan.requires_child_selection:
            keep_ids = validate_children_to_keep(
                self.db, membership.family_id, children_to_keep, plan.new_children
            )

        try:
            subscription = self.gateway.retrieve_subscription(membership.stripe_subscription_id)
        except ProcessorError as e:
            raise ProcessorUpdateFailed() from e
        period_end = subscription_period_end(subscription) or membership.current_period_end

        if plan.kind is ChangeKind.IMMEDIATE_UPGRADE:
            return self._apply_upgrade(membership, profile, plan, subscription, period_end)
        if plan.kind is ChangeKind.DEFERRED_DOWNGRADE:
            return self._schedule_downgrade(membership, profile, plan, subscription, period_end, keep_ids)
        return self._schedule_cycle_change(membership, profile, plan, subscription, period_end)

    def _apply_upgrade(self, membership, profile, plan: ChangePlan, subscription, period_end) -> ChangeResult:
        self._supersede_pending_billing_change(membership)
        subscription = self._restore_pending_downgrade(membership, subscription)
        items = plan_item_changes(plan, subscription_items(subscription), self.gateway.catalog)
        try:
            updated = self.gateway.update_subscription(
                membership.stripe_subscription_id,
                items=items,
                proration_behavior="create_prorations",
                metadata=subscription_metadata(plan.new_children),
            )
        except ProcessorError as e:
            raise ProcessorUpdateFailed() from e

        new_plan = get_or_create_plan(self.db, plan.new_children)
        self.db.query(Membership).filter(
            Membership.stripe_subscription_id == membership.stripe_subscription_id,
        ).update({
            Membership.plan_id: new_plan.id,
            Membership.billing_cycle: plan.new_cycle,
            Membership.current_period_end: subscription_period_end(updated) or period_end,
        }, synchronize_session=False)
        self.db.commit()
        self.db.refresh(membership)

        logger.info(
            f"Subscription upgraded: membership_id={membership.id}, "
            f"{plan.current_children}->{plan.new_children}"
        )
        message = f"Tu plan ahora incluye {children_label(plan.new_children)}."
        self.notifier.notify(profile.id, "subscription_updated", "Plan actualizado", message)
        return ChangeResult(
            kind=plan.kind.value,
            new_children=plan.new_children,
            new_billing_cycle=plan.new_cycle,
            scheduled_for=None,
            cycle_change_overrides_downgrade=False,
            message=message,
        )

    def _schedule_downgrade(
        self, membership, profile, plan: ChangePlan, subscription, period_end, keep_ids: list[int],
    ) -> ChangeResult:
        self._supersede_pending_billing_change(membership)
        items = plan_item_changes(plan, subscription_items(subscription), self.gateway.catalog)
        try:
            self.gateway.update_subscription(
                membership.stripe_subscription_id,
                items=items,
                proration_behavior="none",
                metadata=subscription_metadata(plan.new_children, True, keep_ids),
            )
        except ProcessorError as e:
            raise ProcessorUpdateFailed() from e

        scheduled_for = period_end or _utcnow()
        superseded = cancel_pending_downgrades(self.db, membership.id)
        self.db.add(PendingDowngrade(
            membership_id=membership.id,
            new_children_count=plan.new_children,
            children_to_keep=keep_ids,
            scheduled_for=scheduled_for,
            status="pending",
        ))
        self.db.commit()

        logger.info(
            f"Downgrade scheduled: membership_id={membership.id}, "
            f"{plan.current_children}->{plan.new_children}, at={scheduled_for}, superseded={superseded}"
        )
        message = (
            f"Tu plan cambiará a {children_label(plan.new_children)} el "
            f"{format_long_date(scheduled_for)}. Hasta entonces conservas todos tus beneficios."
        )
        self.notifier.notify(profile.id, "subscription_downgrade_scheduled", "Cambio de plan programado", message)
        return ChangeResult(
            kind=plan.kind.value,
            new_children=plan.new_children,
            new_billing_cycle=plan.new_cycle,
            scheduled_for=scheduled_for,
            cycle_change_overrides_downgrade=False,
            message=message,
        )

    def _schedule_cycle_change(self, membership, profile, plan: ChangePlan, subscription, period_end) -> ChangeResult:
        scheduled_for = period_end or _utcnow()
        catalog = self.gateway.catalog
        subscription = self._restore_pending_downgrade(membership, subscription)
        try:
            self.release_open_schedules(membership.stripe_customer_id)
            schedule = self.gateway.create_schedule_from_subscription(membership.stripe_subscription_id)
        except ProcessorError as e:
            raise ProcessorUpdateFailed() from e

        current_phase: dict = {
            "items": current_phase_items(subscription),
            "end_date": to_timestamp(scheduled_for),
        }
        phases = schedule.get("phases") or []
        if phases and phases[0].get("start_date"):
            current_phase["start_date"] = phases[0].get("start_date")
        next_phase = {
            "items": build_target_items(plan.new_children, plan.new_cycle, catalog),
            "iterations": 1,
            "metadata": subscription_metadata(plan.new_children),
        }
        try:
            self.gateway.update_schedule(schedule.get("id"), [current_phase, next_phase], end_behavior="release")
        except ProcessorError as e:
            self._release_quietly(schedule.get("id"))
            raise ProcessorUpdateFailed() from e

        superseded = cancel_pending_billing_changes(self.db, membership.id)
        self.db.add(PendingBillingChange(
            membership_id=membership.id,
            new_billing_cycle=plan.new_cycle,
            new_children_count=plan.new_children,
            scheduled_for=scheduled_for,
            status="pending",
        ))
        self.db.commit()

        logger.info(
            f"Billing cycle change scheduled: membership_id={membership.id}, "
            f"{plan.current_cycle}->{plan.new_cycle}, children={plan.new_children}, "
            f"at={scheduled_for}, superseded={superseded}"
        )
        message = (
            f"Tu ciclo de facturación cambiará a {cycle_label(plan.new_cycle)} con "
            f"{children_label(plan.new_children)} el {format_long_date(scheduled_for)}."
        )
        if plan.cycle_change_overrides_downgrade:
            message += " La reducción de hijos se aplica con el cambio de ciclo."
        self.notifier.notify(
            profile.id, "subscription_cycle_change_scheduled", "Cambio de ciclo programado", message
        )
        return ChangeResult(
            kind=plan.kind.value,
            new_children=plan.new_children,
            new_billing_cycle=plan.new_cycle,
            scheduled_for=scheduled_for,
            cycle_change_overrides_downgrade=plan.cycle_change_overrides_downgrade,
            message=message,
        )

    # =========================================================
    # Schedules
    # =========================================================

    def release_open_schedules(self, customer_id: Optional[str]) -> int:
        """Release every active / not-started schedule of the customer.

        Released, not canceled: canceling a schedule also cancels the
        subscription it controls.
        """
        if not customer_id:
            return 0
        released = 0
        for schedule in self.gateway.list_subscription_schedules(customer_id):
            if schedule.get("status") in OPEN_SCHEDULE_STATUSES:
                self.gateway.release_schedule(schedule.get("id"))
                released += 1
        return released

    def _release_quietly(self, schedule_id: Optional[str]):
        if not schedule_id:
            return
        try:
            self.gateway.release_schedule(schedule_id)
        except ProcessorError as e:
            logger.error(f"Stray schedule release failed: {schedule_id} - {e}")

    # =========================================================
    # Superseding the other pending kind
    # =========================================================

    def _restore_pending_downgrade(self, membership: Membership, subscription):
        """Put back the seats a pending downgrade lowered on Stripe.

        The downgrade changed the items without proration, so a prorated
        delta built on top of them would charge again for seats already paid
        for this period. Returns the restored subscription.
        """
        if get_pending_downgrade(self.db, membership.id) is None:
            return subscription
        seats = self.current_children(membership)
        try:
            restored = self._revert_items(membership, subscription, seats)
        except ProcessorError as e:
            raise ProcessorUpdateFailed() from e

        superseded = cancel_pending_downgrades(self.db, membership.id)
        self.db.commit()
        logger.info(
            f"Pending downgrade superseded: membership_id={membership.id}, seats={seats}, rows={superseded}"
        )
        return restored

    def _supersede_pending_billing_change(self, membership: Membership) -> None:
        """A seat change on the current cycle drops a scheduled cycle change.

        The schedule's next phase carries the old seat count and would undo
        the change at rollover, so it is released first.
        """
        if get_pending_billing_change(self.db, membership.id) is None:
            return
        try:
            released = self.release_open_schedules(membership.stripe_customer_id)
        except ProcessorError as e:
            raise ProcessorUpdateFailed() from e

        superseded = cancel_pending_billing_changes(self.db, membership.id)
        self.db.commit()
        logger.info(
            f"Pending billing change superseded: membership_id={membership.id}, "
            f"schedules_released={released}, rows={superseded}"
        )

    def _revert_items(self, membership: Membership, subscription, seats: int):
        items = build_item_changes(
            subscription_items(subscription), seats, membership.billing_cycle, self.gateway.catalog
        )
        return self.gateway.update_subscription(
            membership.stripe_subscription_id,
            items=items,
            proration_behavior="none",
            metadata=subscription_metadata(seats),
        )

    # =========================================================
    # Reversal
    # =========================================================

    def cancel_pending_downgrade(self, membership: Membership, profile: Profile) -> PendingDowngrade:
        pending = get_pending_downgrade(self.db, membership.id)
        if pending is None:
            raise NoPendingChange("No hay ninguna reducción de plan pendiente")

        seats = self.current_children(membership)
        try:
            subscription = self.gateway.retrieve_subscription(membership.stripe_subscription_id)
            self._revert_items(membership, subscription, seats)
        except ProcessorError as e:
            raise ProcessorUpdateFailed() from e

        pending.status = "canceled"
        self.db.commit()

        logger.info(f"Pending downgrade canceled: membership_id={membership.id}, pending_id={pending.id}")
        self.notifier.notify(
            profile.id,
            "subscription_downgrade_canceled",
            "Cambio de plan cancelado",
            f"Conservarás tu plan actual con {children_label(seats)}.",
        )
        return pending

    def cancel_pending_billing_change(self, membership: Membership, profile: Profile) -> PendingBillingChange:
        pending = get_pending_billing_change(self.db, membership.id)
        if pending is None:
            raise NoPendingChange("No hay ningún cambio de ciclo pendiente")

        try:
            released = self.release_open_schedules(membership.stripe_customer_id)
        except ProcessorError as e:
            raise ProcessorUpdateFailed() from e

        pending.status = "canceled"
        self.db.commit()

        logger.info(
            f"Pending billing change canceled: membership_id={membership.id}, "
            f"pending_id={pending.id}, schedules_released={released}"
        )
        self.notifier.notify(
            profile.id,
            "subscription_cycle_change_canceled",
            "Cambio de ciclo cancelado",
            f"Tu facturación seguirá siendo {cycle_label(membership.billing_cycle)}.",
        )
        return pending
