"""Preview of a seat-count / billing-cycle change (read-only)"""
from dataclasses import dataclass, asdict
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlalchemy.orm import Session

from family_portal.core.errors import ProcessorError, QuoteUnavailable
from family_portal.core.logging import get_logger
from family_portal.models.membership import Membership
from family_portal.models.plan import Plan
from family_portal.services.change_planner import (
    ChangeKind, ChangePlan, plan_change, plan_item_changes, seat_count_from_subscription,
)
from family_portal.services.commit_service import get_pending_downgrade
from family_portal.services.notification_service import children_label, cycle_label, format_long_date
from family_portal.services.pricing import get_price, monthly_equivalent
from family_portal.services.stripe_service import (
    StripeGateway, line_is_proration, subscription_items, subscription_period_end,
)

logger = get_logger(__name__)


@dataclass
class ChangePreview:
    kind: str
    current_children: int
    new_children: int
    current_billing_cycle: str
    new_billing_cycle: str
    current_monthly_price: int
    new_monthly_price: int
    new_total_price: int
    price_difference: int
    amount_due_now: float
    period_end: Optional[datetime]
    scheduled_for: Optional[datetime]
    children_to_select_count: Optional[int]
    is_downgrade: bool
    is_cycle_change: bool
    cycle_change_overrides_downgrade: bool
    message: str

    def to_dict(self) -> dict:
        return asdict(self)


def proration_amount(invoice) -> float:
    """Sum of the proration lines of an invoice preview, in dollars"""
    lines = (invoice.get("lines") or {}).get("data") or []
    cents = sum((line.get("amount") or 0) for line in lines if line_is_proration(line))
    return float(Decimal(cents) / 100)


class SubscriptionPreviewer:
    def __init__(self, db: Session, gateway: StripeGateway):
        self.db = db
        self.gateway = gateway

    def current_children(self, membership: Membership) -> int:
        plan = self.db.query(Plan).filter(Plan.id == membership.plan_id).first()
        return plan.max_children if plan else 1

    def preview(
        self,
        membership: Membership,
        new_children: int,
        new_cycle: Optional[str] = None,
    ) -> ChangePreview:
        plan = plan_change(
            self.current_children(membership),
            membership.billing_cycle,
            new_children,
            new_cycle,
        )
        subscription = self.gateway.retrieve_subscription(membership.stripe_subscription_id)
        period_end = subscription_period_end(subscription) or membership.current_period_end

        if plan.kind is ChangeKind.IMMEDIATE_UPGRADE:
            amount_due_now = self._quote_upgrade(membership, plan, subscription)
            scheduled_for = None
            message = (
                f"Se cobrará ${amount_due_now:.2f} ahora por los días restantes del período. "
                f"Tu plan pasará a {children_label(plan.new_children)}."
            )
        elif plan.kind is ChangeKind.DEFERRED_DOWNGRADE:
            amount_due_now = 0.0
            scheduled_for = period_end
            message = (
                f"El cambio a {children_label(plan.new_children)} se aplicará el "
                f"{format_long_date(period_end)}. Elige qué hijos conservarán el acceso."
            )
        else:
            amount_due_now = 0.0
            scheduled_for = period_end
            message = (
                f"Tu facturación pasará a {cycle_label(plan.new_cycle)} con "
                f"{children_label(plan.new_children)} el {format_long_date(period_end)}."
            )
            if plan.cycle_change_overrides_downgrade:
                message += " La reducción de hijos se aplicará junto con el cambio de ciclo."

        logger.info(
            f"Subscription preview: membership_id={membership.id}, kind={plan.kind.value}, "
            f"{plan.current_children}->{plan.new_children}, amount_due_now={amount_due_now}"
        )
        return self._build(plan, amount_due_now, period_end, scheduled_for, message)

    def _quote_upgrade(self, membership: Membership, plan: ChangePlan, subscription) -> float:
        items = plan_item_changes(plan, subscription_items(subscription), self.gateway.catalog)
        try:
            invoice = self.gateway.preview_invoice(
                membership.stripe_customer_id,
                membership.stripe_subscription_id,
                items,
            )
        except ProcessorError as e:
            raise QuoteUnavailable() from e
        amount = proration_amount(invoice)

        if get_pending_downgrade(self.db, membership.id) is not None:
            # Stripe only holds the lowered seats; the commit puts the paid
            # seats back first, so only seats above them are charged.
            stripe_seats = seat_count_from_subscription(subscription, self.gateway.catalog)
            quoted = plan.new_children - stripe_seats
            charged = plan.new_children - plan.current_children
            if quoted > charged > 0:
                amount = float(
                    (Decimal(str(amount)) * charged / quoted).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
                )
        return amount

    @staticmethod
    def _build(
        plan: ChangePlan,
        amount_due_now: float,
        period_end: Optional[datetime],
        scheduled_for: Optional[datetime],
        message: str,
    ) -> ChangePreview:
        current_monthly = monthly_equivalent(plan.current_children, plan.current_cycle)
        new_monthly = monthly_equivalent(plan.new_children, plan.new_cycle)
        return ChangePreview(
            kind=plan.kind.value,
            current_children=plan.current_children,
            new_children=plan.new_children,
            current_billing_cycle=plan.current_cycle,
            new_billing_cycle=plan.new_cycle,
            current_monthly_price=current_monthly,
            new_monthly_price=new_monthly,
            new_total_price=get_price(plan.new_children, plan.new_cycle),
            price_difference=new_monthly - current_monthly,
            amount_due_now=amount_due_now,
            period_end=period_end,
            scheduled_for=scheduled_for,
            children_to_select_count=plan.new_children if plan.requires_child_selection else None,
            is_downgrade=plan.is_downgrade,
            is_cycle_change=plan.is_cycle_change,
            cycle_change_overrides_downgrade=plan.cycle_change_overrides_downgrade,
            message=message,
        )
