"""Seat-count / billing-cycle change planning

Pure functions shared by the preview and commit paths, so that what the
user previews is exactly what gets committed.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from family_portal.core.errors import NoChangesToApply, SeatCountOutOfRange, ChangeValidationError
from family_portal.services.pricing import BILLING_CYCLES, MAX_CHILDREN, MIN_CHILDREN
from family_portal.services.stripe_service import PriceCatalog, item_price_id, subscription_items


class ChangeKind(str, Enum):
    IMMEDIATE_UPGRADE = "immediate_upgrade"
    DEFERRED_DOWNGRADE = "deferred_downgrade"
    DEFERRED_CYCLE_CHANGE = "deferred_cycle_change"


@dataclass(frozen=True)
class ChangePlan:
    kind: ChangeKind
    current_children: int
    current_cycle: str
    new_children: int
    new_cycle: str

    @property
    def is_downgrade(self) -> bool:
        return self.new_children < self.current_children

    @property
    def is_cycle_change(self) -> bool:
        return self.new_cycle != self.current_cycle

    @property
    def is_deferred(self) -> bool:
        return self.kind is not ChangeKind.IMMEDIATE_UPGRADE

    @property
    def requires_child_selection(self) -> bool:
        return self.kind is ChangeKind.DEFERRED_DOWNGRADE

    @property
    def cycle_change_overrides_downgrade(self) -> bool:
        """A seat decrease requested together with a cycle change is carried
        by the cycle-change schedule, not by the downgrade flow."""
        return self.kind is ChangeKind.DEFERRED_CYCLE_CHANGE and self.is_downgrade

    @property
    def additional_children(self) -> int:
        return max(0, self.new_children - 1)


def plan_change(
    current_children: int,
    current_cycle: str,
    new_children: int,
    new_cycle: Optional[str] = None,
) -> ChangePlan:
    """Classify a requested change.

    - fewer seats, same cycle -> DEFERRED_DOWNGRADE (applies at period end)
    - any cycle change -> DEFERRED_CYCLE_CHANGE (Stripe schedule at period end)
    - otherwise -> IMMEDIATE_UPGRADE (prorated charge now)
    """
    if new_children is None or not (MIN_CHILDREN <= new_children <= MAX_CHILDREN):
        raise SeatCountOutOfRange(
            f"La cantidad de hijos debe estar entre {MIN_CHILDREN} y {MAX_CHILDREN}"
        )
    target_cycle = new_cycle or current_cycle
    if target_cycle not in BILLING_CYCLES:
        raise ChangeValidationError("El ciclo de facturación debe ser 'monthly' o 'yearly'")

    is_downgrade = new_children < current_children
    is_cycle_change = target_cycle != current_cycle

    if new_children == current_children and not is_cycle_change:
        raise NoChangesToApply()

    if is_downgrade and not is_cycle_change:
        kind = ChangeKind.DEFERRED_DOWNGRADE
    elif is_cycle_change:
        kind = ChangeKind.DEFERRED_CYCLE_CHANGE
    else:
        kind = ChangeKind.IMMEDIATE_UPGRADE

    return ChangePlan(
        kind=kind,
        current_children=current_children,
        current_cycle=current_cycle,
        new_children=new_children,
        new_cycle=target_cycle,
    )


# =========================================================
# Line items
# =========================================================

def find_base_item(items: list, catalog: PriceCatalog):
    return next((i for i in items if catalog.is_base(item_price_id(i))), None)


def find_additional_item(items: list, catalog: PriceCatalog):
    return next((i for i in items if catalog.is_additional(item_price_id(i))), None)


def build_item_changes(
    current_items: list,
    new_children: int,
    new_cycle: str,
    catalog: PriceCatalog,
    cycle_change: bool = False,
) -> list[dict]:
    """Stripe `items` payload that moves the subscription to `new_children`.

    The base item only changes price on a cycle change; the additional-seat
    item is updated, deleted (quantity 0) or added.
    """
    changes: list[dict] = []
    additional = max(0, new_children - 1)
    base_item = find_base_item(current_items, catalog)
    additional_item = find_additional_item(current_items, catalog)
    additional_price = catalog.additional_price(new_cycle)

    if cycle_change and base_item:
        changes.append({"id": base_item.get("id"), "price": catalog.base_price(new_cycle)})

    if additional_item:
        if additional == 0:
            changes.append({"id": additional_item.get("id"), "deleted": True})
        elif cycle_change:
            changes.append({"id": additional_item.get("id"), "price": additional_price, "quantity": additional})
        else:
            changes.append({"id": additional_item.get("id"), "quantity": additional})
    elif additional > 0:
        changes.append({"price": additional_price, "quantity": additional})

    return changes


def plan_item_changes(plan: ChangePlan, current_items: list, catalog: PriceCatalog) -> list[dict]:
    return build_item_changes(
        current_items,
        plan.new_children,
        plan.new_cycle,
        catalog,
        cycle_change=plan.is_cycle_change,
    )


def build_target_items(children: int, billing_cycle: str, catalog: PriceCatalog) -> list[dict]:
    """Complete item list for a fresh subscription (checkout, schedule phases)"""
    items = [{"price": catalog.base_price(billing_cycle), "quantity": 1}]
    if children > 1:
        items.append({"price": catalog.additional_price(billing_cycle), "quantity": children - 1})
    return items


def current_phase_items(subscription) -> list[dict]:
    return [
        {"price": item_price_id(item), "quantity": item.get("quantity") or 1}
        for item in subscription_items(subscription)
    ]


# =========================================================
# Reading a subscription back
# =========================================================

def seat_count_from_subscription(subscription, catalog: PriceCatalog) -> int:
    """Metadata childrenCount first, else 1 + additional-seat quantity"""
    metadata = subscription.get("metadata") or {}
    raw = metadata.get("childrenCount")
    if raw:
        try:
            count = int(raw)
            if count >= MIN_CHILDREN:
                return count
        except (TypeError, ValueError):
            pass
    additional_item = find_additional_item(subscription_items(subscription), catalog)
    return 1 + ((additional_item.get("quantity") or 0) if additional_item else 0)


def billing_cycle_from_subscription(subscription, catalog: PriceCatalog) -> Optional[str]:
    base_item = find_base_item(subscription_items(subscription), catalog)
    if base_item:
        cycle = catalog.cycle_of(item_price_id(base_item))
        if cycle:
            return cycle
    # Unknown price ids (e.g. a checkout built elsewhere): fall back to the interval
    for item in subscription_items(subscription):
        price = item.get("price")
        recurring = price.get("recurring") if price and not isinstance(price, str) else None
        interval = recurring.get("interval") if recurring else None
        if interval == "year":
            return "yearly"
        if interval == "month":
            return "monthly"
    return None
