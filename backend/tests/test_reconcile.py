from datetime import timedelta

import pytest

from family_portal.models import (
    Family, FamilyCode, Membership, Notification, PendingBillingChange, PendingDowngrade, Plan,
    ProcessedStripeEvent, Profile,
)
from family_portal.services.commit_service import SubscriptionCommitter
from family_portal.services.reconcile_service import WebhookReconciler
from conftest import PERIOD_END, make_event, make_subscription

NEXT_PERIOD_END = PERIOD_END + timedelta(days=30)


@pytest.fixture
def reconciler(db, gateway, notifier):
    return WebhookReconciler(db, gateway, notifier)


@pytest.fixture
def committer(db, gateway, notifier):
    return SubscriptionCommitter(db, gateway, notifier)


def _types(db):
    return [n.type for n in db.query(Notification).order_by(Notification.id).all()]


def _count(db, type_):
    return db.query(Notification).filter(Notification.type == type_).count()


def _plan_children(db, membership):
    db.refresh(membership)
    return db.query(Plan).filter(Plan.id == membership.plan_id).one().max_children


def _code_status(db, child):
    return db.query(FamilyCode).filter(FamilyCode.id == child.family_code_id).one().status


@pytest.fixture
def scheduled_downgrade(db, committer, make_family):
    """2 seats / monthly with a downgrade to 1 (keeping the first child) due at PERIOD_END"""
    family = make_family(children=2)
    kids = family["children"]
    committer.apply_change(family["membership"], family["parent"], 1, children_to_keep=[kids[0].id])
    return family


# =========================================================
# Pending downgrade
# =========================================================

def test_rolled_period_applies_downgrade(db, gateway, reconciler, scheduled_downgrade):
    membership = scheduled_downgrade["membership"]
    kept, removed = scheduled_downgrade["children"]
    rolled = make_subscription(
        subscription_id=membership.stripe_subscription_id,
        children=1,
        period_end=NEXT_PERIOD_END,
        customer=membership.stripe_customer_id,
        metadata={"childrenCount": "1", "pendingDowngrade": "true", "childrenToKeep": f"[{kept.id}]"},
    )
    gateway.calls.clear()

    assert reconciler.handle_event(make_event("customer.subscription.updated", rolled)) == "processed"

    assert _code_status(db, kept) == "active"
    assert _code_status(db, removed) == "revoked"
    assert db.query(PendingDowngrade).one().status == "applied"
    assert _plan_children(db, membership) == 1
    assert membership.current_period_end == NEXT_PERIOD_END
    assert _count(db, "subscription_downgrade_applied") == 1
    # the removed child is kept, only the code is revoked
    assert db.query(FamilyCode).filter(FamilyCode.status == "revoked").count() == 1

    [(_, _, kwargs)] = gateway.calls_to("update_subscription")
    assert kwargs["metadata"] == {"childrenCount": "1", "pendingDowngrade": "false", "childrenToKeep": ""}


def test_redelivery_applies_downgrade_once(db, reconciler, scheduled_downgrade):
    membership = scheduled_downgrade["membership"]
    rolled = make_subscription(
        subscription_id=membership.stripe_subscription_id,
        children=1,
        period_end=NEXT_PERIOD_END,
        customer=membership.stripe_customer_id,
    )

    assert reconciler.handle_event(make_event("customer.subscription.updated", rolled, "evt_a")) == "processed"
    assert reconciler.handle_event(make_event("customer.subscription.updated", rolled, "evt_a")) == "duplicate"
    # same change under a new event id is absorbed by the state checks
    assert reconciler.handle_event(make_event("customer.subscription.updated", rolled, "evt_b")) == "processed"

    assert db.query(PendingDowngrade).filter(PendingDowngrade.status == "applied").count() == 1
    assert _count(db, "subscription_downgrade_applied") == 1
    assert db.query(ProcessedStripeEvent).count() == 2


def test_echo_of_downgrade_commit_does_not_apply_early(db, gateway, reconciler, scheduled_downgrade):
    membership = scheduled_downgrade["membership"]
    kept, removed = scheduled_downgrade["children"]
    # Stripe already carries the lowered seat count but the period has not rolled
    echo = gateway.subscriptions[membership.stripe_subscription_id]
    assert echo["metadata"]["childrenCount"] == "1"

    reconciler.handle_event(make_event("customer.subscription.updated", echo))

    assert db.query(PendingDowngrade).one().status == "pending"
    assert _plan_children(db, membership) == 2
    assert _code_status(db, removed) == "active"
    assert _count(db, "subscription_downgrade_applied") == 0


def test_metadata_clear_failure_does_not_undo_downgrade(db, gateway, reconciler, scheduled_downgrade):
    membership = scheduled_downgrade["membership"]
    gateway.failing.add("update_subscription")
    rolled = make_subscription(
        subscription_id=membership.stripe_subscription_id,
        children=1,
        period_end=NEXT_PERIOD_END,
        customer=membership.stripe_customer_id,
    )

    assert reconciler.handle_event(make_event("customer.subscription.updated", rolled)) == "processed"
    assert db.query(PendingDowngrade).one().status == "applied"
    assert _count(db, "subscription_downgrade_applied") == 1


def test_notification_failure_does_not_fail_the_event(db, notifier, reconciler, scheduled_downgrade, monkeypatch):
    from sqlalchemy.exc import OperationalError

    membership = scheduled_downgrade["membership"]
    original_add = db.add

    def failing_add(obj):
        if isinstance(obj, Notification):
            raise OperationalError("INSERT INTO notifications", {}, Exception("disk full"))
        return original_add(obj)

    monkeypatch.setattr(db, "add", failing_add)
    rolled = make_subscription(
        subscription_id=membership.stripe_subscription_id,
        children=1,
        period_end=NEXT_PERIOD_END,
        customer=membership.stripe_customer_id,
    )

    assert reconciler.handle_event(make_event("customer.subscription.updated", rolled)) == "processed"
    assert db.query(PendingDowngrade).one().status == "applied"
    assert _plan_children(db, membership) == 1


# =========================================================
# Seat sync, billing cycle, status
# =========================================================

def test_seat_count_change_from_stripe_syncs_plan(db, reconciler, make_family):
    membership = make_family(children=2)["membership"]
    sub = make_subscription(
        subscription_id=membership.stripe_subscription_id,
        children=4,
        customer=membership.stripe_customer_id,
        metadata={},
    )

    reconciler.handle_event(make_event("customer.subscription.updated", sub))

    assert _plan_children(db, membership) == 4


def test_upgrade_webhook_after_optimistic_write_is_noop(db, gateway, committer, reconciler, make_family):
    family = make_family(children=1)
    membership = family["membership"]
    committer.apply_change(membership, family["parent"], 3)
    plan_id = membership.plan_id
    plans_before = db.query(Plan).count()

    sub = make_subscription(
        subscription_id=membership.stripe_subscription_id,
        children=3,
        customer=membership.stripe_customer_id,
    )
    reconciler.handle_event(make_event("customer.subscription.updated", sub))

    db.refresh(membership)
    assert membership.plan_id == plan_id
    assert db.query(Plan).count() == plans_before


def test_cycle_change_applied_when_subscription_moves(db, committer, reconciler, make_family):
    family = make_family(children=2)
    membership = family["membership"]
    committer.apply_change(membership, family["parent"], 3, "yearly")

    # phase 2 has started: yearly prices, next period
    sub = make_subscription(
        subscription_id=membership.stripe_subscription_id,
        children=3,
        billing_cycle="yearly",
        period_end=PERIOD_END + timedelta(days=365),
        customer=membership.stripe_customer_id,
    )
    reconciler.handle_event(make_event("customer.subscription.updated", sub, "evt_phase2"))
    reconciler.handle_event(make_event("customer.subscription.updated", sub, "evt_phase2_again"))

    assert db.query(PendingBillingChange).one().status == "applied"
    db.refresh(membership)
    assert membership.billing_cycle == "yearly"
    assert _plan_children(db, membership) == 3
    assert _count(db, "subscription_cycle_change_applied") == 1


def test_cycle_change_over_pending_downgrade_keeps_paid_seats(db, gateway, committer, reconciler, make_family):
    family = make_family(children=3)
    membership, parent, kids = family["membership"], family["parent"], family["children"]
    committer.apply_change(membership, parent, 1, children_to_keep=[kids[0].id])
    committer.apply_change(membership, parent, 3, "yearly")
    gateway.calls.clear()

    # phase 2 has started: 3 yearly seats
    sub = make_subscription(
        subscription_id=membership.stripe_subscription_id,
        children=3,
        billing_cycle="yearly",
        period_end=PERIOD_END + timedelta(days=365),
        customer=membership.stripe_customer_id,
    )
    reconciler.handle_event(make_event("customer.subscription.updated", sub))

    assert db.query(PendingDowngrade).one().status == "canceled"
    assert db.query(PendingBillingChange).one().status == "applied"
    assert _plan_children(db, membership) == 3
    assert [_code_status(db, kid) for kid in kids] == ["active", "active", "active"]
    assert gateway.calls_to("update_subscription") == []
    assert _count(db, "subscription_downgrade_applied") == 0


def test_cycle_change_not_applied_before_phase_two(db, gateway, committer, reconciler, make_family):
    family = make_family(children=2)
    membership = family["membership"]
    committer.apply_change(membership, family["parent"], 2, "yearly")

    reconciler.handle_event(make_event(
        "customer.subscription.updated", gateway.subscriptions[membership.stripe_subscription_id],
    ))

    assert db.query(PendingBillingChange).one().status == "pending"
    db.refresh(membership)
    assert membership.billing_cycle == "monthly"


def test_status_tracks_stripe(db, reconciler, make_family):
    membership = make_family(children=1)["membership"]
    sub = make_subscription(
        subscription_id=membership.stripe_subscription_id, children=1, status="past_due",
        customer=membership.stripe_customer_id,
    )
    reconciler.handle_event(make_event("customer.subscription.updated", sub, "evt_1"))
    db.refresh(membership)
    assert membership.status == "past_due"

    sub["status"] = "active"
    reconciler.handle_event(make_event("customer.subscription.updated", sub, "evt_2"))
    db.refresh(membership)
    assert membership.status == "active"


def test_terminal_status_is_never_overwritten(db, reconciler, make_family):
    membership = make_family(children=1, status="canceled")["membership"]
    sub = make_subscription(
        subscription_id=membership.stripe_subscription_id, children=1, customer=membership.stripe_customer_id,
    )
    reconciler.handle_event(make_event("customer.subscription.updated", sub))
    db.refresh(membership)
    assert membership.status == "canceled"


def test_cancel_at_period_end_flips_notify_once(db, reconciler, make_family):
    membership = make_family(children=1)["membership"]
    sub = make_subscription(
        subscription_id=membership.stripe_subscription_id, children=1, customer=membership.stripe_customer_id,
        cancel_at_period_end=True,
    )

    reconciler.handle_event(make_event("customer.subscription.updated", sub, "evt_1"))
    reconciler.handle_event(make_event("customer.subscription.updated", sub, "evt_2"))
    sub["cancel_at_period_end"] = False
    reconciler.handle_event(make_event("customer.subscription.updated", sub, "evt_3"))

    assert _types(db) == ["subscription_cancel_scheduled", "subscription_reactivated"]
    db.refresh(membership)
    assert membership.cancel_at_period_end is False


def test_unknown_subscription_is_ignored(db, reconciler):
    sub = make_subscription(subscription_id="sub_unknown")
    assert reconciler.handle_event(make_event("customer.subscription.updated", sub)) == "processed"
    assert db.query(Membership).count() == 0


def test_unhandled_event_type_is_not_recorded(db, reconciler):
    assert reconciler.handle_event(make_event("customer.created", {"id": "cus_1"})) == "ignored"
    assert db.query(ProcessedStripeEvent).count() == 0


# =========================================================
# Deletion and invoices
# =========================================================

def test_subscription_deleted_cancels_once(db, reconciler, scheduled_downgrade):
    membership = scheduled_downgrade["membership"]
    sub = make_subscription(
        subscription_id=membership.stripe_subscription_id, status="canceled", customer=membership.stripe_customer_id,
    )

    reconciler.handle_event(make_event("customer.subscription.deleted", sub, "evt_del_1"))
    reconciler.handle_event(make_event("customer.subscription.deleted", sub, "evt_del_2"))

    db.refresh(membership)
    assert membership.status == "canceled"
    assert db.query(PendingDowngrade).one().status == "canceled"
    assert _count(db, "subscription_canceled") == 1


def test_payment_failed_marks_past_due(db, reconciler, make_family):
    membership = make_family(children=1)["membership"]
    invoice = {"id": "in_1", "subscription": membership.stripe_subscription_id}

    reconciler.handle_event(make_event("invoice.payment_failed", invoice))

    db.refresh(membership)
    assert membership.status == "past_due"
    assert _types(db) == ["payment_failed"]


def test_payment_succeeded_recovers_past_due(db, reconciler, make_family):
    membership = make_family(children=1, status="past_due")["membership"]
    # newer API versions nest the subscription under parent.subscription_details
    invoice = {
        "id": "in_2",
        "subscription": None,
        "parent": {"subscription_details": {"subscription": membership.stripe_subscription_id}},
    }

    reconciler.handle_event(make_event("invoice.payment_succeeded", invoice))

    db.refresh(membership)
    assert membership.status == "active"
    assert _types(db) == ["subscription_renewed"]


def test_invoice_without_subscription_is_ignored(db, reconciler):
    assert reconciler.handle_event(make_event("invoice.payment_failed", {"id": "in_3"})) == "processed"
    assert db.query(Notification).count() == 0


# =========================================================
# Checkout
# =========================================================

def test_checkout_completed_provisions_family(db, gateway, reconciler, make_profile):
    profile = make_profile()
    gateway.subscriptions["sub_new"] = make_subscription(
        subscription_id="sub_new", children=3, billing_cycle="yearly", customer="cus_new",
    )
    session = {
        "id": "cs_1",
        "subscription": "sub_new",
        "metadata": {"userId": str(profile.id), "childrenCount": "3"},
    }

    reconciler.handle_event(make_event("checkout.session.completed", session, "evt_c1"))
    reconciler.handle_event(make_event("checkout.session.completed", session, "evt_c2"))

    db.refresh(profile)
    family = db.query(Family).one()
    assert profile.family_id == family.id
    assert family.name == "Familia Pérez"
    membership = db.query(Membership).one()
    assert membership.billing_cycle == "yearly"
    assert membership.stripe_customer_id == "cus_new"
    assert membership.current_period_end == PERIOD_END
    assert _plan_children(db, membership) == 3
    [code] = db.query(FamilyCode).all()
    assert code.code_type == "parent" and code.profile_id == profile.id
    assert _types(db) == ["subscription_created"]


def test_checkout_without_user_is_skipped(db, reconciler):
    session = {"id": "cs_2", "subscription": "sub_x", "metadata": {}}
    assert reconciler.handle_event(make_event("checkout.session.completed", session)) == "processed"
    assert db.query(Profile).count() == 0
    assert db.query(Family).count() == 0


def test_checkout_for_unknown_profile_is_skipped(db, gateway, reconciler):
    gateway.subscriptions["sub_ghost"] = make_subscription(subscription_id="sub_ghost", customer="cus_g")
    session = {"id": "cs_3", "subscription": "sub_ghost", "metadata": {"userId": "9999", "childrenCount": "1"}}

    assert reconciler.handle_event(make_event("checkout.session.completed", session)) == "processed"
    assert db.query(Family).count() == 0
    assert db.query(Notification).count() == 0
