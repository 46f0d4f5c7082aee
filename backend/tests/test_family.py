from datetime import date, datetime

import pytest

from family_portal.core.errors import GenerationExhausted, MembershipNotFound, SeatLimitExceeded
from family_portal.models import Child, Family, FamilyCode, Membership, Notification, Plan
from family_portal.services.family_codes import get_code_type
from family_portal.services.family_service import NewChild, list_children, register_children
from family_portal.services.notification_service import (
    NotificationService, count_unread, format_long_date, list_notifications, mark_all_read, mark_read,
)
from family_portal.services.plan_service import get_or_create_plan, list_plans
from family_portal.services import provisioning_service
from family_portal.services.provisioning_service import draw_new_codes, provision_family
from conftest import CATALOG, make_subscription


# =========================================================
# Plans
# =========================================================

def test_get_or_create_plan_is_idempotent(db):
    first = get_or_create_plan(db, 3)
    db.commit()
    second = get_or_create_plan(db, 3)
    assert first.id == second.id
    assert (first.name, first.price_monthly, first.price_yearly) == ("Familiar 3", 37, 333)
    assert db.query(Plan).count() == 1


def test_list_plans_sorted_by_price(db):
    for n in (5, 1, 3):
        get_or_create_plan(db, n)
    db.commit()
    assert [p.max_children for p in list_plans(db)] == [1, 3, 5]


# =========================================================
# Provisioning
# =========================================================

def test_provision_family_is_idempotent_on_profile(db, make_profile):
    profile = make_profile(last_name="Gómez")
    sub = make_subscription(subscription_id="sub_p", children=2, customer="cus_p")

    first = provision_family(db, CATALOG, profile.id, sub, 2)
    second = provision_family(db, CATALOG, profile.id, sub, 2)

    assert first.created and not second.created
    assert first.family_id == second.family_id
    assert db.query(Family).one().name == "Familia Gómez"
    assert db.query(Membership).count() == 1
    code = db.query(FamilyCode).one()
    assert get_code_type(code.code) == "parent"


def test_provision_family_reuses_membership_of_subscription(db, make_profile):
    sub = make_subscription(subscription_id="sub_shared", children=1, customer="cus_s")
    first = provision_family(db, CATALOG, make_profile().id, sub, 1)
    other = make_profile()

    result = provision_family(db, CATALOG, other.id, sub, 1)

    assert not result.created
    assert result.family_id == first.family_id
    db.refresh(other)
    assert other.family_id == first.family_id
    assert db.query(Membership).count() == 1


def test_provision_family_skips_unknown_profile(db):
    sub = make_subscription(subscription_id="sub_ghost", children=1, customer="cus_g")
    assert provision_family(db, CATALOG, 9999, sub, 1) is None
    assert db.query(Membership).count() == 0


def test_draw_new_codes_redraws_stored_candidates(db, make_family, monkeypatch):
    make_family(children=1)
    stored = db.query(FamilyCode).filter(FamilyCode.code_type == "child").one().code
    draws = iter([[stored], ["E-12345678"]])
    monkeypatch.setattr(provisioning_service, "generate_unique_codes", lambda code_type, count, taken: next(draws))

    assert draw_new_codes(db, "child", 1) == ["E-12345678"]


def test_draw_new_codes_gives_up(db, make_family, monkeypatch):
    make_family(children=1)
    stored = db.query(FamilyCode).filter(FamilyCode.code_type == "child").one().code
    monkeypatch.setattr(provisioning_service, "generate_unique_codes", lambda code_type, count, taken: [stored])

    with pytest.raises(GenerationExhausted):
        draw_new_codes(db, "child", 1)


# =========================================================
# Children
# =========================================================

def test_register_children_issues_codes(db, notifier, make_family):
    family = make_family(children=1)
    parent = family["parent"]
    # free one seat: plan is 1 child, revoke the existing child's code
    db.query(FamilyCode).filter(FamilyCode.code_type == "child").update({FamilyCode.status: "revoked"})
    db.commit()

    created = register_children(db, notifier, parent, [
        NewChild(first_name="Ana", last_name="Pérez", birth_date=date(2015, 5, 1), city="Lima", country="PE"),
    ])

    assert len(created) == 1
    assert get_code_type(created[0]["code"]) == "child"
    child = db.query(Child).filter(Child.first_name == "Ana").one()
    assert child.birth_date == date(2015, 5, 1)
    assert [n.type for n in db.query(Notification).all()] == ["child_registered"]

    rows = list_children(db, family["family"].id)
    assert [(r["first_name"], r["code_status"]) for r in rows] == [("Hijo1", "revoked"), ("Ana", "active")]


def test_register_children_respects_seats(db, notifier, make_family):
    family = make_family(children=2)
    with pytest.raises(SeatLimitExceeded):
        register_children(db, notifier, family["parent"], [NewChild(first_name="Extra", last_name="Pérez")])
    assert db.query(Child).count() == 2


def test_register_children_without_membership(db, notifier, make_profile):
    with pytest.raises(MembershipNotFound):
        register_children(db, notifier, make_profile(), [NewChild(first_name="A", last_name="B")])


# =========================================================
# Notifications
# =========================================================

def test_notification_inbox(db, make_profile):
    profile = make_profile()
    notifier = NotificationService(db)
    first = notifier.notify(profile.id, "subscription_updated", "Plan actualizado", "...")
    notifier.notify(profile.id, "subscription_renewed", "Suscripción renovada", "...")

    assert count_unread(db, profile.id) == 2
    assert mark_read(db, profile.id, first.id, datetime(2026, 10, 17))
    assert count_unread(db, profile.id) == 1
    assert not mark_read(db, profile.id + 1000, first.id, datetime(2026, 10, 17))
    assert mark_all_read(db, profile.id, datetime(2026, 10, 17)) == 1
    assert count_unread(db, profile.id) == 0
    assert len(list_notifications(db, profile.id)) == 2


def test_notify_without_recipient_is_skipped(db):
    assert NotificationService(db).notify(None, "payment_failed", "t", "m") is None
    assert db.query(Notification).count() == 0


def test_format_long_date_in_spanish():
    assert format_long_date(datetime(2026, 11, 1)) == "1 de noviembre de 2026"
    assert format_long_date(datetime(2026, 3, 9), with_year=False) == "9 de marzo"
