"""Family provisioning after a completed Checkout

Shared by the `checkout.session.completed` webhook and the
checkout-complete endpoint; whichever arrives first provisions, the other
finds the family already in place.
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from family_portal.core.errors import GenerationExhausted
from family_portal.core.logging import get_logger
from family_portal.models.family import Family
from family_portal.models.family_code import FamilyCode
from family_portal.models.membership import Membership
from family_portal.models.profile import Profile
from family_portal.services.change_planner import billing_cycle_from_subscription
from family_portal.services.family_codes import CodeType, generate_unique_codes
from family_portal.services.plan_service import get_or_create_plan
from family_portal.services.pricing import clamp_children
from family_portal.services.stripe_service import PriceCatalog, object_id, subscription_period_end

logger = get_logger(__name__)


@dataclass
class ProvisionResult:
    family_id: int
    created: bool


CODE_DRAW_ROUNDS = 3


def draw_new_codes(db: Session, code_type: CodeType, count: int) -> list[str]:
    """`count` codes not stored yet; only the drawn candidates are looked up"""
    taken: set[str] = set()
    for _ in range(CODE_DRAW_ROUNDS):
        codes = generate_unique_codes(code_type, count, taken)
        clashes = {
            row.code
            for row in db.query(FamilyCode.code).filter(FamilyCode.code.in_(codes)).all()
        }
        if not clashes:
            return codes
        taken |= clashes
    raise GenerationExhausted()


def provision_family(
    db: Session,
    catalog: PriceCatalog,
    profile_id: int,
    subscription,
    children_count: int,
) -> Optional[ProvisionResult]:
    """Create Family + Membership + parent code for a new subscriber (idempotent).

    Returns None when the profile does not exist; redelivering the event
    would not make it appear.
    """
    profile = db.query(Profile).filter(Profile.id == profile_id).first()
    if not profile:
        logger.warning(f"Provisioning skipped, profile not found: {profile_id}")
        return None

    if profile.family_id:
        return ProvisionResult(family_id=profile.family_id, created=False)

    subscription_id = subscription.get("id")
    existing: Optional[Membership] = db.query(Membership).filter(
        Membership.stripe_subscription_id == subscription_id,
    ).first()
    if existing:
        profile.family_id = existing.family_id
        db.commit()
        return ProvisionResult(family_id=existing.family_id, created=False)

    family = Family(name=f"Familia {profile.last_name}")
    db.add(family)
    db.flush()
    profile.family_id = family.id

    plan = get_or_create_plan(db, clamp_children(children_count))
    db.add(Membership(
        family_id=family.id,
        plan_id=plan.id,
        status="active",
        billing_cycle=billing_cycle_from_subscription(subscription, catalog) or "monthly",
        stripe_subscription_id=subscription_id,
        stripe_customer_id=object_id(subscription.get("customer")),
        current_period_end=subscription_period_end(subscription),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
    ))

    [parent_code] = draw_new_codes(db, "parent", 1)
    db.add(FamilyCode(
        code=parent_code,
        code_type="parent",
        family_id=family.id,
        profile_id=profile.id,
        status="active",
    ))
    db.commit()

    logger.info(
        f"Family provisioned: family_id={family.id}, profile_id={profile.id}, "
        f"subscription={subscription_id}, children={plan.max_children}"
    )
    return ProvisionResult(family_id=family.id, created=True)
