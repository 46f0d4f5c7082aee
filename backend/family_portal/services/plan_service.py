"""Seat tiers: plans are created lazily, one row per max_children"""
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from family_portal.models.plan import Plan
from family_portal.services.pricing import calculate_monthly_price, calculate_yearly_price, clamp_children
from family_portal.core.logging import get_logger

logger = get_logger(__name__)


def plan_name(children: int) -> str:
    return f"Familiar {children}"


def get_plan_by_children(db: Session, children: int) -> Plan | None:
    return db.query(Plan).filter(Plan.max_children == children).first()


def get_or_create_plan(db: Session, children: int) -> Plan:
    """Look up the tier for `children` seats, creating it when missing.

    The insert runs in a savepoint; losing a race against another request
    (UNIQUE max_children) re-reads the winner's row instead of failing.
    Does not commit the outer transaction.
    """
    children = clamp_children(children)
    plan = get_plan_by_children(db, children)
    if plan:
        return plan

    try:
        with db.begin_nested():
            plan = Plan(
                name=plan_name(children),
                max_children=children,
                price_monthly=calculate_monthly_price(children),
                price_yearly=calculate_yearly_price(children),
            )
            db.add(plan)
        logger.info(f"Plan created: {plan.name} (max_children={children})")
        return plan
    except IntegrityError:
        plan = get_plan_by_children(db, children)
        if plan is None:
            raise
        logger.info(f"Plan created concurrently, reusing id={plan.id} (max_children={children})")
        return plan


def list_plans(db: Session) -> list[Plan]:
    return db.query(Plan).order_by(Plan.price_monthly.asc()).all()
