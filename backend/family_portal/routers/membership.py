"""Membership router: price table, plan tiers, current membership"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from family_portal.core.database import get_db
from family_portal.core.errors import MembershipNotFound
from family_portal.models.plan import Plan
from family_portal.models.profile import Profile
from family_portal.routers.deps import require_login
from family_portal.schemas.membership import (
    MembershipInfo, PendingBillingChangeInfo, PendingDowngradeInfo, PlanInfo, PriceRow,
)
from family_portal.services.commit_service import get_pending_billing_change, get_pending_downgrade
from family_portal.services.family_service import get_active_membership
from family_portal.services.plan_service import list_plans
from family_portal.services.pricing import monthly_equivalent, price_table

router = APIRouter(prefix="/api/membership", tags=["membership"])


@router.get("/pricing", response_model=list[PriceRow])
async def pricing():
    return price_table()


@router.get("/plans", response_model=list[PlanInfo])
async def plans(db: Session = Depends(get_db)):
    return list_plans(db)


@router.get("", response_model=MembershipInfo)
async def current_membership(
    user: Profile = Depends(require_login),
    db: Session = Depends(get_db),
):
    """Current family membership with any pending change"""
    membership = get_active_membership(db, user.family_id)
    if membership is None:
        raise MembershipNotFound()

    plan = db.query(Plan).filter(Plan.id == membership.plan_id).first()
    children = plan.max_children if plan else 1
    pending_downgrade = get_pending_downgrade(db, membership.id)
    pending_billing_change = get_pending_billing_change(db, membership.id)
    return MembershipInfo(
        id=membership.id,
        status=membership.status,
        billing_cycle=membership.billing_cycle,
        cancel_at_period_end=membership.cancel_at_period_end,
        current_period_end=membership.current_period_end,
        plan=PlanInfo.model_validate(plan) if plan else None,
        children_count=children,
        monthly_price=monthly_equivalent(children, membership.billing_cycle),
        pending_downgrade=(
            PendingDowngradeInfo.model_validate(pending_downgrade) if pending_downgrade else None
        ),
        pending_billing_change=(
            PendingBillingChangeInfo.model_validate(pending_billing_change) if pending_billing_change else None
        ),
    )
