from pydantic import BaseModel
from typing import Optional
from datetime import datetime


class PriceRow(BaseModel):
    children: int
    monthly_price: int
    yearly_price: int
    annual_savings: int


class PlanInfo(BaseModel):
    id: int
    name: str
    max_children: int
    price_monthly: int
    price_yearly: int

    model_config = {"from_attributes": True}


class PendingDowngradeInfo(BaseModel):
    id: int
    new_children_count: int
    children_to_keep: list[int]
    scheduled_for: datetime

    model_config = {"from_attributes": True}


class PendingBillingChangeInfo(BaseModel):
    id: int
    new_billing_cycle: str
    new_children_count: int
    scheduled_for: datetime

    model_config = {"from_attributes": True}


class MembershipInfo(BaseModel):
    id: int
    status: str
    billing_cycle: str
    cancel_at_period_end: bool
    current_period_end: Optional[datetime] = None
    plan: Optional[PlanInfo] = None
    children_count: int
    monthly_price: int
    pending_downgrade: Optional[PendingDowngradeInfo] = None
    pending_billing_change: Optional[PendingBillingChangeInfo] = None
