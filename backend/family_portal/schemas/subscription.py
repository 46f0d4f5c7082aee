from pydantic import BaseModel, Field
from typing import Literal, Optional
from datetime import datetime

from family_portal.services.pricing import MAX_CHILDREN, MIN_CHILDREN


class CheckoutRequest(BaseModel):
    children_count: int = Field(ge=MIN_CHILDREN, le=MAX_CHILDREN)
    billing_cycle: Literal["monthly", "yearly"] = "monthly"
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class CheckoutCompleteRequest(BaseModel):
    session_id: str


class BillingPortalRequest(BaseModel):
    return_url: Optional[str] = None


class ChangePreviewRequest(BaseModel):
    # Range is checked by the planner so the error carries its own code
    new_children_count: int
    new_billing_cycle: Optional[Literal["monthly", "yearly"]] = None


class ChangeRequest(ChangePreviewRequest):
    children_to_keep: Optional[list[int]] = None


class ChangePreviewResponse(BaseModel):
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
    period_end: Optional[datetime] = None
    scheduled_for: Optional[datetime] = None
    children_to_select_count: Optional[int] = None
    is_downgrade: bool
    is_cycle_change: bool
    cycle_change_overrides_downgrade: bool
    message: str


class ChangeResponse(BaseModel):
    success: bool = True
    kind: str
    new_children: int
    new_billing_cycle: str
    scheduled_for: Optional[datetime] = None
    cycle_change_overrides_downgrade: bool
    message: str
