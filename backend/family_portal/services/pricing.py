"""Family plan pricing

One family plan priced by child seats:
- base: $17/month, includes the parent and one child
- each additional child: +$10/month
- yearly billing: 25% off twelve monthly payments
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Literal

BillingCycle = Literal["monthly", "yearly"]
BILLING_CYCLES = ("monthly", "yearly")

BASE_PRICE = 17
PER_CHILD_PRICE = 10
MIN_CHILDREN = 1
MAX_CHILDREN = 10
ANNUAL_DISCOUNT = Decimal("0.25")


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def clamp_children(children: int) -> int:
    return max(MIN_CHILDREN, min(children, MAX_CHILDREN))


def calculate_monthly_price(children: int) -> int:
    """1 child = 17, 2 = 27, 3 = 37, ... Out-of-range counts are clamped."""
    return BASE_PRICE + (clamp_children(children) - 1) * PER_CHILD_PRICE


def calculate_yearly_price(children: int) -> int:
    monthly = calculate_monthly_price(children)
    return _round_half_up(Decimal(monthly) * 12 * (1 - ANNUAL_DISCOUNT))


def calculate_annual_savings(children: int) -> int:
    return calculate_monthly_price(children) * 12 - calculate_yearly_price(children)


def get_price(children: int, billing_cycle: BillingCycle) -> int:
    if billing_cycle == "monthly":
        return calculate_monthly_price(children)
    return calculate_yearly_price(children)


def monthly_equivalent(children: int, billing_cycle: BillingCycle) -> int:
    """Per-month figure shown to the user for either cycle"""
    if billing_cycle == "monthly":
        return calculate_monthly_price(children)
    return _round_half_up(Decimal(calculate_yearly_price(children)) / 12)


def price_table() -> list[dict]:
    return [
        {
            "children": n,
            "monthly_price": calculate_monthly_price(n),
            "yearly_price": calculate_yearly_price(n),
            "annual_savings": calculate_annual_savings(n),
        }
        for n in range(MIN_CHILDREN, MAX_CHILDREN + 1)
    ]
