from enum import Enum
from typing import Dict, Mapping, Optional


class Plan(str, Enum):
    """Subscription plans a customer can be on."""
    NONE = "none"
    TRIAL = "trial"
    BASIC = "basic"
    PLUS = "plus"


PAID_PLANS = (Plan.BASIC, Plan.PLUS)

# -1 means unlimited
UNLIMITED = -1

RECIPIENT_LIMITS: Dict[Plan, int] = {
    Plan.NONE: 0,
    Plan.TRIAL: UNLIMITED,
    Plan.BASIC: 3,
    Plan.PLUS: UNLIMITED,
}

# Checkout product ids as sold on the pricing page
PRODUCT_PLANS: Dict[str, Plan] = {
    "free-trial": Plan.TRIAL,
    "love-basic": Plan.BASIC,
    "love-plus": Plan.PLUS,
}

PLAN_PRODUCTS: Dict[Plan, str] = {plan: product for product, plan in PRODUCT_PLANS.items()}


def parse_plan(value: Optional[str]) -> Plan:
    """Parse a stored/untrusted plan value. Anything unknown is Plan.NONE."""
    if isinstance(value, Plan):
        return value
    try:
        return Plan((value or "").strip().lower())
    except ValueError:
        return Plan.NONE


def plan_for_product(product_id: Optional[str]) -> Plan:
    return PRODUCT_PLANS.get((product_id or "").strip(), Plan.NONE)


def plan_for_price(price_id: Optional[str], price_ids: Mapping[str, str]) -> Plan:
    """
    Map a Stripe price id to a plan using the configured product -> price table.
    Unknown or missing price ids resolve to Plan.NONE.
    """
    if not price_id:
        return Plan.NONE
    for product_id, configured_price in price_ids.items():
        if configured_price and configured_price == price_id:
            return plan_for_product(product_id)
    return Plan.NONE


def recipient_limit(plan) -> int:
    """Number of recipients a plan allows; UNLIMITED (-1) for no cap."""
    return RECIPIENT_LIMITS.get(parse_plan(plan), 0)


def is_within_limit(count: int, plan) -> bool:
    """True when `count` recipients fit in the plan's limit."""
    limit = recipient_limit(plan)
    return limit == UNLIMITED or count <= limit
