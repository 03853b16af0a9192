"""
Entitlement rules.

Pure queries over customer state; every write path (checkout, plan change,
cancellation, dispatch) asks these functions instead of re-deriving the rules.
"""
from datetime import datetime
from typing import Any, Dict

from lovetext.core.plan_limits import UNLIMITED, parse_plan, recipient_limit


def trial_is_active(customer, now: datetime) -> bool:
    return bool(customer.trial_active) and customer.trial_end is not None and now < customer.trial_end


def is_entitled(customer, now: datetime) -> bool:
    """
    Whether the customer may receive deliveries at `now`.

    A set subscription_end always wins over has_subscription: once that
    instant has passed the customer is no longer entitled, even if the
    cancellation event that clears has_subscription never arrived.
    """
    if customer is None:
        return False
    if trial_is_active(customer, now):
        return True
    if customer.subscription_end is not None:
        return now < customer.subscription_end
    return bool(customer.has_subscription)


def cancellation_pending(customer, now: datetime) -> bool:
    return customer.subscription_end is not None and now < customer.subscription_end


def entitlement_summary(customer, now: datetime) -> Dict[str, Any]:
    plan = parse_plan(customer.current_plan)
    limit = recipient_limit(plan)
    return {
        "plan": plan.value,
        "entitled": is_entitled(customer, now),
        "recipient_limit": None if limit == UNLIMITED else limit,
        "trial_active": trial_is_active(customer, now),
        "trial_end": customer.trial_end.isoformat() if customer.trial_end else None,
        "trial_used": bool(customer.trial_used),
        "cancel_pending": cancellation_pending(customer, now),
        "subscription_end": customer.subscription_end.isoformat() if customer.subscription_end else None,
    }
