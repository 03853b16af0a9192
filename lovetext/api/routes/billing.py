"""
Billing commands. Each one forwards to Stripe; the resulting webhook is what
changes the customer's plan locally.
"""
import logging
from contextlib import contextmanager

import stripe
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from lovetext.core.context import AppContext
from lovetext.core.entitlement import entitlement_summary, is_entitled
from lovetext.core.plan_limits import PAID_PLANS, Plan, parse_plan, plan_for_product
from lovetext.dependencies.auth import get_context, get_current_customer, get_db
from lovetext.models.customer import Customer
from lovetext.schemas.billing import (
    CancelRequest,
    ChangePlanRequest,
    CheckoutRequest,
    CheckoutResponse,
    PortalResponse,
)
from lovetext.services.billing_gateway import BillingNotConfigured
from lovetext.utils.clock import utcnow

logger = logging.getLogger(__name__)

router = APIRouter()


@contextmanager
def stripe_errors(action: str, customer_id: int):
    try:
        yield
    except BillingNotConfigured as e:
        logger.error("[Stripe] %s unavailable: %s", action, e)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Billing is not configured"
        )
    except stripe.StripeError as e:
        logger.error("[Stripe] %s failed for customer %s: %s", action, customer_id, e)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Billing provider error, please try again"
        )


def _require_subscription(customer: Customer) -> str:
    if not customer.external_subscription_id or not customer.has_subscription:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No active subscription"
        )
    return customer.external_subscription_id


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(
    payload: CheckoutRequest,
    customer: Customer = Depends(get_current_customer),
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    """Start a Stripe Checkout for the trial or a paid plan; returns the hosted checkout URL."""
    plan = plan_for_product(payload.product)
    now = utcnow()

    if plan == Plan.TRIAL and customer.trial_used:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Free trial already used. Choose a paid plan to continue."
        )
    if parse_plan(customer.current_plan) in PAID_PLANS and is_entitled(customer, now):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You already have an active subscription. Use change-plan instead."
        )

    with stripe_errors("checkout", customer.id):
        external_customer_id = context.billing.ensure_customer(customer)
        if customer.external_customer_id != external_customer_id:
            customer.external_customer_id = external_customer_id
            db.commit()
        return context.billing.create_checkout_session(customer, external_customer_id, payload.product)


@router.post("/portal", response_model=PortalResponse)
def create_portal(
    customer: Customer = Depends(get_current_customer),
    context: AppContext = Depends(get_context),
):
    if not customer.external_customer_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No billing account yet"
        )
    with stripe_errors("portal", customer.id):
        return {"portal_url": context.billing.create_portal_session(customer.external_customer_id)}


@router.post("/change-plan")
def change_plan(
    payload: ChangePlanRequest,
    customer: Customer = Depends(get_current_customer),
    context: AppContext = Depends(get_context),
):
    subscription_id = _require_subscription(customer)
    current = parse_plan(customer.current_plan)
    if current not in PAID_PLANS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Plan changes need a paid subscription; start one through checkout"
        )
    target = Plan(payload.plan)
    if target == current:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Already on the {current.value} plan"
        )

    with stripe_errors("change-plan", customer.id):
        context.billing.change_plan(subscription_id, target)
    return {"message": f"Plan change to {target.value} requested", "plan": target.value}


@router.post("/cancel")
def cancel_subscription(
    payload: CancelRequest,
    customer: Customer = Depends(get_current_customer),
    context: AppContext = Depends(get_context),
):
    subscription_id = _require_subscription(customer)
    with stripe_errors("cancel", customer.id):
        context.billing.cancel_subscription(subscription_id, at_period_end=payload.at_period_end)
    return {"message": "Cancellation requested", "at_period_end": payload.at_period_end}


@router.get("/subscription")
def get_subscription(customer: Customer = Depends(get_current_customer)):
    summary = entitlement_summary(customer, utcnow())
    summary["has_subscription"] = bool(customer.has_subscription)
    summary["subscription_id"] = customer.external_subscription_id
    return summary
