"""
Outbound Stripe commands: checkout, billing portal, plan change, cancellation.

Nothing here writes local subscription state. Stripe answers every command
with a webhook and the reconciler applies it, so local state has a single
writer.
"""
import logging
from typing import Mapping, Optional

import stripe

from lovetext.core.plan_limits import PLAN_PRODUCTS, Plan, plan_for_product

logger = logging.getLogger(__name__)


class BillingNotConfigured(Exception):
    """Raised when a command needs Stripe settings that are missing."""


class StripeBillingGateway:
    def __init__(self, api_key: str, price_ids: Mapping[str, str], frontend_url: str, trial_days: int = 3):
        self._api_key = (api_key or "").strip()
        self._price_ids = dict(price_ids)
        self._frontend_url = frontend_url.rstrip("/")
        self._trial_days = trial_days

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def _require(self) -> None:
        if not self.configured:
            raise BillingNotConfigured("STRIPE_SECRET_KEY is not set")

    def price_for_product(self, product_id: str) -> str:
        price_id = self._price_ids.get(product_id)
        if not price_id:
            raise BillingNotConfigured(f"No Stripe price configured for {product_id}")
        return price_id

    def ensure_customer(self, customer) -> str:
        """Return the customer's Stripe id, creating the Stripe customer on first use."""
        self._require()
        if customer.external_customer_id:
            return customer.external_customer_id
        created = stripe.Customer.create(
            api_key=self._api_key,
            email=customer.email,
            name=customer.name or None,
            metadata={"customer_id": str(customer.id)},
        )
        logger.info("[Stripe] Created Stripe customer %s for customer %s", created.id, customer.id)
        return created.id

    def create_checkout_session(self, customer, external_customer_id: str, product_id: str) -> dict:
        self._require()
        plan = plan_for_product(product_id)
        price_id = self.price_for_product(product_id)
        subscription_data = {"metadata": {"customer_id": str(customer.id), "product": product_id}}
        if plan == Plan.TRIAL:
            subscription_data["trial_period_days"] = self._trial_days

        session = stripe.checkout.Session.create(
            api_key=self._api_key,
            customer=external_customer_id,
            mode="subscription",
            line_items=[{"price": price_id, "quantity": 1}],
            client_reference_id=str(customer.id),
            success_url=f"{self._frontend_url}/dashboard?checkout=success&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self._frontend_url}/pricing?checkout=canceled",
            metadata={"customer_id": str(customer.id), "product": product_id},
            subscription_data=subscription_data,
        )
        logger.info("[Stripe] Checkout session %s (%s) for customer %s", session.id, product_id, customer.id)
        return {"checkout_url": session.url, "session_id": session.id}

    def create_portal_session(self, external_customer_id: str) -> str:
        self._require()
        portal = stripe.billing_portal.Session.create(
            api_key=self._api_key,
            customer=external_customer_id,
            return_url=f"{self._frontend_url}/dashboard",
        )
        return portal.url

    def retrieve_subscription_price_id(self, subscription_id: str) -> Optional[str]:
        self._require()
        subscription = stripe.Subscription.retrieve(subscription_id, api_key=self._api_key)
        items = subscription["items"]["data"]
        return items[0]["price"]["id"] if items else None

    def change_plan(self, subscription_id: str, plan: Plan) -> None:
        """Swap the subscription's price; Stripe prorates and emits subscription.updated."""
        self._require()
        price_id = self.price_for_product(PLAN_PRODUCTS[plan])
        subscription = stripe.Subscription.retrieve(subscription_id, api_key=self._api_key)
        item_id = subscription["items"]["data"][0]["id"]
        stripe.Subscription.modify(
            subscription_id,
            api_key=self._api_key,
            items=[{"id": item_id, "price": price_id}],
            proration_behavior="create_prorations",
            cancel_at_period_end=False,
        )
        logger.info("[Stripe] Subscription %s moved to %s", subscription_id, plan.value)

    def cancel_subscription(self, subscription_id: str, at_period_end: bool = True) -> None:
        self._require()
        if at_period_end:
            stripe.Subscription.modify(subscription_id, api_key=self._api_key, cancel_at_period_end=True)
        else:
            stripe.Subscription.cancel(subscription_id, api_key=self._api_key)
        logger.info("[Stripe] Subscription %s cancel requested (at_period_end=%s)", subscription_id, at_period_end)
