"""
Billing event reconciliation.

Applies Stripe subscription lifecycle events to the local customer record:

    none -> trialing -> active -> canceling (pending) -> none
    active -> active (plan change)

Every handler runs inside a single transaction with the customer row locked,
and decides what to do from the customer's current state, so a redelivered
event is a no-op instead of a second transition.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Mapping, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session, sessionmaker

from lovetext.core.entitlement import is_entitled
from lovetext.core.plan_limits import PAID_PLANS, Plan, parse_plan, plan_for_price, plan_for_product
from lovetext.models.customer import Customer
from lovetext.utils.clock import from_unix, utcnow
from lovetext.utils.plan_enforcement import delete_all_recipients, enforce_recipient_limit

logger = logging.getLogger(__name__)


class ReconcileStatus(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"  # state already reflects the event
    IGNORED = "ignored"  # nothing to do (unknown customer, stale subscription, unhandled type)
    REJECTED = "rejected"  # event refused by a business rule (e.g. second trial)


@dataclass(frozen=True)
class ReconcileResult:
    status: ReconcileStatus
    customer_id: Optional[int] = None
    detail: str = ""


def _price_id(subscription: dict) -> Optional[str]:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    price = items[0].get("price") or {}
    return price.get("id") if isinstance(price, dict) else price


def _period_end(subscription: dict) -> Optional[datetime]:
    """End of the paid period; newer API versions carry it on the subscription item."""
    value = subscription.get("current_period_end")
    if value is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            value = items[0].get("current_period_end")
    if value is None:
        value = subscription.get("cancel_at")
    return from_unix(value)


def _as_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class BillingReconciler:
    def __init__(
        self,
        session_factory: sessionmaker,
        price_ids: Mapping[str, str],
        *,
        trial_days: int = 3,
        subscription_price_lookup: Optional[Callable[[str], Optional[str]]] = None,
    ):
        self._session_factory = session_factory
        self._price_ids = dict(price_ids)
        self._trial_days = trial_days
        self._subscription_price_lookup = subscription_price_lookup
        self._handlers = {
            "checkout.session.completed": self._checkout_completed,
            "customer.subscription.created": self._subscription_created,
            "customer.subscription.updated": self._subscription_updated,
            "customer.subscription.deleted": self._subscription_deleted,
        }

    def plan_for_price(self, price_id: Optional[str]) -> Plan:
        plan = plan_for_price(price_id, self._price_ids)
        if plan == Plan.NONE and price_id:
            logger.warning("[Reconciler] Unmapped Stripe price id %s; treating as no plan", price_id)
        return plan

    def handle_event(self, event: dict, now: Optional[datetime] = None) -> ReconcileResult:
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}
        handler = self._handlers.get(event_type)
        if handler is None:
            return ReconcileResult(ReconcileStatus.IGNORED, detail=f"unhandled event type {event_type}")

        now = now or utcnow()
        with self._session_factory.begin() as db:
            result = handler(db, obj, now)
        logger.info(
            "[Reconciler] %s (%s) -> %s customer=%s %s",
            event_type, event.get("id"), result.status.value, result.customer_id, result.detail,
        )
        return result

    # Lookups

    def _locked(self, db: Session, *criteria) -> Optional[Customer]:
        return db.query(Customer).filter(*criteria).with_for_update().first()

    def _find_customer(
        self,
        db: Session,
        *,
        customer_id=None,
        subscription_id: Optional[str] = None,
        external_customer_id: Optional[str] = None,
    ) -> Optional[Customer]:
        """
        Resolve the local customer (in priority order):
        1. our own id from checkout metadata
        2. the Stripe subscription id we have on file
        3. the Stripe customer id we have on file
        """
        local_id = _as_int(customer_id)
        if local_id is not None:
            customer = self._locked(db, Customer.id == local_id)
            if customer:
                return customer
        if subscription_id:
            customer = self._locked(db, Customer.external_subscription_id == subscription_id)
            if customer:
                return customer
        if external_customer_id:
            return self._locked(db, Customer.external_customer_id == external_customer_id)
        return None

    # Event handlers

    def _checkout_completed(self, db: Session, session_obj: dict, now: datetime) -> ReconcileResult:
        if session_obj.get("mode") != "subscription":
            return ReconcileResult(ReconcileStatus.IGNORED, detail="not a subscription checkout")

        metadata = session_obj.get("metadata") or {}
        subscription_id = session_obj.get("subscription")
        external_customer_id = session_obj.get("customer")
        customer = self._find_customer(
            db,
            customer_id=metadata.get("customer_id") or session_obj.get("client_reference_id"),
            external_customer_id=external_customer_id,
        )
        if customer is None:
            return ReconcileResult(ReconcileStatus.IGNORED, detail="customer not found")

        plan = plan_for_product(metadata.get("product"))
        if plan == Plan.NONE and subscription_id and self._subscription_price_lookup:
            plan = self.plan_for_price(self._subscription_price_lookup(subscription_id))

        if plan == Plan.TRIAL:
            return self._start_trial(db, customer, subscription_id, external_customer_id, now)
        return self._activate(db, customer, plan, subscription_id, external_customer_id)

    def _subscription_created(self, db: Session, subscription: dict, now: datetime) -> ReconcileResult:
        customer = self._find_customer(
            db,
            subscription_id=subscription.get("id"),
            external_customer_id=subscription.get("customer"),
            customer_id=(subscription.get("metadata") or {}).get("customer_id"),
        )
        if customer is None:
            return ReconcileResult(ReconcileStatus.IGNORED, detail="customer not found")
        if subscription.get("status") in ("canceled", "incomplete_expired"):
            return ReconcileResult(ReconcileStatus.IGNORED, customer.id, "subscription already ended")

        plan = self.plan_for_price(_price_id(subscription))
        if plan == Plan.TRIAL:
            return self._start_trial(db, customer, subscription.get("id"), subscription.get("customer"), now)
        return self._activate(db, customer, plan, subscription.get("id"), subscription.get("customer"))

    def _subscription_updated(self, db: Session, subscription: dict, now: datetime) -> ReconcileResult:
        subscription_id = subscription.get("id")
        customer = self._find_customer(
            db,
            subscription_id=subscription_id,
            external_customer_id=subscription.get("customer"),
        )
        if customer is None:
            return ReconcileResult(ReconcileStatus.IGNORED, detail="customer not found")
        if self._is_stale(customer, subscription_id):
            return ReconcileResult(ReconcileStatus.IGNORED, customer.id, f"stale subscription {subscription_id}")

        status_val = (subscription.get("status") or "").lower()
        if status_val == "canceled":
            return self._revoke(db, customer, "canceled immediately")

        if subscription.get("cancel_at_period_end"):
            return self._schedule_cancellation(customer, subscription_id, _period_end(subscription))

        if status_val not in ("active", "trialing"):
            return ReconcileResult(ReconcileStatus.IGNORED, customer.id, f"status {status_val}")

        # Active and not canceling: any previously scheduled cancellation was withdrawn
        resumed = customer.subscription_end is not None
        if resumed:
            logger.info("[Reconciler] Customer %s withdrew scheduled cancellation", customer.id)
            customer.subscription_end = None

        plan = self.plan_for_price(_price_id(subscription))
        current = parse_plan(customer.current_plan)
        if plan == Plan.NONE:
            # Recipients are kept; a later update with a known price restores the plan
            customer.current_plan = Plan.NONE.value
            customer.has_subscription = False
            return ReconcileResult(ReconcileStatus.IGNORED, customer.id, "unmapped price; entitlement withheld")
        if plan == Plan.TRIAL:
            if current == Plan.TRIAL:
                if resumed:
                    return ReconcileResult(ReconcileStatus.APPLIED, customer.id, "cancellation withdrawn")
                return ReconcileResult(ReconcileStatus.DUPLICATE, customer.id, "trial unchanged")
            return ReconcileResult(ReconcileStatus.IGNORED, customer.id, "trial price on a non-trial customer")
        if plan == current and customer.has_subscription and not customer.trial_active:
            if resumed:
                return ReconcileResult(ReconcileStatus.APPLIED, customer.id, "cancellation withdrawn")
            return ReconcileResult(ReconcileStatus.DUPLICATE, customer.id, f"plan already {plan.value}")

        customer.current_plan = plan.value
        customer.has_subscription = True
        if customer.external_subscription_id is None:
            customer.external_subscription_id = subscription_id
        if plan in PAID_PLANS:
            customer.trial_active = False
            customer.trial_end = None

        evicted = enforce_recipient_limit(customer.id, plan, db)
        return ReconcileResult(
            ReconcileStatus.APPLIED,
            customer.id,
            f"plan {current.value} -> {plan.value}, evicted {len(evicted)} recipient(s)",
        )

    def _subscription_deleted(self, db: Session, subscription: dict, now: datetime) -> ReconcileResult:
        subscription_id = subscription.get("id")
        customer = self._find_customer(
            db,
            subscription_id=subscription_id,
            external_customer_id=subscription.get("customer"),
        )
        if customer is None:
            return ReconcileResult(ReconcileStatus.IGNORED, detail="customer not found")
        if self._is_stale(customer, subscription_id):
            return ReconcileResult(ReconcileStatus.IGNORED, customer.id, f"stale subscription {subscription_id}")
        return self._revoke(db, customer, "subscription ended")

    # Transitions

    @staticmethod
    def _is_stale(customer: Customer, subscription_id: Optional[str]) -> bool:
        return bool(
            customer.external_subscription_id
            and subscription_id
            and customer.external_subscription_id != subscription_id
        )

    @staticmethod
    def _link(customer: Customer, subscription_id: Optional[str], external_customer_id: Optional[str]) -> None:
        if subscription_id:
            customer.external_subscription_id = subscription_id
        if external_customer_id and not customer.external_customer_id:
            customer.external_customer_id = external_customer_id

    def _start_trial(self, db: Session, customer: Customer, subscription_id: Optional[str],
                     external_customer_id: Optional[str], now: datetime) -> ReconcileResult:
        if customer.trial_used:
            if customer.trial_active and subscription_id and customer.external_subscription_id == subscription_id:
                return ReconcileResult(ReconcileStatus.DUPLICATE, customer.id, "trial already started")
            logger.warning("[Reconciler] Customer %s tried to start a second free trial", customer.id)
            return ReconcileResult(ReconcileStatus.REJECTED, customer.id, "free trial already used")

        if is_entitled(customer, now) and parse_plan(customer.current_plan) in PAID_PLANS:
            return ReconcileResult(ReconcileStatus.REJECTED, customer.id, "already on a paid plan")

        customer.trial_active = True
        customer.trial_end = now + timedelta(days=self._trial_days)
        customer.trial_used = True
        customer.has_subscription = True
        customer.current_plan = Plan.TRIAL.value
        customer.subscription_end = None
        self._link(customer, subscription_id, external_customer_id)
        return ReconcileResult(ReconcileStatus.APPLIED, customer.id, f"trial until {customer.trial_end.isoformat()}")

    def _activate(self, db: Session, customer: Customer, plan: Plan, subscription_id: Optional[str],
                  external_customer_id: Optional[str]) -> ReconcileResult:
        if plan == Plan.NONE:
            # Unknown product: record the linkage but grant nothing
            customer.current_plan = Plan.NONE.value
            self._link(customer, subscription_id, external_customer_id)
            return ReconcileResult(ReconcileStatus.IGNORED, customer.id, "unmapped plan; no entitlement granted")

        if (
            customer.has_subscription
            and parse_plan(customer.current_plan) == plan
            and customer.subscription_end is None
            and not customer.trial_active
            and (not subscription_id or customer.external_subscription_id == subscription_id)
        ):
            return ReconcileResult(ReconcileStatus.DUPLICATE, customer.id, f"already on {plan.value}")

        previous = parse_plan(customer.current_plan)
        customer.has_subscription = True
        customer.current_plan = plan.value
        customer.subscription_end = None
        customer.trial_active = False
        customer.trial_end = None
        self._link(customer, subscription_id, external_customer_id)

        evicted = enforce_recipient_limit(customer.id, plan, db)
        return ReconcileResult(
            ReconcileStatus.APPLIED,
            customer.id,
            f"plan {previous.value} -> {plan.value}, evicted {len(evicted)} recipient(s)",
        )

    def _schedule_cancellation(self, customer: Customer, subscription_id: Optional[str],
                               period_end: Optional[datetime]) -> ReconcileResult:
        if period_end is None:
            return ReconcileResult(ReconcileStatus.IGNORED, customer.id, "cancellation without a period end")
        if customer.subscription_end == period_end:
            return ReconcileResult(ReconcileStatus.DUPLICATE, customer.id, "cancellation already scheduled")

        # Still entitled until period_end; has_subscription is cleared when the period actually ends
        customer.subscription_end = period_end
        if customer.external_subscription_id is None:
            customer.external_subscription_id = subscription_id
        return ReconcileResult(ReconcileStatus.APPLIED, customer.id, f"cancels at {period_end.isoformat()}")

    def _revoke(self, db: Session, customer: Customer, reason: str) -> ReconcileResult:
        already_revoked = (
            not customer.has_subscription
            and parse_plan(customer.current_plan) == Plan.NONE
            and not customer.trial_active
            and customer.subscription_end is None
        )
        deleted = delete_all_recipients(customer.id, db)

        customer.has_subscription = False
        customer.current_plan = Plan.NONE.value
        customer.subscription_end = None
        customer.trial_active = False
        customer.trial_end = None

        if already_revoked and deleted == 0:
            return ReconcileResult(ReconcileStatus.DUPLICATE, customer.id, "already revoked")
        return ReconcileResult(ReconcileStatus.APPLIED, customer.id, f"{reason}; deleted {deleted} recipient(s)")

    # Sweep

    def expire_lapsed(self, now: Optional[datetime] = None) -> List[int]:
        """
        Revoke customers whose trial has run out, or whose scheduled
        cancellation has passed, without waiting for Stripe to tell us.
        Each customer is handled in its own transaction; one failure does not
        stop the rest. Returns the ids that were revoked.
        """
        now = now or utcnow()
        lapsed = and_(Customer.trial_active.is_(True), Customer.trial_end.isnot(None), Customer.trial_end <= now)
        ended = and_(Customer.subscription_end.isnot(None), Customer.subscription_end <= now)

        with self._session_factory() as db:
            ids = [row.id for row in db.query(Customer.id).filter(or_(lapsed, ended)).all()]

        revoked = []
        for customer_id in ids:
            try:
                with self._session_factory.begin() as db:
                    customer = self._locked(db, Customer.id == customer_id, or_(lapsed, ended))
                    if customer is None:
                        continue
                    reason = "trial expired" if customer.trial_active else "cancellation took effect"
                    result = self._revoke(db, customer, reason)
                logger.info("[Reconciler] Sweep revoked customer %s: %s", customer_id, result.detail)
                revoked.append(customer_id)
            except Exception:
                logger.exception("[Reconciler] Sweep failed for customer %s", customer_id)
        return revoked
