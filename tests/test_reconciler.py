import calendar
from datetime import datetime, timedelta

from lovetext.core.entitlement import is_entitled
from lovetext.models import Customer, Recipient
from lovetext.services.reconciler import ReconcileStatus

from conftest import stripe_event, subscription

NOW = datetime(2024, 6, 1, 12, 0)


def _customer(session_factory, customer_id):
    with session_factory() as db:
        return db.get(Customer, customer_id)


def _recipient_ids(session_factory, customer_id):
    with session_factory() as db:
        rows = db.query(Recipient.id).filter(Recipient.customer_id == customer_id).order_by(Recipient.id).all()
        return [row.id for row in rows]


def _checkout(customer_id, product, sub_id="sub_new", customer="cus_new"):
    return stripe_event("checkout.session.completed", {
        "id": "cs_test",
        "mode": "subscription",
        "customer": customer,
        "subscription": sub_id,
        "client_reference_id": str(customer_id),
        "metadata": {"customer_id": str(customer_id), "product": product},
    })


def _epoch(moment: datetime) -> int:
    return calendar.timegm(moment.utctimetuple())


def test_trial_checkout_starts_trial(context, make_customer):
    customer_id = make_customer()

    result = context.reconciler.handle_event(_checkout(customer_id, "free-trial", sub_id="sub_trial"), now=NOW)

    assert result.status == ReconcileStatus.APPLIED
    customer = _customer(context.session_factory, customer_id)
    assert customer.trial_active is True
    assert customer.trial_used is True
    assert customer.has_subscription is True
    assert customer.current_plan == "trial"
    assert customer.trial_end == NOW + timedelta(days=3)
    assert customer.external_subscription_id == "sub_trial"
    assert customer.external_customer_id == "cus_new"
    assert is_entitled(customer, NOW + timedelta(days=2, hours=23))
    assert not is_entitled(customer, NOW + timedelta(days=3))


def test_trial_replay_is_a_no_op(context, make_customer):
    customer_id = make_customer()
    event = _checkout(customer_id, "free-trial", sub_id="sub_trial")
    context.reconciler.handle_event(event, now=NOW)

    replay = context.reconciler.handle_event(event, now=NOW + timedelta(hours=5))

    assert replay.status == ReconcileStatus.DUPLICATE
    assert _customer(context.session_factory, customer_id).trial_end == NOW + timedelta(days=3)


def test_trial_cannot_be_reused(context, make_customer):
    customer_id = make_customer()
    context.reconciler.handle_event(_checkout(customer_id, "free-trial", sub_id="sub_trial"), now=NOW)
    context.reconciler.handle_event(
        stripe_event("customer.subscription.deleted", subscription("sub_trial", "cus_new", "price_trial")),
        now=NOW + timedelta(days=3),
    )

    second = context.reconciler.handle_event(
        _checkout(customer_id, "free-trial", sub_id="sub_trial_2"), now=NOW + timedelta(days=4)
    )

    assert second.status == ReconcileStatus.REJECTED
    customer = _customer(context.session_factory, customer_id)
    assert customer.trial_used is True
    assert customer.trial_active is False
    assert customer.current_plan == "none"
    assert not is_entitled(customer, NOW + timedelta(days=4))


def test_paid_checkout_activates_plan_and_clears_trial(context, make_customer):
    customer_id = make_customer(
        current_plan="trial", trial_active=True, trial_used=True, has_subscription=True,
        trial_end=NOW + timedelta(days=1),
    )

    result = context.reconciler.handle_event(_checkout(customer_id, "love-basic", sub_id="sub_basic"), now=NOW)

    assert result.status == ReconcileStatus.APPLIED
    customer = _customer(context.session_factory, customer_id)
    assert customer.current_plan == "basic"
    assert customer.has_subscription is True
    assert customer.trial_active is False
    assert customer.trial_end is None
    assert customer.trial_used is True
    assert customer.subscription_end is None
    assert customer.external_subscription_id == "sub_basic"


def test_checkout_without_product_uses_subscription_price(context, make_customer, billing):
    customer_id = make_customer()
    billing.subscription_prices["sub_plus"] = "price_plus"
    event = _checkout(customer_id, None, sub_id="sub_plus")

    result = context.reconciler.handle_event(event, now=NOW)

    assert result.status == ReconcileStatus.APPLIED
    assert _customer(context.session_factory, customer_id).current_plan == "plus"
    assert ("retrieve_price", "sub_plus") in billing.calls


def test_subscription_created_replay_is_duplicate(context, make_customer):
    customer_id = make_customer(external_customer_id="cus_9")
    event = stripe_event("customer.subscription.created", subscription("sub_9", "cus_9", "price_basic"))

    assert context.reconciler.handle_event(event, now=NOW).status == ReconcileStatus.APPLIED
    assert context.reconciler.handle_event(event, now=NOW).status == ReconcileStatus.DUPLICATE
    assert _customer(context.session_factory, customer_id).current_plan == "basic"


def test_unmapped_price_grants_nothing(context, make_customer):
    customer_id = make_customer(external_customer_id="cus_odd")
    event = stripe_event("customer.subscription.created", subscription("sub_odd", "cus_odd", "price_mystery"))

    result = context.reconciler.handle_event(event, now=NOW)

    assert result.status == ReconcileStatus.IGNORED
    customer = _customer(context.session_factory, customer_id)
    assert customer.current_plan == "none"
    assert not is_entitled(customer, NOW)


def test_update_with_unmapped_price_withholds_entitlement_but_keeps_recipients(
    context, paid_customer, make_recipient
):
    customer_id = paid_customer("basic")
    make_recipient(customer_id)
    event = stripe_event("customer.subscription.updated", subscription(price="price_mystery"))

    result = context.reconciler.handle_event(event, now=NOW)

    assert result.status == ReconcileStatus.IGNORED
    customer = _customer(context.session_factory, customer_id)
    assert customer.current_plan == "none"
    assert not is_entitled(customer, NOW)
    assert len(_recipient_ids(context.session_factory, customer_id)) == 1


def test_cancel_at_period_end_keeps_access_until_boundary(context, paid_customer, make_recipient):
    customer_id = paid_customer("plus")
    make_recipient(customer_id)
    period_end = datetime(2024, 6, 30, 0, 0)
    event = stripe_event(
        "customer.subscription.updated",
        subscription(cancel_at_period_end=True, current_period_end=_epoch(period_end)),
    )

    result = context.reconciler.handle_event(event, now=NOW)

    assert result.status == ReconcileStatus.APPLIED
    customer = _customer(context.session_factory, customer_id)
    assert customer.subscription_end == period_end
    assert customer.has_subscription is True
    assert customer.current_plan == "plus"
    assert is_entitled(customer, period_end - timedelta(seconds=1))
    assert not is_entitled(customer, period_end + timedelta(seconds=1))
    assert len(_recipient_ids(context.session_factory, customer_id)) == 1

    assert context.reconciler.handle_event(event, now=NOW).status == ReconcileStatus.DUPLICATE


def test_period_end_read_from_subscription_item(context, paid_customer):
    customer_id = paid_customer("plus")
    period_end = datetime(2024, 7, 1, 0, 0)
    body = subscription(cancel_at_period_end=True)
    body["items"]["data"][0]["current_period_end"] = _epoch(period_end)

    context.reconciler.handle_event(stripe_event("customer.subscription.updated", body), now=NOW)

    assert _customer(context.session_factory, customer_id).subscription_end == period_end


def test_plan_change_while_active_clears_pending_cancellation(context, paid_customer):
    customer_id = paid_customer("plus", subscription_end=datetime(2024, 6, 30))

    result = context.reconciler.handle_event(
        stripe_event("customer.subscription.updated", subscription(price="price_basic")), now=NOW
    )

    assert result.status == ReconcileStatus.APPLIED
    customer = _customer(context.session_factory, customer_id)
    assert customer.current_plan == "basic"
    assert customer.subscription_end is None


def test_resumed_cancellation_survives_the_sweep(context, paid_customer, make_recipient):
    customer_id = paid_customer("plus")
    make_recipient(customer_id)
    make_recipient(customer_id)
    period_end = datetime(2024, 6, 30, 0, 0)
    context.reconciler.handle_event(
        stripe_event(
            "customer.subscription.updated",
            subscription(cancel_at_period_end=True, current_period_end=_epoch(period_end)),
        ),
        now=NOW,
    )
    assert _customer(context.session_factory, customer_id).subscription_end == period_end

    resume = stripe_event(
        "customer.subscription.updated",
        subscription(cancel_at_period_end=False, current_period_end=_epoch(period_end)),
    )
    result = context.reconciler.handle_event(resume, now=NOW)

    assert result.status == ReconcileStatus.APPLIED
    customer = _customer(context.session_factory, customer_id)
    assert customer.subscription_end is None
    assert customer.current_plan == "plus"
    assert context.reconciler.handle_event(resume, now=NOW).status == ReconcileStatus.DUPLICATE

    later = period_end + timedelta(hours=1)
    assert context.reconciler.expire_lapsed(later) == []
    assert len(_recipient_ids(context.session_factory, customer_id)) == 2
    assert is_entitled(_customer(context.session_factory, customer_id), later)


def test_immediate_cancel_deletes_all_recipients(context, paid_customer, make_recipient):
    customer_id = paid_customer("plus")
    for n in range(4):
        make_recipient(customer_id, name=f"R{n}")
    event = stripe_event("customer.subscription.updated", subscription(status="canceled"))

    result = context.reconciler.handle_event(event, now=NOW)

    assert result.status == ReconcileStatus.APPLIED
    assert _recipient_ids(context.session_factory, customer_id) == []
    customer = _customer(context.session_factory, customer_id)
    assert customer.has_subscription is False
    assert customer.current_plan == "none"
    assert customer.subscription_end is None
    assert not is_entitled(customer, NOW)

    replay = context.reconciler.handle_event(event, now=NOW)
    assert replay.status == ReconcileStatus.DUPLICATE
    assert _recipient_ids(context.session_factory, customer_id) == []


def test_subscription_deleted_revokes(context, paid_customer, make_recipient):
    customer_id = paid_customer("basic", subscription_end=NOW)
    make_recipient(customer_id)
    make_recipient(customer_id)

    result = context.reconciler.handle_event(
        stripe_event("customer.subscription.deleted", subscription(price="price_basic", status="canceled")),
        now=NOW,
    )

    assert result.status == ReconcileStatus.APPLIED
    assert _recipient_ids(context.session_factory, customer_id) == []
    assert _customer(context.session_factory, customer_id).subscription_end is None


def test_downgrade_keeps_the_three_newest_recipients(context, paid_customer, make_recipient):
    customer_id = paid_customer("plus")
    ids = [make_recipient(customer_id, name=f"R{n}") for n in range(5)]

    result = context.reconciler.handle_event(
        stripe_event("customer.subscription.updated", subscription(price="price_basic")), now=NOW
    )

    assert result.status == ReconcileStatus.APPLIED
    assert _recipient_ids(context.session_factory, customer_id) == ids[2:]
    assert _customer(context.session_factory, customer_id).current_plan == "basic"


def test_upgrade_keeps_everyone(context, paid_customer, make_recipient):
    customer_id = paid_customer("basic")
    ids = [make_recipient(customer_id) for _ in range(3)]

    context.reconciler.handle_event(
        stripe_event("customer.subscription.updated", subscription(price="price_plus")), now=NOW
    )

    assert _recipient_ids(context.session_factory, customer_id) == ids
    assert _customer(context.session_factory, customer_id).current_plan == "plus"


def test_stale_subscription_events_are_ignored(context, paid_customer, make_recipient):
    customer_id = paid_customer("plus")
    make_recipient(customer_id)

    for event_type, body in (
        ("customer.subscription.updated", subscription("sub_old", price="price_basic")),
        ("customer.subscription.deleted", subscription("sub_old", status="canceled")),
    ):
        result = context.reconciler.handle_event(stripe_event(event_type, body), now=NOW)
        assert result.status == ReconcileStatus.IGNORED

    customer = _customer(context.session_factory, customer_id)
    assert customer.current_plan == "plus"
    assert customer.has_subscription is True
    assert len(_recipient_ids(context.session_factory, customer_id)) == 1


def test_unknown_customer_and_event_type(context):
    unknown = context.reconciler.handle_event(
        stripe_event("customer.subscription.updated", subscription("sub_x", "cus_x")), now=NOW
    )
    assert unknown.status == ReconcileStatus.IGNORED

    other = context.reconciler.handle_event(stripe_event("invoice.paid", {"id": "in_1"}), now=NOW)
    assert other.status == ReconcileStatus.IGNORED


def test_sweep_revokes_expired_trials_only(context, make_customer, make_recipient):
    expired_id = make_customer(
        current_plan="trial", trial_active=True, trial_used=True, has_subscription=True,
        trial_end=NOW - timedelta(minutes=1),
    )
    active_id = make_customer(
        current_plan="trial", trial_active=True, trial_used=True, has_subscription=True,
        trial_end=NOW + timedelta(days=1),
    )
    make_recipient(expired_id)
    make_recipient(active_id)

    revoked = context.reconciler.expire_lapsed(NOW)

    assert revoked == [expired_id]
    expired = _customer(context.session_factory, expired_id)
    assert expired.trial_active is False
    assert expired.trial_used is True
    assert expired.current_plan == "none"
    assert _recipient_ids(context.session_factory, expired_id) == []
    assert len(_recipient_ids(context.session_factory, active_id)) == 1

    assert context.reconciler.expire_lapsed(NOW) == []


def test_sweep_revokes_passed_cancellations(context, paid_customer, make_recipient):
    ended_id = paid_customer("basic", subscription_end=NOW - timedelta(hours=1))
    pending_id = paid_customer(
        "plus", subscription_end=NOW + timedelta(hours=1),
        external_subscription_id="sub_other", external_customer_id="cus_other",
    )
    make_recipient(ended_id)

    assert context.reconciler.expire_lapsed(NOW) == [ended_id]
    assert _recipient_ids(context.session_factory, ended_id) == []
    assert _customer(context.session_factory, pending_id).subscription_end is not None
