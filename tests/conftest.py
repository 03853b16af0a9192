import hashlib
import hmac
import json
import random
import secrets
import time
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from lovetext.core.config import Settings
from lovetext.core.context import build_context
from lovetext.db.base import Base
from lovetext.models import Customer, Recipient
from lovetext.services.scheduler import compute_next_delivery
from lovetext.utils.auth import create_access_token, hash_password
from lovetext.utils.clock import utcnow

WEBHOOK_SECRET = "whsec_test_secret"
ADMIN_KEY = "admin-test-key"
PRICE_IDS = {"free-trial": "price_trial", "love-basic": "price_basic", "love-plus": "price_plus"}


class FakeEmailSender:
    def __init__(self, result=True):
        self.result = result
        self.sent = []

    async def send_email(self, to, subject, html, text):
        self.sent.append({"to": to, "subject": subject, "html": html, "text": text})
        return self.result


class FakeSmsSender:
    def __init__(self, result=True):
        self.result = result
        self.sent = []

    async def send_sms(self, to, body):
        self.sent.append({"to": to, "body": body})
        return self.result


class FakeBillingGateway:
    """Records outbound billing commands instead of calling Stripe."""
    configured = True

    def __init__(self):
        self.calls = []
        self.subscription_prices = {}
        self.error = None

    def _call(self, name, *args):
        self.calls.append((name,) + args)
        if self.error is not None:
            raise self.error

    def ensure_customer(self, customer):
        self._call("ensure_customer", customer.id)
        return customer.external_customer_id or f"cus_{customer.id}"

    def create_checkout_session(self, customer, external_customer_id, product_id):
        self._call("checkout", customer.id, external_customer_id, product_id)
        return {"checkout_url": f"https://checkout.test/{product_id}", "session_id": "cs_test_1"}

    def create_portal_session(self, external_customer_id):
        self._call("portal", external_customer_id)
        return "https://billing.test/portal"

    def retrieve_subscription_price_id(self, subscription_id):
        self._call("retrieve_price", subscription_id)
        return self.subscription_prices.get(subscription_id)

    def change_plan(self, subscription_id, plan):
        self._call("change_plan", subscription_id, plan)

    def cancel_subscription(self, subscription_id, at_period_end=True):
        self._call("cancel", subscription_id, at_period_end)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'lovetext_test.db'}",
        jwt_secret="test-jwt-secret",
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_price_trial=PRICE_IDS["free-trial"],
        stripe_price_basic=PRICE_IDS["love-basic"],
        stripe_price_plus=PRICE_IDS["love-plus"],
        base_url="https://love.test",
        admin_api_key=ADMIN_KEY,
        scheduler_enabled=False,
        run_migrations=False,
        flowers_per_day=2,
    )


@pytest.fixture
def email_sender():
    return FakeEmailSender()


@pytest.fixture
def sms_sender():
    return FakeSmsSender()


@pytest.fixture
def billing():
    return FakeBillingGateway()


@pytest.fixture
def context(settings, email_sender, sms_sender, billing):
    ctx = build_context(
        settings,
        email_sender=email_sender,
        sms_sender=sms_sender,
        billing=billing,
        rng=random.Random(7),
    )
    Base.metadata.create_all(bind=ctx.engine)
    yield ctx
    ctx.engine.dispose()


@pytest.fixture
def session_factory(context):
    return context.session_factory


@pytest.fixture
def client(context):
    from lovetext.main import create_app

    app = create_app(context=context)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def make_customer(session_factory):
    counter = iter(range(1, 10_000))

    def _make(**fields):
        n = next(counter)
        values = {
            "name": f"Customer {n}",
            "email": f"customer{n}@example.com",
            "hashed_password": hash_password("secret123"),
            "current_plan": "none",
            "has_subscription": False,
            "trial_active": False,
            "trial_used": False,
        }
        values.update(fields)
        with session_factory.begin() as db:
            customer = Customer(**values)
            db.add(customer)
            db.flush()
            return customer.id

    return _make


@pytest.fixture
def make_recipient(session_factory):
    def _make(customer_id, **fields):
        now = utcnow()
        values = {
            "customer_id": customer_id,
            "name": "Ava",
            "email": "ava@example.com",
            "delivery_method": "email",
            "relationship": "girlfriend",
            "frequency": "daily",
            "time_of_day": "morning",
            "is_active": True,
            "unsubscribe_token": secrets.token_urlsafe(16),
        }
        values.update(fields)
        values.setdefault("next_delivery", compute_next_delivery(values["frequency"], values["time_of_day"], now))
        with session_factory.begin() as db:
            recipient = Recipient(**values)
            db.add(recipient)
            db.flush()
            return recipient.id

    return _make


@pytest.fixture
def paid_customer(make_customer):
    def _make(plan="plus", **fields):
        values = {"current_plan": plan, "has_subscription": True, "external_subscription_id": "sub_current",
                  "external_customer_id": "cus_current"}
        values.update(fields)
        return make_customer(**values)

    return _make


def auth_headers(settings, customer_id):
    token = create_access_token(
        {"sub": str(customer_id)}, settings.jwt_secret, settings.jwt_algorithm, timedelta(minutes=30)
    )
    return {"Authorization": f"Bearer {token}"}


def stripe_signature(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    """Build a Stripe-Signature header the way Stripe signs webhook deliveries."""
    timestamp = int(timestamp if timestamp is not None else time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def stripe_event(event_type: str, obj: dict, event_id: str = "evt_test") -> dict:
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def subscription(sub_id="sub_current", customer="cus_current", price="price_plus", status="active", **extra):
    body = {
        "id": sub_id,
        "customer": customer,
        "status": status,
        "cancel_at_period_end": False,
        "items": {"data": [{"id": "si_1", "price": {"id": price}}]},
    }
    body.update(extra)
    return body


def signed_post(client, event: dict, secret: str = WEBHOOK_SECRET):
    payload = json.dumps(event)
    return client.post(
        "/webhooks/stripe",
        content=payload,
        headers={"Stripe-Signature": stripe_signature(payload, secret), "Content-Type": "application/json"},
    )
