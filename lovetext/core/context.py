"""
Application context.

Built once at startup and handed to every component; holds the database
engine and session factory, the channel senders, the billing gateway and the
two long-lived services (dispatcher and reconciler).
"""
import random
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from lovetext.core.config import Settings
from lovetext.db.session import make_engine, make_session_factory
from lovetext.services.billing_gateway import StripeBillingGateway
from lovetext.services.channels import EmailSender, ResendEmailSender, SmsSender, TwilioSmsSender
from lovetext.services.composer import MessageComposer
from lovetext.services.dispatcher import DeliveryDispatcher
from lovetext.services.reconciler import BillingReconciler


@dataclass
class AppContext:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    composer: MessageComposer
    email_sender: EmailSender
    sms_sender: SmsSender
    billing: StripeBillingGateway
    dispatcher: DeliveryDispatcher
    reconciler: BillingReconciler


def build_context(
    settings: Settings,
    *,
    engine: Optional[Engine] = None,
    email_sender: Optional[EmailSender] = None,
    sms_sender: Optional[SmsSender] = None,
    billing: Optional[StripeBillingGateway] = None,
    rng: Optional[random.Random] = None,
) -> AppContext:
    engine = engine or make_engine(settings.database_url)
    session_factory = make_session_factory(engine)
    composer = MessageComposer(rng=rng)
    email_sender = email_sender or ResendEmailSender(
        settings.resend_api_key, settings.from_email, timeout_seconds=settings.send_timeout_seconds
    )
    sms_sender = sms_sender or TwilioSmsSender(
        settings.twilio_account_sid,
        settings.twilio_auth_token,
        settings.twilio_from_number,
        timeout_seconds=settings.send_timeout_seconds,
    )
    billing = billing or StripeBillingGateway(
        settings.stripe_secret_key, settings.price_ids, settings.frontend_url, trial_days=settings.trial_days
    )
    dispatcher = DeliveryDispatcher(
        session_factory,
        composer,
        email_sender,
        sms_sender,
        base_url=settings.base_url,
        send_timeout_seconds=settings.send_timeout_seconds,
        concurrency=settings.dispatch_concurrency,
    )
    reconciler = BillingReconciler(
        session_factory,
        settings.price_ids,
        trial_days=settings.trial_days,
        subscription_price_lookup=billing.retrieve_subscription_price_id if billing.configured else None,
    )
    return AppContext(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        composer=composer,
        email_sender=email_sender,
        sms_sender=sms_sender,
        billing=billing,
        dispatcher=dispatcher,
        reconciler=reconciler,
    )
