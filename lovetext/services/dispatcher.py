"""
Recurring delivery dispatch.

One global scan per cycle: every active recipient whose cursor has passed is
re-checked against its owner's current entitlement, sent a composed note on
each of its channels, logged, and moved to its next delivery time. Each
recipient is handled in isolation; a failure is logged and the scan moves on.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import sessionmaker
from starlette.concurrency import run_in_threadpool

from lovetext.core.entitlement import is_entitled
from lovetext.models.customer import Customer
from lovetext.models.message_log import MessageLog
from lovetext.models.recipient import Recipient
from lovetext.services.channels import Channel, EmailSender, SmsSender, channels_for
from lovetext.services.composer import (
    MessageComposer,
    build_love_email_html,
    build_love_email_text,
    build_sms_text,
)
from lovetext.services.scheduler import compute_next_delivery
from lovetext.utils.clock import utcnow

logger = logging.getLogger(__name__)

LOVE_SUBJECT = "A Love Message For You ❤️"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    SKIPPED = "skipped"  # owner not entitled; cursor untouched
    STALE = "stale"  # recipient changed or removed mid-cycle; cursor left alone
    FAILED = "failed"


@dataclass(frozen=True)
class DueDelivery:
    """Snapshot of a recipient taken when the cycle starts."""
    recipient_id: int
    customer_id: int
    name: str
    relationship: Optional[str]
    email: Optional[str]
    phone: Optional[str]
    delivery_method: str
    frequency: str
    time_of_day: str
    next_delivery: Optional[datetime]
    unsubscribe_token: str

    @classmethod
    def from_recipient(cls, recipient: Recipient) -> "DueDelivery":
        return cls(
            recipient_id=recipient.id,
            customer_id=recipient.customer_id,
            name=recipient.name,
            relationship=recipient.relationship,
            email=recipient.email,
            phone=recipient.phone,
            delivery_method=recipient.delivery_method,
            frequency=recipient.frequency,
            time_of_day=recipient.time_of_day,
            next_delivery=recipient.next_delivery,
            unsubscribe_token=recipient.unsubscribe_token,
        )


@dataclass(frozen=True)
class ChannelResult:
    channel: Channel
    address: str
    delivered: bool


@dataclass
class DispatchReport:
    started_at: datetime
    due: int = 0
    statuses: List[DeliveryStatus] = field(default_factory=list)

    def count(self, status: DeliveryStatus) -> int:
        return sum(1 for s in self.statuses if s == status)

    @property
    def sent(self) -> int:
        return self.count(DeliveryStatus.SENT)

    @property
    def skipped(self) -> int:
        return self.count(DeliveryStatus.SKIPPED)

    @property
    def failed(self) -> int:
        return self.count(DeliveryStatus.FAILED)


class DeliveryDispatcher:
    def __init__(
        self,
        session_factory: sessionmaker,
        composer: MessageComposer,
        email_sender: EmailSender,
        sms_sender: SmsSender,
        *,
        base_url: str,
        send_timeout_seconds: float = 10.0,
        concurrency: int = 5,
    ):
        self._session_factory = session_factory
        self._composer = composer
        self._email_sender = email_sender
        self._sms_sender = sms_sender
        self._base_url = base_url.rstrip("/")
        self._send_timeout_seconds = send_timeout_seconds
        self._concurrency = max(1, concurrency)
        self._cycle_lock = asyncio.Lock()

    @property
    def cycle_running(self) -> bool:
        return self._cycle_lock.locked()

    def unsubscribe_url(self, token: str) -> str:
        return f"{self._base_url}/unsubscribe/{token}"

    def load_due(self, now: datetime) -> List[DueDelivery]:
        with self._session_factory() as db:
            recipients = (
                db.query(Recipient)
                .join(Customer, Customer.id == Recipient.customer_id)
                .filter(
                    Recipient.is_active.is_(True),
                    Recipient.next_delivery.isnot(None),
                    Recipient.next_delivery <= now,
                )
                .order_by(Recipient.next_delivery.asc(), Recipient.id.asc())
                .all()
            )
            return [DueDelivery.from_recipient(r) for r in recipients]

    async def run_cycle(self, now: Optional[datetime] = None) -> Optional[DispatchReport]:
        """
        Run one scan-and-send cycle. Returns None without doing anything when
        another cycle is still in progress.
        """
        if self._cycle_lock.locked():
            logger.warning("[Dispatch] Previous cycle still running; skipping this tick")
            return None

        async with self._cycle_lock:
            now = now or utcnow()
            report = DispatchReport(started_at=now)
            due = await run_in_threadpool(self.load_due, now)
            report.due = len(due)
            if not due:
                return report

            semaphore = asyncio.Semaphore(self._concurrency)

            async def _guarded(item: DueDelivery) -> DeliveryStatus:
                async with semaphore:
                    return await self.deliver(item, now)

            report.statuses = list(await asyncio.gather(*(_guarded(item) for item in due)))
            logger.info(
                "[Dispatch] Cycle done: due=%s sent=%s skipped=%s failed=%s",
                report.due, report.sent, report.skipped, report.failed,
            )
            return report

    def _owner_entitled(self, customer_id: int, now: datetime) -> bool:
        with self._session_factory() as db:
            return is_entitled(db.get(Customer, customer_id), now)

    def _advance(self, item: DueDelivery, results: List[ChannelResult], message: str,
                 now: datetime, next_delivery: datetime) -> bool:
        """Log the send and move the cursor, only if nobody else moved it first."""
        with self._session_factory.begin() as db:
            advanced = db.execute(
                update(Recipient)
                .where(
                    Recipient.id == item.recipient_id,
                    Recipient.next_delivery == item.next_delivery,
                )
                .values(next_delivery=next_delivery, last_sent=now)
            ).rowcount
            still_exists = advanced or db.get(Recipient, item.recipient_id) is not None
            self.record(
                db, item, results, message,
                kind="scheduled",
                sent_at=now,
                recipient_id=item.recipient_id if still_exists else None,
            )
        return bool(advanced)

    async def deliver(self, item: DueDelivery, now: datetime) -> DeliveryStatus:
        try:
            entitled = await run_in_threadpool(self._owner_entitled, item.customer_id, now)
            if not entitled:
                logger.info(
                    "[Dispatch] Customer %s not entitled; leaving recipient %s for a later cycle",
                    item.customer_id, item.recipient_id,
                )
                return DeliveryStatus.SKIPPED

            message = self._composer.compose(item.name, item.relationship)
            results = await self.send_message(item, message, LOVE_SUBJECT)
            next_delivery = compute_next_delivery(item.frequency, item.time_of_day, now)

            advanced = await run_in_threadpool(self._advance, item, results, message, now, next_delivery)
            if not advanced:
                logger.warning(
                    "[Dispatch] Recipient %s changed or was removed mid-cycle; cursor not advanced",
                    item.recipient_id,
                )
                return DeliveryStatus.STALE

            logger.info(
                "[Dispatch] Recipient %s: %s; next delivery %s",
                item.recipient_id,
                ", ".join(f"{r.channel.value}={'ok' if r.delivered else 'failed'}" for r in results) or "no channel",
                next_delivery.isoformat(),
            )
            return DeliveryStatus.SENT
        except Exception:
            logger.exception("[Dispatch] Delivery to recipient %s failed", item.recipient_id)
            return DeliveryStatus.FAILED

    async def send_message(self, item: DueDelivery, message: str, subject: str) -> List[ChannelResult]:
        """Send on every channel the recipient wants; channels run independently."""
        unsubscribe_url = self.unsubscribe_url(item.unsubscribe_token)
        targets = channels_for(item.delivery_method, item.email, item.phone)

        async def _send(channel: Channel, address: str) -> ChannelResult:
            if channel == Channel.EMAIL:
                send = self._email_sender.send_email(
                    address,
                    subject,
                    build_love_email_html(item.name, message, unsubscribe_url),
                    build_love_email_text(message, unsubscribe_url),
                )
            else:
                send = self._sms_sender.send_sms(address, build_sms_text(message, unsubscribe_url))
            return ChannelResult(channel, address, await self._bounded(send, channel, address))

        return list(await asyncio.gather(*(_send(channel, address) for channel, address in targets)))

    async def _bounded(self, send, channel: Channel, address: str) -> bool:
        try:
            return bool(await asyncio.wait_for(send, timeout=self._send_timeout_seconds))
        except asyncio.TimeoutError:
            logger.warning("[Dispatch] %s to %s timed out", channel.value, address)
            return False
        except Exception:
            logger.exception("[Dispatch] %s to %s raised", channel.value, address)
            return False

    def record(self, db, item: DueDelivery, results: List[ChannelResult], message: str, *,
               kind: str, sent_at: datetime, recipient_id: Optional[int]) -> None:
        for result in results:
            db.add(MessageLog(
                customer_id=item.customer_id,
                recipient_id=recipient_id,
                channel=result.channel.value,
                address=result.address,
                message=message,
                kind=kind,
                delivered=result.delivered,
                sent_at=sent_at,
            ))

    def _record_now(self, item: DueDelivery, results: List[ChannelResult], message: str,
                    kind: str, sent_at: datetime) -> None:
        with self._session_factory.begin() as db:
            self.record(db, item, results, message, kind=kind, sent_at=sent_at, recipient_id=item.recipient_id)

    async def send_now(self, recipient: Recipient, message: str, *, kind: str, subject: str = LOVE_SUBJECT,
                       now: Optional[datetime] = None) -> List[ChannelResult]:
        """
        Out-of-band send (admin "send now", flowers). Logged like a scheduled
        send but does not move the delivery cursor.
        """
        now = now or utcnow()
        item = DueDelivery.from_recipient(recipient)
        results = await self.send_message(item, message, subject)
        await run_in_threadpool(self._record_now, item, results, message, kind, now)
        return results
