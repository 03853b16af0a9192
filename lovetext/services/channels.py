"""
Outbound delivery channels.

Email goes through Resend, SMS through the Twilio REST API. Both senders are
no-ops (returning False) when their credentials are not configured, and
neither ever raises: provider failures are logged and reported as False so
the dispatch loop can carry on with the next recipient.
"""
import asyncio
import logging
from enum import Enum
from typing import List, Optional, Protocol, Tuple

import httpx
import resend

logger = logging.getLogger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"


class DeliveryMethod(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    BOTH = "both"


def channels_for(delivery_method, email: Optional[str], phone: Optional[str]) -> List[Tuple[Channel, str]]:
    """(channel, address) pairs implied by a delivery method and the contact info on file."""
    try:
        method = DeliveryMethod(delivery_method)
    except ValueError:
        method = DeliveryMethod.EMAIL
    targets = []
    if method in (DeliveryMethod.EMAIL, DeliveryMethod.BOTH) and email:
        targets.append((Channel.EMAIL, email))
    if method in (DeliveryMethod.SMS, DeliveryMethod.BOTH) and phone:
        targets.append((Channel.SMS, phone))
    return targets


class EmailSender(Protocol):
    async def send_email(self, to: str, subject: str, html: str, text: str) -> bool: ...


class SmsSender(Protocol):
    async def send_sms(self, to: str, body: str) -> bool: ...


class ResendEmailSender:
    def __init__(self, api_key: str, from_email: str, timeout_seconds: float = 10.0):
        self._api_key = (api_key or "").strip()
        self._from_email = from_email
        self._timeout_seconds = timeout_seconds

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def _send_blocking(self, params: dict):
        resend.api_key = self._api_key
        return resend.Emails.send(params)

    async def send_email(self, to: str, subject: str, html: str, text: str) -> bool:
        if not self.configured or not to:
            logger.info("[Email] RESEND_API_KEY not set; skipping email to %s", to)
            return False

        params = {
            "from": self._from_email,
            "to": [to],
            "subject": subject,
            "html": html,
            "text": text,
        }
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(self._send_blocking, params),
                timeout=self._timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("[Email] Timed out sending to %s after %ss", to, self._timeout_seconds)
            return False
        except Exception as e:
            logger.warning("[Email] Failed to send to %s: %s", to, e)
            return False

        message_id = result.get("id") if isinstance(result, dict) else getattr(result, "id", None)
        logger.info("[Email] Sent to %s (id=%s)", to, message_id)
        return True


class TwilioSmsSender:
    def __init__(self, account_sid: str, auth_token: str, from_number: str, timeout_seconds: float = 10.0):
        self._account_sid = (account_sid or "").strip()
        self._auth_token = (auth_token or "").strip()
        self._from_number = (from_number or "").strip()
        self._timeout_seconds = timeout_seconds

    @property
    def configured(self) -> bool:
        return bool(self._account_sid and self._auth_token and self._from_number)

    async def send_sms(self, to: str, body: str) -> bool:
        if not self.configured or not to:
            logger.info("[SMS] Twilio credentials not set; skipping SMS to %s", to)
            return False

        url = f"{TWILIO_API_BASE}/Accounts/{self._account_sid}/Messages.json"
        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                r = await client.post(
                    url,
                    data={"To": to, "From": self._from_number, "Body": body},
                    auth=(self._account_sid, self._auth_token),
                )
        except httpx.TimeoutException as e:
            logger.warning("[SMS] Timeout sending to %s: %s", to, e)
            return False
        except httpx.RequestError as e:
            logger.warning("[SMS] Request error sending to %s: %s", to, e)
            return False

        if r.status_code >= 400:
            logger.warning("[SMS] Twilio rejected message to %s: %s %s", to, r.status_code, r.text[:300])
            return False

        try:
            sid = r.json().get("sid")
        except ValueError:
            sid = None
        logger.info("[SMS] Sent to %s (sid=%s)", to, sid)
        return True
