"""
Recipient management for the signed-in customer: CRUD, message history
and on-demand "flowers".
"""
import logging
import secrets
from datetime import timedelta
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import distinct, func
from sqlalchemy.orm import Session

from lovetext.core.context import AppContext
from lovetext.dependencies.auth import get_context, get_current_customer, get_db
from lovetext.models.customer import Customer
from lovetext.models.message_log import MessageLog
from lovetext.models.recipient import Recipient
from lovetext.schemas.recipient import (
    FlowerRequest,
    MessageHistoryResponse,
    RecipientCreate,
    RecipientResponse,
    RecipientUpdate,
    check_contact,
)
from lovetext.services.channels import DeliveryMethod
from lovetext.services.composer import build_flower_message
from lovetext.services.scheduler import compute_next_delivery
from lovetext.utils.clock import utcnow
from lovetext.utils.plan_enforcement import check_entitlement, check_recipient_limit

logger = logging.getLogger(__name__)

router = APIRouter()

FLOWER_SUBJECT = "Someone sent you a flower 🌸"
HISTORY_LIMIT = 5


def _get_owned_recipient(recipient_id: int, customer: Customer, db: Session) -> Recipient:
    recipient = db.query(Recipient).filter(
        Recipient.id == recipient_id,
        Recipient.customer_id == customer.id,
    ).first()
    if not recipient:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Recipient not found"
        )
    return recipient


def _require_active(recipient: Recipient) -> None:
    if not recipient.is_active:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Recipient is inactive or has unsubscribed"
        )


@router.get("", response_model=List[RecipientResponse])
def list_recipients(
    customer: Customer = Depends(get_current_customer),
    db: Session = Depends(get_db),
):
    return db.query(Recipient).filter(
        Recipient.customer_id == customer.id
    ).order_by(Recipient.id.asc()).all()


@router.post("", response_model=RecipientResponse, status_code=status.HTTP_201_CREATED)
def create_recipient(
    payload: RecipientCreate,
    customer: Customer = Depends(get_current_customer),
    db: Session = Depends(get_db),
):
    now = utcnow()
    check_recipient_limit(customer, db, now)

    recipient = Recipient(
        customer_id=customer.id,
        name=payload.name.strip(),
        email=payload.email,
        phone=payload.phone,
        delivery_method=payload.delivery_method.value,
        relationship=payload.relationship,
        frequency=payload.frequency.value,
        time_of_day=payload.time_of_day.value,
        timezone=payload.timezone,
        next_delivery=compute_next_delivery(payload.frequency, payload.time_of_day, now),
        is_active=True,
        unsubscribe_token=secrets.token_urlsafe(32),
        created_at=now,
    )
    db.add(recipient)
    db.commit()
    db.refresh(recipient)
    logger.info(
        "[Recipients] Customer %s added recipient %s; first delivery %s",
        customer.id, recipient.id, recipient.next_delivery.isoformat(),
    )
    return recipient


@router.patch("/{recipient_id}", response_model=RecipientResponse)
def update_recipient(
    recipient_id: int,
    payload: RecipientUpdate,
    customer: Customer = Depends(get_current_customer),
    db: Session = Depends(get_db),
):
    recipient = _get_owned_recipient(recipient_id, customer, db)
    check_entitlement(customer, utcnow())
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("is_active") and recipient.unsubscribed_at is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="This recipient unsubscribed and cannot be reactivated"
        )

    for field_name in ("delivery_method", "frequency", "time_of_day"):
        if changes.get(field_name) is not None:
            changes[field_name] = changes[field_name].value

    delivery_method = changes.get("delivery_method") or recipient.delivery_method
    email = changes["email"] if "email" in changes else recipient.email
    phone = changes["phone"] if "phone" in changes else recipient.phone
    try:
        check_contact(DeliveryMethod(delivery_method), email, phone)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    reschedule = any(
        changes.get(key) is not None and changes[key] != getattr(recipient, key)
        for key in ("frequency", "time_of_day")
    )
    for key, value in changes.items():
        if value is None and key in ("name", "delivery_method", "frequency", "time_of_day", "is_active"):
            continue
        setattr(recipient, key, value)

    if reschedule:
        recipient.next_delivery = compute_next_delivery(recipient.frequency, recipient.time_of_day, utcnow())

    db.commit()
    db.refresh(recipient)
    return recipient


@router.delete("/{recipient_id}")
def delete_recipient(
    recipient_id: int,
    customer: Customer = Depends(get_current_customer),
    db: Session = Depends(get_db),
):
    recipient = _get_owned_recipient(recipient_id, customer, db)
    db.delete(recipient)
    db.commit()
    logger.info("[Recipients] Customer %s removed recipient %s", customer.id, recipient_id)
    return {"message": "Recipient deleted"}


@router.get("/{recipient_id}/messages", response_model=MessageHistoryResponse)
def recent_messages(
    recipient_id: int,
    customer: Customer = Depends(get_current_customer),
    db: Session = Depends(get_db),
):
    _get_owned_recipient(recipient_id, customer, db)
    messages = db.query(MessageLog).filter(
        MessageLog.recipient_id == recipient_id,
        MessageLog.customer_id == customer.id,
    ).order_by(MessageLog.sent_at.desc(), MessageLog.id.desc()).limit(HISTORY_LIMIT).all()
    return {"messages": messages}


def flowers_sent_today(customer_id: int, db: Session, now) -> int:
    """Flower sends since UTC midnight. One send logs a row per channel, so sends are counted by timestamp."""
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return db.query(func.count(distinct(MessageLog.sent_at))).filter(
        MessageLog.customer_id == customer_id,
        MessageLog.kind == "flowers",
        MessageLog.sent_at >= day_start,
        MessageLog.sent_at < day_start + timedelta(days=1),
    ).scalar() or 0


@router.post("/{recipient_id}/flowers")
async def send_flowers(
    recipient_id: int,
    payload: FlowerRequest,
    customer: Customer = Depends(get_current_customer),
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    now = utcnow()
    check_entitlement(customer, now)
    recipient = _get_owned_recipient(recipient_id, customer, db)
    _require_active(recipient)

    limit = context.settings.flowers_per_day
    if flowers_sent_today(customer.id, db, now) >= limit:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"You can send up to {limit} flowers per day. Try again tomorrow."
        )

    message = build_flower_message(payload.note)
    results = await context.dispatcher.send_now(
        recipient, message, kind="flowers", subject=FLOWER_SUBJECT, now=now
    )
    logger.info("[Flowers] Customer %s sent flowers to recipient %s", customer.id, recipient_id)
    return {
        "sent": any(r.delivered for r in results),
        "channels": [{"channel": r.channel.value, "delivered": r.delivered} for r in results],
    }
