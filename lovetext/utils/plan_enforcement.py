from datetime import datetime
from typing import List

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from lovetext.core.entitlement import is_entitled
from lovetext.core.plan_limits import UNLIMITED, parse_plan, recipient_limit
from lovetext.models.customer import Customer
from lovetext.models.recipient import Recipient


def count_recipients(customer_id: int, db: Session) -> int:
    return db.query(Recipient).filter(Recipient.customer_id == customer_id).count()


def check_entitlement(customer: Customer, now: datetime) -> bool:
    """
    Raise 403 unless the customer currently has a trial or subscription.
    """
    if not is_entitled(customer, now):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Upgrade required: a subscription or active free trial is needed for this.",
        )
    return True


def check_recipient_limit(customer: Customer, db: Session, now: datetime) -> bool:
    """
    Check if the customer can add another recipient based on their plan.
    Raises HTTPException if not entitled or the limit is reached.
    """
    check_entitlement(customer, now)

    plan = parse_plan(customer.current_plan)
    max_recipients = recipient_limit(plan)
    if max_recipients == UNLIMITED:
        return True

    current = count_recipients(customer.id, db)
    if current >= max_recipients:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=(
                f"Upgrade required: your {plan.value} plan allows {max_recipients} recipient(s). "
                "Upgrade to add more."
            ),
        )
    return True


def enforce_recipient_limit(customer_id: int, plan, db: Session) -> List[int]:
    """
    Delete recipients beyond the plan's limit after a downgrade.

    Eviction order is oldest first (lowest id): the most recently added
    recipients are the ones kept. Returns the deleted ids. Does not commit;
    the caller owns the transaction.
    """
    max_recipients = recipient_limit(plan)
    if max_recipients == UNLIMITED:
        return []

    ids = [
        row.id
        for row in db.query(Recipient.id)
        .filter(Recipient.customer_id == customer_id)
        .order_by(Recipient.id.asc())
        .all()
    ]
    excess = len(ids) - max_recipients
    if excess <= 0:
        return []

    evicted = ids[:excess]
    db.query(Recipient).filter(Recipient.id.in_(evicted)).delete(synchronize_session=False)
    return evicted


def delete_all_recipients(customer_id: int, db: Session) -> int:
    """Cascade removal used when entitlement is revoked. Does not commit."""
    return (
        db.query(Recipient)
        .filter(Recipient.customer_id == customer_id)
        .delete(synchronize_session=False)
    )
