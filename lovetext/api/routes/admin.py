import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from lovetext.core.context import AppContext
from lovetext.dependencies.auth import get_context, get_db, require_admin
from lovetext.models.customer import Customer
from lovetext.models.recipient import Recipient

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_admin)])


@router.delete("/customers/{customer_id}")
def delete_customer(customer_id: int, db: Session = Depends(get_db)):
    """Hard-delete a customer; recipients and message logs go with it."""
    customer = db.get(Customer, customer_id)
    if not customer:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Customer not found"
        )
    recipient_count = len(customer.recipients)
    db.delete(customer)
    db.commit()
    logger.info("[Admin] Deleted customer %s and %s recipient(s)", customer_id, recipient_count)
    return {"message": "Customer deleted", "recipients_deleted": recipient_count}


@router.post("/recipients/{recipient_id}/send-now")
async def send_now(
    recipient_id: int,
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    """Send a composed note immediately. The delivery cursor is left where it is."""
    recipient = db.get(Recipient, recipient_id)
    if not recipient:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Recipient not found"
        )
    if not recipient.is_active:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Recipient is inactive or has unsubscribed"
        )
    message = context.composer.compose(recipient.name, recipient.relationship)
    results = await context.dispatcher.send_now(recipient, message, kind="manual")
    logger.info("[Admin] Manual send to recipient %s", recipient_id)
    return {
        "message": message,
        "channels": [{"channel": r.channel.value, "delivered": r.delivered} for r in results],
    }


@router.post("/sweep")
async def run_sweep(context: AppContext = Depends(get_context)):
    revoked = await run_in_threadpool(context.reconciler.expire_lapsed)
    return {"revoked_customers": revoked}
