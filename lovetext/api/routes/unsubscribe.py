import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import HTMLResponse
from sqlalchemy.orm import Session

from lovetext.dependencies.auth import get_db
from lovetext.models.recipient import Recipient
from lovetext.utils.clock import utcnow

logger = logging.getLogger(__name__)

router = APIRouter()

UNSUBSCRIBED_PAGE = """<!DOCTYPE html>
<html>
  <body style="font-family: Arial, sans-serif; text-align: center; padding: 40px;">
    <h2>You have been unsubscribed</h2>
    <p>You will not receive any more love notes from this sender.</p>
  </body>
</html>
"""


@router.get("/{token}", response_class=HTMLResponse)
def unsubscribe(token: str, db: Session = Depends(get_db)):
    """Public link from every message footer. Deactivates the recipient; repeat clicks are harmless."""
    recipient = db.query(Recipient).filter(Recipient.unsubscribe_token == token).first()
    if not recipient:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Unsubscribe link not found"
        )
    if recipient.is_active:
        recipient.is_active = False
        recipient.unsubscribed_at = utcnow()
        db.commit()
        logger.info("[Unsubscribe] Recipient %s deactivated", recipient.id)
    return HTMLResponse(UNSUBSCRIBED_PAGE)
