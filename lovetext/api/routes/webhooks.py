"""
Stripe webhook intake.

The signature is checked against the exact raw request body, so this route
reads the bytes itself instead of letting FastAPI parse JSON. Verified
events are handed to the BillingReconciler; every verified event is
acknowledged with 200 even when its type is not handled.

Register this URL in the Stripe dashboard:
https://your-backend.com/webhooks/stripe
"""
import json
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from starlette.concurrency import run_in_threadpool

from lovetext.core.context import AppContext
from lovetext.dependencies.auth import get_context

logger = logging.getLogger(__name__)

router = APIRouter()

SIGNATURE_TOLERANCE_SECONDS = 300


def verify_stripe_signature(payload: bytes, sig_header: str | None, secret: str) -> bool:
    if not secret or not sig_header:
        return False
    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"), sig_header, secret, tolerance=SIGNATURE_TOLERANCE_SECONDS
        )
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
        logger.warning("[Stripe webhook] Signature verification failed: %s", e)
        return False
    return True


@router.post("/stripe")
async def stripe_webhook(request: Request, context: AppContext = Depends(get_context)):
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    secret = context.settings.stripe_webhook_secret

    if not secret:
        logger.error("[Stripe webhook] STRIPE_WEBHOOK_SECRET is not set; rejecting event")
    if not verify_stripe_signature(payload, sig_header, secret):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature"
        )

    try:
        event = json.loads(payload)
    except json.JSONDecodeError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")
    if not isinstance(event, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid event payload")

    event_type = event.get("type")
    logger.info("[Stripe webhook] Received %s (%s)", event_type, event.get("id"))

    try:
        result = await run_in_threadpool(context.reconciler.handle_event, event)
    except Exception:
        # The transaction has been rolled back; Stripe will redeliver.
        logger.exception("[Stripe webhook] Failed to apply %s (%s)", event_type, event.get("id"))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed"
        )

    return {"received": True, "status": result.status.value}
