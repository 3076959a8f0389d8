"""
Billing API Endpoints

Inbound Stripe webhook endpoint. Verification failures are answered with 400
so the gateway stops retrying; retryable processing failures with 500 so it
retries; everything else, including duplicates and data errors, with 200.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel

from ..billing.exceptions import WebhookProcessingException, WebhookVerificationException
from ..billing.webhook_handler import WebhookEventHandler, create_webhook_handler

logger = logging.getLogger(__name__)
router = APIRouter(tags=["billing"])


class WebhookAck(BaseModel):
    """Acknowledgement returned to the gateway"""
    received: bool = True
    status: str
    event_id: Optional[str] = None


def get_webhook_handler(request: Request) -> WebhookEventHandler:
    """Webhook handler dependency; built on first use unless the app provides one"""
    handler = getattr(request.app.state, "webhook_handler", None)
    if handler is None:
        handler = create_webhook_handler()
        request.app.state.webhook_handler = handler
    return handler


@router.post("/webhooks/stripe", response_model=WebhookAck)
async def handle_stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="stripe-signature"),
    webhook_handler: WebhookEventHandler = Depends(get_webhook_handler)
) -> Dict[str, Any]:
    """
    Handle Stripe webhook events.

    This endpoint receives and processes Stripe webhook events for
    subscription updates and payment notifications.
    """
    # Read raw body; the signature covers the exact bytes
    body = await request.body()
    payload = body.decode('utf-8')

    if not stripe_signature:
        logger.error("Missing Stripe signature header")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing stripe-signature header"
        )

    try:
        result = await webhook_handler.handle_webhook(payload, stripe_signature)

    except WebhookVerificationException as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)

    except WebhookProcessingException as e:
        logger.error(f"Webhook processing failed: {e}")
        # Return 500 to trigger Stripe retry
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed"
        )

    logger.info(f"Webhook {result.get('event_id')} handled: {result['status']}")
    return {"received": True, "status": result["status"], "event_id": result.get("event_id")}
