"""Webhook Routes - Stripe billing events.

POST /billing/webhooks/provider - Primary provider webhook endpoint
POST /api/webhooks/stripe - Alias (Stripe may be configured with this URL)

Status codes tell Stripe whether to redeliver:
- 200: processed, duplicate, stale or ignored (do not retry)
- 400: bad signature or malformed event (nothing recorded)
- 500/503: processing failed (event recorded unprocessed, Stripe retries)
"""
from fastapi import APIRouter, HTTPException, Request, Header, status
from typing import Optional
from middleware import get_billing_engine
from routes.billing import billing_http_exception
from services.billing_errors import BillingError, InvalidSignature, ProcessingFailed
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


async def _handle_stripe_webhook(request: Request, signature: Optional[str]):
    engine = get_billing_engine(request)
    payload = await request.body()

    try:
        result = await engine.handle_webhook(payload, signature)
    except InvalidSignature as e:
        logger.warning(f"Stripe webhook rejected: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")
    except ProcessingFailed as e:
        logger.error(f"Webhook {e.event_id} failed (retryable={e.retryable}): {e.error}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Processing failed for event {e.event_id}",
        )
    except BillingError as e:
        raise billing_http_exception(e)

    return {"status": "received", **result.model_dump(mode="json")}


@router.post("/billing/webhooks/provider")
async def provider_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    x_signature: Optional[str] = Header(None, alias="X-Signature"),
):
    """Handle Stripe webhooks at /billing/webhooks/provider"""
    return await _handle_stripe_webhook(request, stripe_signature or x_signature)


@router.post("/api/webhooks/stripe")
async def stripe_webhook_alias(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
):
    """Handle Stripe webhooks at /api/webhooks/stripe (alias)"""
    return await _handle_stripe_webhook(request, stripe_signature)
