import json
import logging

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from fulfillment.api.deps import get_payment_verifier
from fulfillment.core.config import settings
from fulfillment.core.exceptions import FulfillmentError, PaymentProcessorUnavailableError
from fulfillment.services.payment_gateway import parse_order_ids
from fulfillment.services.payment_verifier import PaymentVerifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None),
    verifier: PaymentVerifier = Depends(get_payment_verifier)
) -> dict[str, bool]:
    if not settings.stripe_webhook_secret:
        logger.error("Stripe webhook secret is not configured")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Webhook not configured")

    if not stripe_signature:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing signature")

    payload = (await request.body()).decode()
    try:
        stripe.WebhookSignature.verify_header(
            payload,
            stripe_signature,
            settings.stripe_webhook_secret,
            tolerance=stripe.Webhook.DEFAULT_TOLERANCE
        )
        event = json.loads(payload)
    except (stripe.SignatureVerificationError, ValueError) as e:
        logger.warning(f"Stripe signature verification failed: {e}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    event_type = event.get("type")
    logger.info(f"Verified Stripe event {event.get('id')} ({event_type})")

    if event_type != "checkout.session.completed":
        return {"received": True}

    session = event.get("data", {}).get("object", {})
    order_ids = parse_order_ids((session.get("metadata") or {}).get("report_ids"))
    if not session.get("id") or not order_ids:
        logger.info("Checkout session carries no report ids, ignoring")
        return {"received": True}

    try:
        await verifier.verify(session["id"], order_ids[0])
    except PaymentProcessorUnavailableError:
        # Stripe re-delivers on non-2xx, which retries the verification.
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service temporarily unavailable")
    except FulfillmentError as e:
        logger.error(f"Checkout session {session['id']} could not be verified: {e}")

    return {"received": True}
