import asyncio
import logging
from dataclasses import dataclass, field
from typing import List

import stripe

from fulfillment.core.config import settings
from fulfillment.core.exceptions import InvalidRequestError, PaymentProcessorUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class CheckoutVerdict:
    paid: bool
    status: str
    order_ids: List[str] = field(default_factory=list)


def parse_order_ids(raw: str | None) -> List[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


class StripePaymentGateway:
    """Reads the settlement verdict of a Stripe Checkout Session.

    Only ``payment_status == "paid"`` counts as paid. The orders a session
    covers travel in its ``report_ids`` metadata as a comma separated list.
    """

    def __init__(self, api_key: str) -> None:
        self.api_key = api_key

    async def retrieve_checkout(self, checkout_reference: str) -> CheckoutVerdict:
        if not self.api_key:
            logger.error("Stripe secret key is not configured")
            raise PaymentProcessorUnavailableError("Payment processor is not configured")

        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.retrieve,
                checkout_reference,
                api_key=self.api_key
            )
        except stripe.InvalidRequestError as e:
            logger.warning(f"Stripe rejected checkout reference {checkout_reference}: {e}")
            raise InvalidRequestError("Invalid checkout reference") from e
        except stripe.StripeError as e:
            logger.error(f"Stripe unavailable while verifying {checkout_reference}: {e}", exc_info=True)
            raise PaymentProcessorUnavailableError("Payment processor unavailable") from e

        status = getattr(session, "payment_status", None) or "unknown"
        metadata = getattr(session, "metadata", None)
        raw_ids = getattr(metadata, "report_ids", None) if metadata is not None else None

        return CheckoutVerdict(
            paid=status == "paid",
            status=status,
            order_ids=parse_order_ids(raw_ids)
        )


payment_gateway = StripePaymentGateway(settings.stripe_secret_key)
