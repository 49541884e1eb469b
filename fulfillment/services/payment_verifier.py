import logging
from dataclasses import dataclass, field
from typing import List, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.core.config import settings
from fulfillment.core.exceptions import InvalidRequestError, OrderNotFoundError
from fulfillment.models.order import Order
from fulfillment.repositories.order import OrderRepository
from fulfillment.services.orchestrator import FulfillmentOrchestrator
from fulfillment.services.payment_gateway import CheckoutVerdict

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    async def retrieve_checkout(self, checkout_reference: str) -> CheckoutVerdict: ...


@dataclass
class VerificationResult:
    paid: bool
    processor_status: str
    order: Order
    batch: List[Order] = field(default_factory=list)


class PaymentVerifier:
    """Confirms a checkout was paid and starts fulfillment for every order it covers.

    Safe to call repeatedly for the same checkout: marking paid only touches
    pending orders and dispatch skips orders that already left NotStarted.
    A verdict other than paid never mutates anything, so an order that is
    already paid stays paid.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        orchestrator: FulfillmentOrchestrator,
        bypass_enabled: bool = settings.payment_bypass_enabled,
        bypass_prefix: str = settings.payment_bypass_prefix,
        max_batch_size: int = settings.max_batch_size,
        await_generation: bool = settings.await_generation_on_verify
    ) -> None:
        self.session_maker = session_maker
        self.gateway = gateway
        self.orchestrator = orchestrator
        self.bypass_enabled = bypass_enabled
        self.bypass_prefix = bypass_prefix
        self.max_batch_size = max_batch_size
        self.await_generation = await_generation

    async def verify(self, checkout_reference: str | None, order_id: str | None) -> VerificationResult:
        reference = (checkout_reference or "").strip()
        order_id = (order_id or "").strip()
        if not reference or not order_id:
            raise InvalidRequestError("Invalid request")

        async with self.session_maker() as session:
            repository = OrderRepository(session)
            order = await repository.get_by_id(order_id)
            if not order:
                raise OrderNotFoundError(order_id)

            if self.bypass_prefix and reference.startswith(self.bypass_prefix):
                if not self.bypass_enabled:
                    logger.warning(f"Rejected bypass reference for order {order_id}: bypass is disabled")
                    raise InvalidRequestError("Invalid checkout reference")

                logger.info(f"Bypass reference for order {order_id}, skipping payment processor")
                if order.checkout_batch_id:
                    batch_ids = [o.id for o in await repository.get_batch(order.checkout_batch_id)]
                else:
                    batch_ids = [order.id]
                verdict = CheckoutVerdict(paid=True, status="paid", order_ids=batch_ids)
            else:
                verdict = await self.gateway.retrieve_checkout(reference)

            if not verdict.paid:
                logger.info(f"Checkout {reference} not paid (status: {verdict.status}), no changes made")
                return VerificationResult(False, verdict.status, order, [order])

            batch_ids = list(dict.fromkeys(verdict.order_ids or [order_id]))
            if len(batch_ids) > self.max_batch_size:
                logger.warning(f"Checkout {reference} covers {len(batch_ids)} orders, limit is {self.max_batch_size}")
                raise InvalidRequestError("Invalid checkout reference")
            if order_id not in batch_ids:
                logger.warning(f"Order {order_id} is not covered by checkout {reference}")
                raise InvalidRequestError("Invalid checkout reference")

            updated = await repository.mark_paid(batch_ids, reference)
            await session.commit()

        logger.info(f"Checkout {reference} verified as paid: {updated} of {len(batch_ids)} orders newly marked paid")

        if self.await_generation:
            await self.orchestrator.fulfil(batch_ids)
        else:
            await self.orchestrator.dispatch(batch_ids)

        async with self.session_maker() as session:
            repository = OrderRepository(session)
            batch = await repository.get_many(batch_ids)
            current = next((o for o in batch if o.id == order_id), None) or await repository.get_by_id(order_id)

        return VerificationResult(True, verdict.status, current, batch)
