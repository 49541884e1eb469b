import asyncio
import logging
from typing import Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.core.clock import as_utc, utcnow
from fulfillment.core.config import settings
from fulfillment.models.order import GenerationState
from fulfillment.repositories.order import OrderRepository
from fulfillment.repositories.outbox import OutboxRepository
from fulfillment.schemas.events import GenerateReportCommand
from fulfillment.services.coordinator import (
    GENERATE_REPORT,
    AttemptOutcome,
    AttemptResult,
    GenerationCoordinator,
)

logger = logging.getLogger(__name__)


class FulfillmentOrchestrator:
    """Fans a batch of paid orders out to the generation coordinator.

    ``dispatch`` queues the first attempt of every order and returns;
    ``fulfil`` runs the same coordinator in-process and waits until every
    order is terminal. Orders are independent: one order's failure never
    touches its siblings.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        coordinator: GenerationCoordinator,
        outbox_max_retries: int = settings.outbox_max_retries
    ) -> None:
        self.session_maker = session_maker
        self.coordinator = coordinator
        self.outbox_max_retries = outbox_max_retries

    async def dispatch(self, order_ids: Sequence[str]) -> List[str]:
        dispatched: List[str] = []

        async with self.session_maker() as session:
            orders = await OrderRepository(session).get_many(list(dict.fromkeys(order_ids)))
            outbox_repository = OutboxRepository(session)

            for order in orders:
                if not order.is_paid:
                    logger.warning(f"Not dispatching unpaid order {order.id}")
                    continue
                if order.generation_state != GenerationState.NOT_STARTED.value:
                    logger.info(f"Order {order.id} is {order.generation_state}, nothing to dispatch")
                    continue
                if await outbox_repository.has_pending(order.id, GENERATE_REPORT, self.outbox_max_retries):
                    logger.info(f"Order {order.id} already has a pending dispatch")
                    continue

                await outbox_repository.enqueue(
                    order.id,
                    GENERATE_REPORT,
                    GenerateReportCommand(order_id=order.id, attempt=1)
                )
                dispatched.append(order.id)

            await session.commit()

        logger.info(f"Dispatched {len(dispatched)} of {len(order_ids)} orders for generation")
        return dispatched

    async def fulfil(self, order_ids: Sequence[str]) -> Dict[str, Optional[AttemptResult]]:
        unique_ids = list(dict.fromkeys(order_ids))
        results = await asyncio.gather(
            *(self._drive(order_id) for order_id in unique_ids),
            return_exceptions=True
        )

        outcomes: Dict[str, Optional[AttemptResult]] = {}
        for order_id, result in zip(unique_ids, results):
            if isinstance(result, BaseException):
                logger.error(f"Fulfillment of order {order_id} raised: {result}", exc_info=result)
                outcomes[order_id] = None
            else:
                outcomes[order_id] = result
        return outcomes

    async def _drive(self, order_id: str) -> AttemptResult:
        attempt = await self._next_attempt(order_id)
        if attempt is None:
            return AttemptResult(order_id, AttemptOutcome.SKIPPED, 0)

        while True:
            result = await self.coordinator.run_attempt(order_id, attempt, redispatch=False)
            if result.outcome != AttemptOutcome.RETRY_SCHEDULED:
                return result

            await self._sleep_until(result.retry_at)
            attempt = result.attempt

    async def _next_attempt(self, order_id: str) -> Optional[int]:
        async with self.session_maker() as session:
            order = await OrderRepository(session).get_by_id(order_id)

        if not order or not order.is_paid:
            logger.warning(f"Order {order_id} is missing or unpaid, not fulfilling")
            return None

        if order.is_terminal:
            logger.info(f"Order {order_id} is already {order.generation_state}, nothing to fulfil")
            return None
        if order.generation_state == GenerationState.NOT_STARTED.value:
            return 1
        if order.generation_state == GenerationState.RETRY_SCHEDULED.value:
            await self._sleep_until(order.retry_at)
            return order.generation_attempt

        logger.info(f"Order {order_id} is being generated by another worker")
        return None

    @staticmethod
    async def _sleep_until(when) -> None:
        if when is None:
            return
        delay = (as_utc(when) - utcnow()).total_seconds()
        if delay > 0:
            await asyncio.sleep(delay)
