import logging
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.core.clock import utcnow
from fulfillment.core.config import settings
from fulfillment.repositories.order import OrderRepository
from fulfillment.repositories.outbox import OutboxRepository
from fulfillment.schemas.events import GenerateReportCommand
from fulfillment.services.coordinator import GENERATE_REPORT, GenerationCoordinator

logger = logging.getLogger(__name__)


class RecoverySweeper:
    """Picks up orders whose worker went away mid-chain.

    A Generating attempt older than ``stalled_after_seconds`` is recorded as a
    failed attempt and counts against the retry limit. A RetryScheduled order
    past its ``retry_at`` by the same margin with no queued dispatch gets its
    next attempt queued again, and so does a paid NotStarted order whose first
    dispatch never made it onto the bus.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        coordinator: GenerationCoordinator,
        stalled_after_seconds: float,
        outbox_max_retries: int = settings.outbox_max_retries
    ) -> None:
        self.session_maker = session_maker
        self.coordinator = coordinator
        self.stalled_after = timedelta(seconds=stalled_after_seconds)
        self.outbox_max_retries = outbox_max_retries

    async def sweep(self) -> dict[str, int]:
        cutoff = utcnow() - self.stalled_after

        async with self.session_maker() as session:
            repository = OrderRepository(session)
            stalled = [(o.id, o.generation_attempt) for o in await repository.find_stalled(cutoff)]
            overdue = [(o.id, o.generation_attempt) for o in await repository.find_overdue_retries(cutoff)]
            overdue += [(o.id, 1) for o in await repository.find_undispatched(cutoff)]

        abandoned = 0
        for order_id, attempt in stalled:
            logger.warning(f"Generation attempt {attempt} for order {order_id} stalled, recording as failed")
            await self.coordinator.record_failure(
                order_id,
                attempt,
                f"Generation attempt abandoned after {self.stalled_after.total_seconds():g}s"
            )
            abandoned += 1

        requeued = 0
        async with self.session_maker() as session:
            outbox_repository = OutboxRepository(session)
            for order_id, attempt in overdue:
                if await outbox_repository.has_pending(order_id, GENERATE_REPORT, self.outbox_max_retries):
                    continue
                await outbox_repository.enqueue(
                    order_id,
                    GENERATE_REPORT,
                    GenerateReportCommand(order_id=order_id, attempt=attempt)
                )
                requeued += 1
                logger.warning(f"Re-queued attempt {attempt} for order {order_id}")
            await session.commit()

        return {"abandoned": abandoned, "requeued": requeued}
