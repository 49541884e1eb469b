import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.core.clock import utcnow
from fulfillment.core.config import settings
from fulfillment.core.exceptions import OrderNotFoundError
from fulfillment.models.order import GenerationState, Order
from fulfillment.repositories.order import OrderRepository
from fulfillment.repositories.outbox import OutboxRepository
from fulfillment.schemas.events import GenerateReportCommand
from fulfillment.services.notification import NotificationTrigger

logger = logging.getLogger(__name__)

GENERATE_REPORT = "report.generate"


class ReportGenerator(Protocol):
    async def generate(self, order: Order) -> dict: ...


class AttemptOutcome(str, Enum):
    SKIPPED = "skipped"
    GENERATED = "generated"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"


@dataclass
class AttemptResult:
    order_id: str
    outcome: AttemptOutcome
    attempt: int
    retry_at: Optional[datetime] = None
    error: Optional[str] = None


class GenerationCoordinator:
    """Runs one generation attempt for one paid order.

    An attempt is claimed with a conditional update before the generator is
    called, so concurrent triggers for the same order cannot both generate.
    A failed attempt below ``max_attempts`` leaves the order RetryScheduled;
    with ``redispatch`` the next attempt is written to the outbox in the same
    transaction, available at ``retry_at``. Otherwise the caller is expected
    to run it.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        generator: ReportGenerator,
        max_attempts: int = settings.max_generation_attempts,
        retry_delay_seconds: float = settings.retry_delay_seconds
    ) -> None:
        self.session_maker = session_maker
        self.generator = generator
        self.max_attempts = max_attempts
        self.retry_delay = timedelta(seconds=retry_delay_seconds)

    async def run_attempt(self, order_id: str, attempt: int, redispatch: bool = True) -> AttemptResult:
        async with self.session_maker() as session:
            repository = OrderRepository(session)
            order = await repository.get_by_id(order_id)
            if not order:
                raise OrderNotFoundError(order_id)

            if not order.is_paid:
                logger.warning(f"Order {order_id} is not paid, refusing to generate")
                return AttemptResult(order_id, AttemptOutcome.SKIPPED, attempt)

            if order.generation_state not in (
                GenerationState.NOT_STARTED.value,
                GenerationState.RETRY_SCHEDULED.value
            ):
                logger.info(
                    f"Order {order_id} is {order.generation_state}, skipping attempt {attempt} (idempotency)"
                )
                return AttemptResult(order_id, AttemptOutcome.SKIPPED, order.generation_attempt)

            claimed = await repository.claim_generation(order_id, attempt, utcnow())
            if not claimed:
                await session.rollback()
                logger.info(f"Attempt {attempt} for order {order_id} was claimed elsewhere, skipping")
                return AttemptResult(order_id, AttemptOutcome.SKIPPED, attempt)

            await session.commit()

        logger.info(f"Generating report for order {order_id}, attempt {attempt}/{self.max_attempts}")

        try:
            content = await self.generator.generate(order)
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.error(
                f"Generation attempt {attempt} failed for order {order_id}: {error}",
                extra={"order_id": order_id}
            )
            return await self.record_failure(order_id, attempt, error, redispatch)

        return await self._record_success(order_id, attempt, content)

    async def record_failure(self, order_id: str, attempt: int, error: str, redispatch: bool = True) -> AttemptResult:
        async with self.session_maker() as session:
            repository = OrderRepository(session)

            if attempt < self.max_attempts:
                retry_at = utcnow() + self.retry_delay
                applied = await repository.schedule_retry(order_id, attempt, error, retry_at)
                if not applied:
                    await session.rollback()
                    logger.warning(f"Order {order_id} left attempt {attempt} before its failure was recorded")
                    return AttemptResult(order_id, AttemptOutcome.SKIPPED, attempt, error=error)

                if redispatch:
                    await OutboxRepository(session).enqueue(
                        order_id,
                        GENERATE_REPORT,
                        GenerateReportCommand(order_id=order_id, attempt=attempt + 1),
                        available_at=retry_at
                    )
                await session.commit()

                logger.info(
                    f"Scheduled retry {attempt + 1} for order {order_id} at {retry_at.isoformat()}",
                    extra={"order_id": order_id}
                )
                return AttemptResult(order_id, AttemptOutcome.RETRY_SCHEDULED, attempt + 1, retry_at, error)

            applied = await repository.fail_generation(order_id, attempt, error)
            if not applied:
                await session.rollback()
                logger.warning(f"Order {order_id} left attempt {attempt} before its failure was recorded")
                return AttemptResult(order_id, AttemptOutcome.SKIPPED, attempt, error=error)
            await session.commit()

        logger.error(
            f"Order {order_id} failed after {attempt} attempts, manual remediation required: {error}",
            extra={"order_id": order_id}
        )
        return AttemptResult(order_id, AttemptOutcome.FAILED, attempt, error=error)

    async def _record_success(self, order_id: str, attempt: int, content: dict) -> AttemptResult:
        async with self.session_maker() as session:
            applied = await OrderRepository(session).complete_generation(order_id, attempt, content)
            if not applied:
                await session.rollback()
                logger.warning(f"Order {order_id} left attempt {attempt} before its result was recorded, discarding")
                return AttemptResult(order_id, AttemptOutcome.SKIPPED, attempt)

            await NotificationTrigger(OutboxRepository(session)).enqueue(order_id, attempt)
            await session.commit()

        logger.info(
            f"Report generated for order {order_id} on attempt {attempt}",
            extra={"order_id": order_id}
        )
        return AttemptResult(order_id, AttemptOutcome.GENERATED, attempt)
