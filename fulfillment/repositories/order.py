from datetime import datetime, timezone
from typing import List, Optional, Sequence
from sqlalchemy import select, update, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.models.order import Order, PaymentStatus, GenerationState


class OrderRepository:
    """Persistence for orders.

    Every generation-state transition is a conditional UPDATE that names the
    state (and attempt) it expects to leave. The return value says whether this
    caller performed the transition; a ``False`` means another worker got there
    first and the caller must not act on the order.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(self, order: Order) -> Order:
        self.session.add(order)
        await self.session.flush()
        await self.session.refresh(order)
        return order

    async def get_by_id(self, order_id: str) -> Optional[Order]:
        result = await self.session.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_many(self, order_ids: Sequence[str]) -> List[Order]:
        if not order_ids:
            return []
        result = await self.session.execute(
            select(Order)
            .where(Order.id.in_(list(order_ids)))
            .order_by(Order.created_at, Order.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_batch(self, checkout_batch_id: str) -> List[Order]:
        result = await self.session.execute(
            select(Order)
            .where(Order.checkout_batch_id == checkout_batch_id)
            .order_by(Order.created_at, Order.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_failed(self, limit: int = 100) -> List[Order]:
        result = await self.session.execute(
            select(Order)
            .where(Order.generation_state == GenerationState.FAILED.value)
            .order_by(Order.updated_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def mark_paid(self, order_ids: Sequence[str], checkout_reference: str | None) -> int:
        if not order_ids:
            return 0
        result = await self.session.execute(
            update(Order)
            .where(Order.id.in_(list(order_ids)))
            .where(Order.payment_status == PaymentStatus.PENDING.value)
            .values(
                payment_status=PaymentStatus.PAID.value,
                checkout_reference=checkout_reference,
                updated_at=datetime.now(timezone.utc)
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def claim_generation(self, order_id: str, attempt: int, started_at: datetime) -> bool:
        if attempt == 1:
            expected = and_(
                Order.generation_state == GenerationState.NOT_STARTED.value,
                Order.generation_attempt == 0
            )
        else:
            expected = and_(
                Order.generation_state == GenerationState.RETRY_SCHEDULED.value,
                Order.generation_attempt == attempt
            )

        return await self._transition(
            order_id,
            and_(expected, Order.payment_status == PaymentStatus.PAID.value),
            generation_state=GenerationState.GENERATING.value,
            generation_attempt=attempt,
            generation_started_at=started_at,
            retry_at=None
        )

    async def complete_generation(self, order_id: str, attempt: int, content: dict) -> bool:
        return await self._transition(
            order_id,
            self._generating(attempt),
            generation_state=GenerationState.GENERATED.value,
            report_content=content,
            last_error=None,
            retry_at=None
        )

    async def schedule_retry(self, order_id: str, attempt: int, error: str, retry_at: datetime) -> bool:
        return await self._transition(
            order_id,
            self._generating(attempt),
            generation_state=GenerationState.RETRY_SCHEDULED.value,
            generation_attempt=attempt + 1,
            last_error=error,
            retry_at=retry_at
        )

    async def fail_generation(self, order_id: str, attempt: int, error: str) -> bool:
        return await self._transition(
            order_id,
            self._generating(attempt),
            generation_state=GenerationState.FAILED.value,
            generation_attempt=attempt,
            last_error=error,
            retry_at=None
        )

    async def claim_notification(self, order_id: str, notified_at: datetime) -> bool:
        result = await self.session.execute(
            update(Order)
            .where(Order.id == order_id)
            .where(Order.generation_state == GenerationState.GENERATED.value)
            .where(Order.notified_at.is_(None))
            .values(notified_at=notified_at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def release_notification(self, order_id: str, notified_at: datetime) -> bool:
        result = await self.session.execute(
            update(Order)
            .where(Order.id == order_id)
            .where(Order.notified_at == notified_at)
            .values(notified_at=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def find_stalled(self, started_before: datetime, limit: int = 100) -> List[Order]:
        result = await self.session.execute(
            select(Order)
            .where(Order.generation_state == GenerationState.GENERATING.value)
            .where(Order.generation_started_at < started_before)
            .order_by(Order.generation_started_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_overdue_retries(self, due_before: datetime, limit: int = 100) -> List[Order]:
        result = await self.session.execute(
            select(Order)
            .where(Order.generation_state == GenerationState.RETRY_SCHEDULED.value)
            .where(or_(Order.retry_at.is_(None), Order.retry_at < due_before))
            .order_by(Order.retry_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_undispatched(self, paid_before: datetime, limit: int = 100) -> List[Order]:
        result = await self.session.execute(
            select(Order)
            .where(Order.payment_status == PaymentStatus.PAID.value)
            .where(Order.generation_state == GenerationState.NOT_STARTED.value)
            .where(Order.updated_at < paid_before)
            .order_by(Order.updated_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    def _generating(attempt: int):
        return and_(
            Order.generation_state == GenerationState.GENERATING.value,
            Order.generation_attempt == attempt
        )

    async def _transition(self, order_id: str, expected, **values) -> bool:
        values["updated_at"] = datetime.now(timezone.utc)
        result = await self.session.execute(
            update(Order)
            .where(Order.id == order_id)
            .where(expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
