from datetime import datetime, timedelta, timezone
from typing import List, Optional
from pydantic import BaseModel
from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.models.outbox import OutboxMessage


class OutboxRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(self, message: OutboxMessage) -> OutboxMessage:
        self.session.add(message)
        await self.session.flush()
        await self.session.refresh(message)
        return message

    async def enqueue(
        self,
        aggregate_id: str,
        event_type: str,
        payload: BaseModel,
        available_at: datetime | None = None,
        aggregate_type: str = "Order"
    ) -> OutboxMessage:
        now = datetime.now(timezone.utc)
        message = OutboxMessage(
            aggregate_id=aggregate_id,
            aggregate_type=aggregate_type,
            event_type=event_type,
            payload=payload.model_dump_json(),
            created_at=now,
            available_at=available_at or now
        )
        return await self.create(message)

    async def get_due_messages(
        self,
        now: datetime,
        limit: int = 100,
        max_retries: int | None = None
    ) -> List[OutboxMessage]:
        query = (
            select(OutboxMessage)
            .where(OutboxMessage.processed_at.is_(None))
            .where(OutboxMessage.available_at <= now)
        )
        if max_retries is not None:
            query = query.where(OutboxMessage.retry_count < max_retries)

        result = await self.session.execute(
            query
            .order_by(OutboxMessage.available_at, OutboxMessage.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def has_pending(self, aggregate_id: str, event_type: str, max_retries: int | None = None) -> bool:
        # Rows that used up their publish retries are dead and do not count.
        query = (
            select(OutboxMessage.id)
            .where(OutboxMessage.aggregate_id == aggregate_id)
            .where(OutboxMessage.event_type == event_type)
            .where(OutboxMessage.processed_at.is_(None))
        )
        if max_retries is not None:
            query = query.where(OutboxMessage.retry_count < max_retries)

        result = await self.session.execute(query.limit(1))
        return result.first() is not None

    async def mark_as_processed(self, message: OutboxMessage) -> OutboxMessage:
        message.processed_at = datetime.now(timezone.utc)
        message.error_message = None
        await self.session.flush()
        await self.session.refresh(message)
        return message

    async def mark_as_failed(self, message: OutboxMessage, error: str) -> OutboxMessage:
        message.retry_count += 1
        message.error_message = error
        await self.session.flush()
        await self.session.refresh(message)
        return message

    async def get_by_id(self, message_id: int) -> Optional[OutboxMessage]:
        result = await self.session.execute(
            select(OutboxMessage).where(OutboxMessage.id == message_id)
        )
        return result.scalar_one_or_none()

    async def delete_processed_messages(self, older_than_hours: int = 24) -> int:
        cutoff_time = datetime.now(timezone.utc) - timedelta(hours=older_than_hours)

        result = await self.session.execute(
            delete(OutboxMessage)
            .where(OutboxMessage.processed_at.isnot(None))
            .where(OutboxMessage.processed_at < cutoff_time)
        )
        await self.session.flush()
        return result.rowcount
