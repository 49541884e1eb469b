import json
from datetime import timedelta

import pytest
from sqlalchemy import select

from fulfillment.core.broker import broker
from fulfillment.core.clock import utcnow
from fulfillment.models.outbox import OutboxMessage
from fulfillment.repositories.outbox import OutboxRepository
from fulfillment.schemas.events import GenerateReportCommand
from fulfillment.services.coordinator import GENERATE_REPORT
from fulfillment.services.outbox_processor import OutboxProcessor
from fulfillment.services.recovery import RecoverySweeper


async def enqueue(session_maker, order_id: str, attempt: int = 1, available_at=None) -> OutboxMessage:
    async with session_maker() as session:
        message = await OutboxRepository(session).enqueue(
            order_id,
            GENERATE_REPORT,
            GenerateReportCommand(order_id=order_id, attempt=attempt),
            available_at=available_at
        )
        await session.commit()
        return message


async def reload(session_maker, message_id: int) -> OutboxMessage:
    async with session_maker() as session:
        return await OutboxRepository(session).get_by_id(message_id)


@pytest.mark.asyncio
async def test_outbox_processor_publishes_messages(session_maker, mock_broker):
    message = await enqueue(session_maker, "order-123")

    processor = OutboxProcessor(session_maker, poll_interval=1, batch_size=10, max_retries=3)
    await processor._process_batch()

    assert len(mock_broker) == 1
    published = mock_broker[0]
    assert published["routing_key"] == "report.generate"
    assert json.loads(published["message"]) == {"order_id": "order-123", "attempt": 1}

    message = await reload(session_maker, message.id)
    assert message.processed_at is not None
    assert message.error_message is None


@pytest.mark.asyncio
async def test_outbox_processor_waits_for_available_at(session_maker, mock_broker):
    message = await enqueue(session_maker, "order-123", attempt=2, available_at=utcnow() + timedelta(minutes=5))

    processor = OutboxProcessor(session_maker, poll_interval=1, batch_size=10, max_retries=3)
    await processor._process_batch()

    assert mock_broker == []
    assert (await reload(session_maker, message.id)).processed_at is None


@pytest.mark.asyncio
async def test_outbox_processor_handles_publish_failure(session_maker, monkeypatch):
    async def mock_publish_fail(routing_key: str, message: bytes, message_id: str | None = None):
        raise Exception("Broker connection failed")

    monkeypatch.setattr(broker, "publish", mock_publish_fail)

    message = await enqueue(session_maker, "order-456")

    processor = OutboxProcessor(session_maker, poll_interval=1, batch_size=10, max_retries=3)
    await processor._process_batch()

    message = await reload(session_maker, message.id)
    assert message.processed_at is None
    assert message.retry_count == 1
    assert "Broker connection failed" in message.error_message


@pytest.mark.asyncio
async def test_outbox_processor_skips_exhausted_messages(session_maker, mock_broker):
    exhausted = await enqueue(session_maker, "order-789")
    async with session_maker() as session:
        stored = await OutboxRepository(session).get_by_id(exhausted.id)
        stored.retry_count = 3
        await session.commit()
    fresh = await enqueue(session_maker, "order-790")

    processor = OutboxProcessor(session_maker, poll_interval=1, batch_size=1, max_retries=3)
    await processor._process_batch()

    assert [json.loads(m["message"])["order_id"] for m in mock_broker] == ["order-790"]
    assert (await reload(session_maker, exhausted.id)).processed_at is None
    assert (await reload(session_maker, fresh.id)).processed_at is not None


@pytest.mark.asyncio
async def test_outbox_processor_runs_recovery_sweep(session_maker, coordinator, mock_broker, monkeypatch):
    sweeper = RecoverySweeper(session_maker, coordinator, stalled_after_seconds=600)
    sweeps = []

    async def counting_sweep():
        sweeps.append(1)
        return {"abandoned": 0, "requeued": 0}

    monkeypatch.setattr(sweeper, "sweep", counting_sweep)

    processor = OutboxProcessor(session_maker, sweeper=sweeper, sweep_interval=3600)
    await processor._maybe_sweep()
    await processor._maybe_sweep()

    assert sweeps == [1]


@pytest.mark.asyncio
async def test_cleanup_old_messages(session_maker, mock_broker):
    old = await enqueue(session_maker, "order-old")
    recent = await enqueue(session_maker, "order-recent")
    async with session_maker() as session:
        repository = OutboxRepository(session)
        (await repository.get_by_id(old.id)).processed_at = utcnow() - timedelta(hours=48)
        (await repository.get_by_id(recent.id)).processed_at = utcnow()
        await session.commit()

    processor = OutboxProcessor(session_maker)
    deleted = await processor.cleanup_old_messages(older_than_hours=24)

    assert deleted == 1
    async with session_maker() as session:
        remaining = (await session.execute(select(OutboxMessage.aggregate_id))).scalars().all()
    assert remaining == ["order-recent"]


@pytest.mark.asyncio
async def test_dead_dispatch_does_not_block_new_dispatch(session_maker, orchestrator, make_order, monkeypatch):
    order = await make_order(paid=True)
    published = []
    broker_up = False

    async def flaky_publish(routing_key: str, message: bytes, message_id: str | None = None):
        if not broker_up:
            raise ConnectionError("Broker connection lost")
        published.append(json.loads(message))

    monkeypatch.setattr(broker, "publish", flaky_publish)

    assert await orchestrator.dispatch([order.id]) == [order.id]
    processor = OutboxProcessor(session_maker, poll_interval=1, batch_size=10, max_retries=3)
    for _ in range(3):
        await processor._process_batch()

    broker_up = True
    await processor._process_batch()
    assert published == []

    assert await orchestrator.dispatch([order.id]) == [order.id]
    await processor._process_batch()

    assert published == [{"order_id": order.id, "attempt": 1}]


@pytest.mark.asyncio
async def test_has_pending_ignores_dead_rows(session_maker):
    message = await enqueue(session_maker, "order-dead")
    async with session_maker() as session:
        repository = OutboxRepository(session)
        (await repository.get_by_id(message.id)).retry_count = 3
        await session.commit()

    async with session_maker() as session:
        repository = OutboxRepository(session)
        assert await repository.has_pending("order-dead", GENERATE_REPORT)
        assert not await repository.has_pending("order-dead", GENERATE_REPORT, max_retries=3)


@pytest.mark.asyncio
async def test_published_messages_carry_outbox_id(session_maker, mock_broker):
    message = await enqueue(session_maker, "order-123")

    await OutboxProcessor(session_maker)._process_batch()

    assert mock_broker[0]["message_id"] == f"outbox-{message.id}"
