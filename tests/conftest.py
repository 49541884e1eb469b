import os
import secrets
import tempfile
import uuid
from datetime import datetime, timezone

_test_dir = tempfile.mkdtemp(prefix="fulfillment-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_test_dir}/app.db"
os.environ["RETRY_DELAY_SECONDS"] = "0"
os.environ["PAYMENT_BYPASS_ENABLED"] = "true"
os.environ["OPERATOR_TOKEN"] = "test-operator-token"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["EMAIL_API_KEY"] = ""

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import NullPool

from fulfillment.main import app
from fulfillment.api.deps import get_generator, get_payment_gateway
from fulfillment.core.broker import broker
from fulfillment.core.database import Base, get_db, get_session_maker
from fulfillment.core.exceptions import GenerationError, InvalidRequestError, NotificationError
from fulfillment.models.order import GenerationState, Order, PaymentStatus
from fulfillment.models.outbox import OutboxMessage
from fulfillment.services.coordinator import GenerationCoordinator
from fulfillment.services.orchestrator import FulfillmentOrchestrator


TEST_DATABASE_URL = f"sqlite+aiosqlite:///{_test_dir}/test.db"

test_engine = create_async_engine(
    TEST_DATABASE_URL,
    poolclass=NullPool,
    echo=False
)

test_async_session_maker = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False
)


class FakeGenerator:
    """Fails the first ``failures[pet_name]`` calls for a pet (every call when negative)."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.failures: dict[str, int] = {}

    async def generate(self, order: Order) -> dict:
        self.calls.append(order.id)
        remaining = self.failures.get(order.pet_name, 0)
        if remaining < 0 or self.calls.count(order.id) <= remaining:
            raise GenerationError(f"Generator returned 500: upstream error for {order.pet_name}")
        return {"sunSign": "Leo", "summary": f"{order.pet_name} is a radiant soul"}

    def calls_for(self, order_id: str) -> int:
        return self.calls.count(order_id)


class FakeGateway:
    def __init__(self) -> None:
        self.verdicts: dict = {}
        self.calls: list[str] = []

    async def retrieve_checkout(self, checkout_reference: str):
        self.calls.append(checkout_reference)
        verdict = self.verdicts.get(checkout_reference)
        if isinstance(verdict, Exception):
            raise verdict
        if verdict is None:
            raise InvalidRequestError("Invalid checkout reference")
        return verdict


class FakeMailer:
    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.fail = False

    async def send(self, to: str, subject: str, html: str) -> None:
        if self.fail:
            raise NotificationError("Email provider returned 503: unavailable")
        self.sent.append({"to": to, "subject": subject, "html": html})


@pytest_asyncio.fixture
async def db_session():
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with test_async_session_maker() as session:
        yield session

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def session_maker(db_session):
    yield test_async_session_maker


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def coordinator(session_maker, generator):
    return GenerationCoordinator(session_maker, generator, max_attempts=3, retry_delay_seconds=0)


@pytest.fixture
def orchestrator(session_maker, coordinator):
    return FulfillmentOrchestrator(session_maker, coordinator)


@pytest_asyncio.fixture
async def client(db_session, generator, gateway):
    async def override_get_db():
        async with test_async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_maker] = lambda: test_async_session_maker
    app.dependency_overrides[get_generator] = lambda: generator
    app.dependency_overrides[get_payment_gateway] = lambda: gateway

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def mock_broker(monkeypatch):
    published_messages = []

    async def mock_publish(routing_key: str, message: bytes, message_id: str | None = None):
        published_messages.append({
            "routing_key": routing_key,
            "message": message,
            "message_id": message_id
        })

    monkeypatch.setattr(broker, "publish", mock_publish)

    yield published_messages


@pytest.fixture
def make_order(session_maker):
    async def _make(**overrides) -> Order:
        now = datetime.now(timezone.utc)
        values = {
            "id": str(uuid.uuid4()),
            "contact_email": "owner@example.com",
            "payment_status": PaymentStatus.PENDING.value,
            "generation_state": GenerationState.NOT_STARTED.value,
            "generation_attempt": 0,
            "pet_name": "Biscuit",
            "species": "dog",
            "breed": "Beagle",
            "birth_date": "2020-04-12",
            "language": "en",
            "occasion_mode": "discover",
            "share_token": secrets.token_hex(12),
            "created_at": now,
            "updated_at": now,
        }
        if overrides.pop("paid", False):
            values["payment_status"] = PaymentStatus.PAID.value
        values.update(overrides)

        async with session_maker() as session:
            order = Order(**values)
            session.add(order)
            await session.commit()
            await session.refresh(order)
        return order

    return _make


@pytest.fixture
def load_order(session_maker):
    async def _load(order_id: str) -> Order:
        async with session_maker() as session:
            result = await session.execute(select(Order).where(Order.id == order_id))
            return result.scalar_one()

    return _load


@pytest.fixture
def outbox_rows(session_maker):
    async def _rows(event_type: str | None = None, aggregate_id: str | None = None) -> list[OutboxMessage]:
        query = select(OutboxMessage).order_by(OutboxMessage.id)
        if event_type:
            query = query.where(OutboxMessage.event_type == event_type)
        if aggregate_id:
            query = query.where(OutboxMessage.aggregate_id == aggregate_id)
        async with session_maker() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    return _rows
