import asyncio
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fulfillment.core.logging import setup_logging
from fulfillment.core.broker import broker
from fulfillment.core.config import settings
from fulfillment.core.database import async_session_maker, engine
from fulfillment.models import Base
from fulfillment.api.health import router as health_router
from fulfillment.api.operations import router as operations_router
from fulfillment.api.orders import router as orders_router
from fulfillment.api.payments import router as payments_router
from fulfillment.api.redemptions import router as redemptions_router
from fulfillment.api.webhooks import router as webhooks_router
from fulfillment.services.consumer import consumer
from fulfillment.services.email import email_client
from fulfillment.services.generator import generator_client
from fulfillment.services.outbox_processor import OutboxProcessor
from fulfillment.services.recovery import RecoverySweeper


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await broker.connect()
    consumer_task = asyncio.create_task(consumer.start())

    outbox_processor = OutboxProcessor(
        async_session_maker,
        poll_interval=settings.outbox_poll_interval,
        batch_size=settings.outbox_batch_size,
        max_retries=settings.outbox_max_retries,
        sweeper=RecoverySweeper(
            async_session_maker,
            consumer.coordinator,
            settings.stalled_generation_seconds
        ),
        sweep_interval=settings.recovery_interval_seconds
    )
    await outbox_processor.start()

    yield

    await outbox_processor.stop()
    consumer_task.cancel()
    await consumer.stop()
    await broker.close()
    await generator_client.close()
    await email_client.close()
    await engine.dispose()


app = FastAPI(
    title="Report Fulfillment Service",
    description="Turns paid pet report orders into generated and delivered reports",
    version="0.1.0",
    lifespan=lifespan
)

cors_origins = settings.cors_origins.split(",") if settings.cors_origins else ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health_router)
app.include_router(orders_router)
app.include_router(payments_router)
app.include_router(redemptions_router)
app.include_router(webhooks_router)
app.include_router(operations_router)
