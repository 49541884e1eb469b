import logging
import json
from aio_pika import connect_robust, IncomingMessage, ExchangeType
from aio_pika.abc import AbstractRobustChannel, AbstractRobustConnection
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.core.broker import DEAD_LETTER_EXCHANGE_NAME, EXCHANGE_NAME
from fulfillment.core.config import settings
from fulfillment.core.database import async_session_maker
from fulfillment.schemas.events import GenerateReportCommand, ReportGeneratedEvent
from fulfillment.services.coordinator import GENERATE_REPORT, GenerationCoordinator, ReportGenerator
from fulfillment.services.email import EmailClient, email_client
from fulfillment.services.generator import generator_client
from fulfillment.services.notification import REPORT_GENERATED, NotificationService

logger = logging.getLogger(__name__)


class MessageConsumer:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession] = async_session_maker,
        generator: ReportGenerator = generator_client,
        mailer: EmailClient = email_client
    ) -> None:
        self.connection: AbstractRobustConnection | None = None
        self.coordinator = GenerationCoordinator(session_maker, generator)
        self.notifications = NotificationService(session_maker, mailer)

    async def start(self) -> None:
        self.connection = await connect_robust(settings.rabbitmq_url)
        channel = await self.connection.channel()
        await channel.set_qos(prefetch_count=settings.rabbitmq_prefetch_count)

        await self._bind(channel, GENERATE_REPORT, self.handle_generate)
        await self._bind(channel, REPORT_GENERATED, self.handle_generated)

        logger.info(f"Started consuming {GENERATE_REPORT} and {REPORT_GENERATED} events")

    async def _bind(self, channel: AbstractRobustChannel, routing_key: str, callback) -> None:
        exchange = await channel.declare_exchange(EXCHANGE_NAME, ExchangeType.TOPIC, durable=True)
        dlx = await channel.declare_exchange(DEAD_LETTER_EXCHANGE_NAME, ExchangeType.TOPIC, durable=True)

        queue_name = f"{settings.service_name}.{routing_key}"
        dlq = await channel.declare_queue(f"{queue_name}.failed", durable=True)
        await dlq.bind(dlx, routing_key=f"{routing_key}.failed")

        queue = await channel.declare_queue(
            queue_name,
            durable=True,
            arguments={
                "x-dead-letter-exchange": DEAD_LETTER_EXCHANGE_NAME,
                "x-dead-letter-routing-key": f"{routing_key}.failed"
            }
        )
        await queue.bind(exchange, routing_key=routing_key)
        await queue.consume(callback)

    async def handle_generate(self, message: IncomingMessage) -> None:
        try:
            command = GenerateReportCommand(**json.loads(message.body.decode()))
            result = await self.coordinator.run_attempt(command.order_id, command.attempt)

            await message.ack()
            logger.info(
                f"Processed {GENERATE_REPORT} for order {command.order_id}, "
                f"attempt {command.attempt}: {result.outcome.value}"
            )
        except (ValidationError, ValueError) as e:
            logger.error(f"Validation error processing message: {e}", exc_info=True)
            await message.reject(requeue=False)
        except Exception as e:
            logger.error(f"Error processing message: {e}", exc_info=True)
            await message.reject(requeue=False)

    async def handle_generated(self, message: IncomingMessage) -> None:
        try:
            event = ReportGeneratedEvent(**json.loads(message.body.decode()))
            await self.notifications.deliver(event)

            await message.ack()
        except (ValidationError, ValueError) as e:
            logger.error(f"Validation error processing message: {e}", exc_info=True)
            await message.reject(requeue=False)
        except Exception as e:
            logger.error(f"Error processing message: {e}", exc_info=True)
            await message.reject(requeue=False)

    async def stop(self) -> None:
        if self.connection:
            await self.connection.close()
            logger.info("Stopped message consumer")


consumer = MessageConsumer()
