import logging
from typing import Optional
import aio_pika
from aio_pika import ExchangeType
from aio_pika.abc import AbstractRobustConnection, AbstractRobustChannel

from fulfillment.core.config import settings

logger = logging.getLogger(__name__)

EXCHANGE_NAME = "reports"
DEAD_LETTER_EXCHANGE_NAME = "reports.dlx"


class RabbitMQBroker:
    def __init__(self) -> None:
        self.connection: Optional[AbstractRobustConnection] = None
        self.channel: Optional[AbstractRobustChannel] = None

    async def connect(self) -> None:
        self.connection = await aio_pika.connect_robust(settings.rabbitmq_url)
        self.channel = await self.connection.channel()
        await self.channel.set_qos(prefetch_count=settings.rabbitmq_prefetch_count)

        await self.channel.declare_exchange(
            EXCHANGE_NAME,
            ExchangeType.TOPIC,
            durable=True
        )

        await self.channel.declare_exchange(
            DEAD_LETTER_EXCHANGE_NAME,
            ExchangeType.TOPIC,
            durable=True
        )

        logger.info("Connected to RabbitMQ")

    async def close(self) -> None:
        if self.channel:
            await self.channel.close()
        if self.connection:
            await self.connection.close()
        logger.info("Disconnected from RabbitMQ")

    @property
    def is_connected(self) -> bool:
        return bool(self.connection and not self.connection.is_closed)

    async def publish(self, routing_key: str, message: bytes, message_id: str | None = None) -> None:
        if not self.channel:
            raise RuntimeError("Channel is not initialized")

        exchange = await self.channel.get_exchange(EXCHANGE_NAME)
        await exchange.publish(
            aio_pika.Message(
                body=message,
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                message_id=message_id,
                type=routing_key,
                app_id=settings.service_name
            ),
            routing_key=routing_key
        )
        logger.debug(f"Published message {message_id} to {routing_key}")


broker = RabbitMQBroker()
