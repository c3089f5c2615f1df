import asyncio
import logging

import aio_pika

from .config import RABBIT_URL

logger = logging.getLogger(__name__)

EXCHANGE_NAME = "domain_events"


class RabbitPublisher:
    """
    Publishes booking events to the `domain_events` topic exchange.

    Without RABBIT_URL the publisher is disabled and publish() is a no-op.
    Connection is lazy and shared; a failed connect is retried on the next
    publish instead of failing the caller.
    """

    def __init__(self, url: str | None = RABBIT_URL):
        self.url = url
        self.enabled = bool(url)
        self._lock = asyncio.Lock()
        self._connection: aio_pika.abc.AbstractRobustConnection | None = None
        self._exchange: aio_pika.abc.AbstractExchange | None = None

    @property
    def connected(self) -> bool:
        return self._exchange is not None and self._connection is not None and not self._connection.is_closed

    async def connect(self) -> None:
        if not self.enabled or self.connected:
            return

        async with self._lock:
            if self.connected:
                return
            try:
                self._connection = await aio_pika.connect_robust(self.url)
                channel = await self._connection.channel()
                self._exchange = await channel.declare_exchange(
                    EXCHANGE_NAME, aio_pika.ExchangeType.TOPIC, durable=True
                )
                logger.info("connected to RabbitMQ exchange %s", EXCHANGE_NAME)
            except Exception:
                self._connection = None
                self._exchange = None
                raise

    async def publish(self, routing_key: str, body: str) -> None:
        if not self.enabled:
            return

        try:
            await self.connect()
        except Exception as e:
            logger.error("RabbitMQ unavailable, %s not published: %s", routing_key, e)
            return

        message = aio_pika.Message(
            body=body.encode("utf-8"),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        try:
            await self._exchange.publish(message, routing_key=routing_key)
        except Exception as e:
            logger.error("RabbitMQ publish failed for %s: %s", routing_key, e)

    async def close(self) -> None:
        connection, self._connection, self._exchange = self._connection, None, None
        if connection is not None and not connection.is_closed:
            await connection.close()


publisher = RabbitPublisher()
