import json
import logging
from datetime import datetime
from uuid import uuid4

import aio_pika

from storefront import config

logger = logging.getLogger(__name__)

NOTIFICATION_EXCHANGE = "notification_exchange"
EMAIL_ROUTING_KEY = "notification.email"


class EventPublisher:
    def __init__(self, url: str = config.RABBITMQ_URL):
        self.url = url
        self.connection = None
        self.channel = None

    async def setup(self):
        try:
            self.connection = await aio_pika.connect_robust(self.url)
            self.channel = await self.connection.channel()
            await self.channel.declare_exchange(NOTIFICATION_EXCHANGE, aio_pika.ExchangeType.TOPIC, durable=True)
            logger.info("RabbitMQ setup complete.")
        except Exception:
            logger.exception("Error setting up RabbitMQ")

    async def publish_event(self, exchange_name: str, routing_key: str, message_data: dict):
        if not self.channel:
            logger.warning("RabbitMQ channel not available. Cannot publish %s.", message_data["event_type"])
            return

        message = aio_pika.Message(
            json.dumps(message_data).encode("utf-8"),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        try:
            exchange = await self.channel.get_exchange(exchange_name)
            await exchange.publish(message, routing_key=routing_key)
            logger.info("Published event to %s: %s", routing_key, message_data["event_type"])
        except Exception:
            logger.exception("Error publishing event to %s", routing_key)

    async def close(self):
        if self.connection:
            await self.connection.close()


class Notifier:
    """Fire-and-forget email notifications, delivered by the notification consumer."""

    def __init__(self, publisher: EventPublisher):
        self.publisher = publisher

    async def send(self, recipient: str, subject: str, body: str):
        await self.publisher.publish_event(
            NOTIFICATION_EXCHANGE,
            EMAIL_ROUTING_KEY,
            {
                "event_id": str(uuid4()),
                "event_type": "EmailRequested",
                "timestamp": datetime.utcnow().isoformat(),
                "recipient": recipient,
                "subject": subject,
                "body": body,
            },
        )
