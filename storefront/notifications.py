"""Consumer process for email notifications.

Run with ``python -m storefront.notifications``. Mail delivery itself is
handled elsewhere; this worker renders and logs each requested email.
"""
import asyncio
import json
import logging

import aio_pika

from storefront import config
from storefront.messaging import EMAIL_ROUTING_KEY, NOTIFICATION_EXCHANGE

logger = logging.getLogger(__name__)


async def process_notification_event(message: aio_pika.IncomingMessage):
    async with message.process():
        try:
            event_data = json.loads(message.body.decode())
            recipient = event_data["recipient"]
            subject = event_data.get("subject", "")
            logger.info("Email to %s: %s", recipient, subject)
            logger.debug("Email body for %s: %s", recipient, event_data.get("body", ""))
        except (ValueError, KeyError):
            # Malformed events are acked and dropped so they are not redelivered forever
            logger.exception("Discarding malformed notification event")


async def main():
    connection = await aio_pika.connect_robust(config.RABBITMQ_URL)
    async with connection:
        channel = await connection.channel()
        exchange = await channel.declare_exchange(NOTIFICATION_EXCHANGE, aio_pika.ExchangeType.TOPIC, durable=True)

        queue = await channel.declare_queue("notification_q", durable=True)
        await queue.bind(exchange, EMAIL_ROUTING_KEY)

        logger.info("Notification consumer is listening for events...")
        await queue.consume(process_notification_event)

        await asyncio.Future()


if __name__ == "__main__":
    logging.basicConfig(level=config.LOG_LEVEL)
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Notification consumer stopped.")
