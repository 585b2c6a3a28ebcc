"""Message queue service for RabbitMQ."""

import json
import logging

import aio_pika

from marketchat.config import settings
from marketchat.schemas.notification import Notification

logger = logging.getLogger(__name__)


async def publish_notification(notification: Notification) -> None:
    """Publish a created notification for the external push transport."""
    connection = await aio_pika.connect_robust(settings.RABBITMQ_URL)
    async with connection:
        channel = await connection.channel()
        await channel.declare_queue(settings.NOTIFICATION_QUEUE, durable=True)

        await channel.default_exchange.publish(
            aio_pika.Message(
                body=json.dumps(notification.to_wire()).encode(),
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            ),
            routing_key=settings.NOTIFICATION_QUEUE,
        )
        logger.debug(f"Notification {notification.id} published for {notification.recipient_id}")
