import json
from datetime import datetime, timezone
from uuid import uuid4

import aio_pika
import structlog

from fulfillment import config
from fulfillment.schemas import CartValidationMessage, StockUpdateMessage

logger = structlog.get_logger(__name__)

FULFILLMENT_EXCHANGE = "fulfillment_exchange"
RETRY_EXCHANGE = "payment_retry_exchange"
RETRY_ROUTING_KEY = "payment.event.retry"
RETRY_DELAY_QUEUE = "payment_retry_delay_q"
RETRY_QUEUE = "payment_retry_q"


class NotificationPublisher:
    """One-way sink for stock, cart and order notifications.

    Nothing published here is acknowledged or ordered. Every publish is
    best-effort: failures are logged and never reach the caller.
    """

    def __init__(self, rabbitmq_url: str = config.RABBITMQ_URL):
        self.rabbitmq_url = rabbitmq_url
        self.connection = None
        self.channel = None

    async def connect(self):
        try:
            self.connection = await aio_pika.connect_robust(self.rabbitmq_url)
            self.channel = await self.connection.channel()
            await self.channel.declare_exchange(FULFILLMENT_EXCHANGE, aio_pika.ExchangeType.TOPIC, durable=True)
            await declare_retry_topology(self.channel)
            logger.info("messaging.setup.complete")
        except Exception as e:
            self.channel = None
            logger.error("messaging.setup.error", error=str(e))

    async def close(self):
        if self.connection is not None:
            await self.connection.close()
        self.connection = None
        self.channel = None

    async def publish_event(self, routing_key: str, message_data: dict):
        if not self.channel:
            logger.warning("messaging.channel.unavailable", routing_key=routing_key)
            return

        event = {
            "event_id": str(uuid4()),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **message_data,
        }
        message = aio_pika.Message(
            json.dumps(event, default=str).encode("utf-8"),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        try:
            exchange = await self.channel.get_exchange(FULFILLMENT_EXCHANGE)
            await exchange.publish(message, routing_key=routing_key)
            logger.debug("messaging.published", routing_key=routing_key, event_type=event.get("event_type"))
        except Exception as e:
            logger.error("messaging.publish.error", routing_key=routing_key, error=str(e))

    async def publish_stock_update(self, update: StockUpdateMessage):
        await self.publish_event(
            "inventory.updated",
            {"event_type": "InventoryUpdated", **update.model_dump(mode="json")},
        )

    async def publish_cart_validation(self, notice: CartValidationMessage):
        await self.publish_event(
            "cart.validation",
            {"event_type": "CartValidation", **notice.model_dump(mode="json")},
        )

    async def publish_order_confirmed(self, order_id: str, user_id: str, email: str, total_amount: float):
        await self.publish_event(
            "order.confirmed",
            {
                "event_type": "OrderConfirmed",
                "order_id": order_id,
                "user_id": user_id,
                "email": email,
                "total_amount": total_amount,
            },
        )

    async def schedule_retry(self, event_id: str, delay: float):
        """Park a payment event id on the delay queue.

        The message expires after `delay` seconds and is dead-lettered into
        the retry queue, so pending retries survive process restarts.
        """
        if not self.channel:
            logger.warning("messaging.retry.channel.unavailable", event_id=event_id)
            return

        message = aio_pika.Message(
            json.dumps({"event_id": event_id}).encode("utf-8"),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            expiration=delay,
        )
        try:
            await self.channel.default_exchange.publish(message, routing_key=RETRY_DELAY_QUEUE)
            logger.info("webhook.retry.scheduled", event_id=event_id, delay=round(delay, 3))
        except Exception as e:
            logger.error("webhook.retry.schedule.error", event_id=event_id, error=str(e))


async def declare_retry_topology(channel):
    retry_exchange = await channel.declare_exchange(RETRY_EXCHANGE, aio_pika.ExchangeType.TOPIC, durable=True)
    await channel.declare_queue(
        RETRY_DELAY_QUEUE,
        durable=True,
        arguments={
            "x-dead-letter-exchange": RETRY_EXCHANGE,
            "x-dead-letter-routing-key": RETRY_ROUTING_KEY,
        },
    )
    retry_queue = await channel.declare_queue(RETRY_QUEUE, durable=True)
    await retry_queue.bind(retry_exchange, RETRY_ROUTING_KEY)
    return retry_queue
