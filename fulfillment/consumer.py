import asyncio
import json

import aio_pika
import structlog

from fulfillment import config
from fulfillment.errors import NotFoundError, WebhookError
from fulfillment.messaging import declare_retry_topology

logger = structlog.get_logger(__name__)


async def process_retry_message(message: aio_pika.IncomingMessage, pipeline):
    async with message.process():
        try:
            event_data = json.loads(message.body.decode())
            event_id = event_data["event_id"]
        except (ValueError, KeyError) as e:
            logger.error("webhook.retry.message.invalid", error=str(e))
            return

        logger.info("webhook.retry.received", event_id=event_id)
        try:
            result = await pipeline.reprocess(event_id)
            logger.info("webhook.retry.done", event_id=event_id, success=result.success, order_id=result.order_id)
        except NotFoundError:
            logger.warning("webhook.retry.unknown_event", event_id=event_id)
        except WebhookError as e:
            # Already recorded on the event and, if still eligible, rescheduled
            logger.warning("webhook.retry.attempt.failed", event_id=event_id, code=e.code, retryable=e.retryable)


async def start_consumer(pipeline, rabbitmq_url: str = config.RABBITMQ_URL):
    connection = await aio_pika.connect_robust(rabbitmq_url)
    async with connection:
        channel = await connection.channel()
        await channel.set_qos(prefetch_count=1)
        queue = await declare_retry_topology(channel)

        logger.info("webhook.retry.consumer.listening")

        async def on_message(message: aio_pika.IncomingMessage):
            await process_retry_message(message, pipeline)

        await queue.consume(on_message, no_ack=False)

        # Keep the consumer running
        await asyncio.Future()
