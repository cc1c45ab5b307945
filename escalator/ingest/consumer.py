"""AMQP ingestion: domain change messages in, canonical events out to the engine."""

import asyncio
import json
from typing import Any, Awaitable, Callable

import aio_pika
from aio_pika.abc import AbstractIncomingMessage, AbstractQueue, AbstractRobustConnection
from redis.exceptions import RedisError

from escalator.core.config import get_settings
from escalator.core.errors import EventNormalizationError, TransientStorageError
from escalator.core.logging import get_logger
from escalator.ingest.normalizer import normalize
from escalator.models.event import CanonicalEvent

logger = get_logger(__name__)

EventHandler = Callable[[CanonicalEvent], Awaitable[Any]]

_REQUEUE_ERRORS = (TransientStorageError, RedisError)


def decode_message(body: bytes) -> CanonicalEvent:
    """Turn a raw message body into a canonical event.

    Raises:
        EventNormalizationError: If the body is not JSON or not a known change shape
    """
    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise EventNormalizationError(f"message body is not JSON: {e}") from e
    return normalize(payload)


class EventConsumer:
    """Consumes the workspace change queue with bounded concurrency.

    Up to ``rabbitmq_prefetch`` messages are handled at once. A message is
    acked once handled, dropped when it cannot be decoded and returned to
    the queue when handling hit a storage outage, so redelivery retries it.
    """

    def __init__(self, handler: EventHandler, url: str | None = None, queue_name: str | None = None):
        settings = get_settings()
        self._handler = handler
        self._url = url or settings.rabbitmq_url
        self._queue_name = queue_name or settings.rabbitmq_queue
        self._prefetch = settings.rabbitmq_prefetch
        self._connection: AbstractRobustConnection | None = None
        self._stopped = asyncio.Event()
        self._inflight: set[asyncio.Task] = set()

    async def _open_queue(self) -> AbstractQueue:
        if self._connection is None or self._connection.is_closed:
            self._connection = await aio_pika.connect_robust(self._url, reconnect_interval=5)
            logger.info("Connected to RabbitMQ", queue=self._queue_name)
        channel = await self._connection.channel()
        await channel.set_qos(prefetch_count=self._prefetch)
        return await channel.declare_queue(self._queue_name, durable=True)

    async def run(self) -> None:
        """Consume until :meth:`stop` is called, then drain in-flight messages."""
        queue = await self._open_queue()
        tag = await queue.consume(self._spawn)
        logger.info("Consuming events", queue=self._queue_name, prefetch=self._prefetch)
        try:
            await self._stopped.wait()
        finally:
            await queue.cancel(tag)
            if self._inflight:
                await asyncio.gather(*self._inflight, return_exceptions=True)

    async def _spawn(self, message: AbstractIncomingMessage) -> None:
        task = asyncio.create_task(self.handle(message))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def handle(self, message: AbstractIncomingMessage) -> None:
        """Decode, hand to the engine and settle one message."""
        try:
            event = decode_message(message.body)
        except EventNormalizationError as e:
            logger.warning("Dropping unrecognized message", message_id=message.message_id, error=str(e))
            await message.reject(requeue=False)
            return

        try:
            await self._handler(event)
        except _REQUEUE_ERRORS as e:
            logger.warning("Storage unavailable, requeueing event", event_id=event.event_id, error=str(e))
            await message.nack(requeue=True)
            return
        except Exception:
            logger.exception("Event handling failed", event_id=event.event_id)
            await message.reject(requeue=False)
            return
        await message.ack()

    def stop(self) -> None:
        self._stopped.set()

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("Disconnected from RabbitMQ")
