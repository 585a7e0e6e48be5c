#!/usr/bin/env python3
"""Durable Queue Layer on RabbitMQ (aio-pika).

Publishes SyncEvent envelopes to per-domain durable queues and feeds them
back to in-process handlers with manual acknowledgement.

Guarantees:
    - Queues are durable and messages persistent, so a broker restart
      does not lose queued events.
    - Each queue is consumed on its own channel with prefetch 1, and the
      handler runs under a lock: at most one in-flight message per handler.
    - Messages are never auto-acked. A handler that returns without
      settling leaves the message unacked (logged). A handler that raises
      gets the message nacked without requeue.
    - The robust connection reconnects on its own. Unexpected closes and
      reconnects are tracked so the orchestrator can bound the outage.

Example:
    broker = DurableQueueLayer(BrokerSettings(host="localhost"), DEFAULT_QUEUES)
    await broker.initialize()
    await broker.publish("device-sync", event.to_dict())
    await broker.consume("device-sync", handle_delivery)
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable, Optional

import aio_pika
from aio_pika.exceptions import AMQPError, ChannelPreconditionFailed

from ..api.exceptions import BrokerError, EventDecodeError, QueueDeclarationError
from .routing import DEVICE_QUEUE, TENANT_QUEUE

logger = logging.getLogger(__name__)

EXCHANGE_NAME = "npl.sync"


# ============================================
# Configuration
# ============================================

@dataclass(frozen=True)
class QueueConfig:
    name: str
    routing_key: str
    durable: bool = True
    auto_delete: bool = False


DEFAULT_QUEUES: tuple[QueueConfig, ...] = (
    QueueConfig(name=DEVICE_QUEUE, routing_key="device.*"),
    QueueConfig(name=TENANT_QUEUE, routing_key="tenant.*"),
)


@dataclass
class BrokerSettings:
    host: str = "localhost"
    port: int = 5672
    username: str = "guest"
    password: str = "guest"
    vhost: str = "/"

    def __repr__(self) -> str:
        return (
            f"BrokerSettings(host={self.host!r}, port={self.port}, "
            f"username={self.username!r}, password='***', vhost={self.vhost!r})"
        )


# ============================================
# Deliveries
# ============================================

class Delivery:
    """One dequeued message, settled explicitly by the handler."""

    def __init__(self, message: Any, queue_name: str):
        self._message = message
        self.queue_name = queue_name
        self.settled = False

    @property
    def body(self) -> bytes:
        return self._message.body

    @property
    def message_id(self) -> Optional[str]:
        return self._message.message_id

    @property
    def correlation_id(self) -> Optional[str]:
        return self._message.correlation_id

    def json(self) -> Any:
        """Decode the body as JSON.

        Raises:
            EventDecodeError: If the body is not valid UTF-8 JSON
        """
        try:
            return json.loads(self.body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise EventDecodeError(
                f"Message {self.message_id} on {self.queue_name} is not valid JSON",
                cause=e,
            )

    async def ack(self) -> None:
        if self.settled:
            return
        await self._message.ack()
        self.settled = True

    async def nack(self, requeue: bool = True) -> None:
        if self.settled:
            return
        await self._message.nack(requeue=requeue)
        self.settled = True


Handler = Callable[[Delivery], Awaitable[None]]


# ============================================
# The Queue Layer
# ============================================

class DurableQueueLayer:
    """Queue declaration, publishing and consumption on one robust connection."""

    def __init__(
        self,
        settings: BrokerSettings,
        queues: tuple[QueueConfig, ...] = DEFAULT_QUEUES,
        connect: Callable[..., Awaitable[Any]] = aio_pika.connect_robust,
    ):
        self.settings = settings
        self.queues = {q.name: q for q in queues}
        self._connect = connect

        self._connection: Any = None
        self._channel: Any = None
        self._consumers: dict[str, tuple[Any, Any, str]] = {}
        self._lost = asyncio.Event()
        self._closing = False

    @property
    def is_healthy(self) -> bool:
        return bool(
            self._connection is not None
            and not self._connection.is_closed
            and self._channel is not None
            and not self._channel.is_closed
            and not self._lost.is_set()
        )

    async def initialize(self) -> None:
        """Connect, open the publish channel, declare and bind every queue.

        Raises:
            QueueDeclarationError: A queue exists with conflicting parameters
            BrokerError: The broker is unreachable
        """
        logger.info(
            f"Connecting to RabbitMQ at {self.settings.host}:{self.settings.port}"
            f"{self.settings.vhost}"
        )
        try:
            self._connection = await self._connect(
                host=self.settings.host,
                port=self.settings.port,
                login=self.settings.username,
                password=self.settings.password,
                virtualhost=self.settings.vhost,
            )
            self._channel = await self._connection.channel()
        except (AMQPError, OSError) as e:
            raise BrokerError(f"Failed to connect to RabbitMQ: {e}", cause=e)

        self._closing = False
        self._lost.clear()
        self._connection.close_callbacks.add(self._on_connection_closed)
        self._connection.reconnect_callbacks.add(self._on_reconnected)

        try:
            exchange = await self._channel.declare_exchange(
                EXCHANGE_NAME, aio_pika.ExchangeType.TOPIC, durable=True
            )
        except ChannelPreconditionFailed as e:
            raise QueueDeclarationError(
                f"Exchange {EXCHANGE_NAME} exists with conflicting parameters",
                cause=e,
            )

        for config in self.queues.values():
            queue = await self._declare(self._channel, config)
            await queue.bind(exchange, routing_key=config.routing_key)
            logger.info(f"Queue ready: {config.name} ({config.routing_key})")

        logger.info("RabbitMQ connection established")

    # ----------------------------------------
    # Connection watch
    # ----------------------------------------

    def _on_connection_closed(self, *args: Any) -> None:
        if self._closing:
            return
        if not self._lost.is_set():
            logger.warning("RabbitMQ connection lost, waiting for reconnect")
        self._lost.set()

    def _on_reconnected(self, *args: Any) -> None:
        if self._lost.is_set():
            logger.info("RabbitMQ connection restored")
        self._lost.clear()

    @property
    def connection_lost(self) -> bool:
        return self._lost.is_set()

    async def wait_connection_lost(self) -> None:
        """Block until the connection drops unexpectedly."""
        await self._lost.wait()

    async def _declare(self, channel: Any, config: QueueConfig) -> Any:
        try:
            return await channel.declare_queue(
                config.name,
                durable=config.durable,
                auto_delete=config.auto_delete,
            )
        except ChannelPreconditionFailed as e:
            raise QueueDeclarationError(
                f"Queue {config.name} exists with conflicting parameters",
                queue_name=config.name,
                cause=e,
            )

    def _require(self, queue_name: str) -> QueueConfig:
        if self._channel is None:
            raise BrokerError("Queue layer not initialized", queue_name=queue_name)
        config = self.queues.get(queue_name)
        if config is None:
            raise BrokerError(f"Unknown queue: {queue_name}", queue_name=queue_name, recoverable=False)
        return config

    async def publish(self, queue_name: str, envelope: dict[str, Any]) -> None:
        """Publish one envelope as a persistent JSON message.

        Raises:
            BrokerError: Unknown queue, or the publish failed
        """
        self._require(queue_name)
        metadata = envelope.get("metadata") or {}
        message = aio_pika.Message(
            body=json.dumps(envelope).encode("utf-8"),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            message_id=envelope.get("eventId"),
            correlation_id=metadata.get("correlationId"),
            timestamp=datetime.now(UTC),
        )
        try:
            await self._channel.default_exchange.publish(message, routing_key=queue_name)
        except (AMQPError, OSError) as e:
            raise BrokerError(f"Publish to {queue_name} failed: {e}", queue_name=queue_name, cause=e)

        logger.debug(f"Published {envelope.get('eventType')} to {queue_name}")

    async def consume(self, queue_name: str, handler: Handler) -> None:
        """Start consuming ``queue_name`` on a dedicated channel."""
        config = self._require(queue_name)
        if queue_name in self._consumers:
            raise BrokerError(f"Already consuming {queue_name}", queue_name=queue_name, recoverable=False)

        channel = await self._connection.channel()
        await channel.set_qos(prefetch_count=1)
        queue = await self._declare(channel, config)
        lock = asyncio.Lock()

        async def on_message(message: Any) -> None:
            delivery = Delivery(message, queue_name)
            async with lock:
                try:
                    await handler(delivery)
                except Exception as e:
                    logger.error(
                        f"Handler for {queue_name} failed on message {delivery.message_id}: {e}",
                        exc_info=True,
                    )
                    if not delivery.settled:
                        await delivery.nack(requeue=False)
                    return

            if not delivery.settled:
                logger.warning(
                    f"Handler for {queue_name} left message {delivery.message_id} unsettled"
                )

        consumer_tag = await queue.consume(on_message, no_ack=False)
        self._consumers[queue_name] = (channel, queue, consumer_tag)
        logger.info(f"Consuming {queue_name}")

    async def close(self) -> None:
        self._closing = True
        for queue_name, (channel, queue, consumer_tag) in list(self._consumers.items()):
            try:
                await queue.cancel(consumer_tag)
                await channel.close()
            except (AMQPError, OSError) as e:
                logger.warning(f"Error closing consumer for {queue_name}: {e}")
        self._consumers.clear()

        if self._channel is not None and not self._channel.is_closed:
            await self._channel.close()
        if self._connection is not None and not self._connection.is_closed:
            await self._connection.close()
        self._channel = None
        self._connection = None
        logger.info("RabbitMQ connection closed")


__all__ = [
    "BrokerSettings",
    "DEFAULT_QUEUES",
    "Delivery",
    "DurableQueueLayer",
    "EXCHANGE_NAME",
    "QueueConfig",
]
