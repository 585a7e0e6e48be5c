#!/usr/bin/env python3
"""Unit tests for the durable queue layer.

aio-pika's connection, channels and queues are replaced by mocks; the
tests check what is declared, how messages are published, and how the
consumer settles deliveries.
"""
import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import aio_pika
import pytest
from aio_pika.exceptions import ChannelPreconditionFailed

from nplsync.api.exceptions import BrokerError, EventDecodeError, QueueDeclarationError
from nplsync.messaging.broker import (
    DEFAULT_QUEUES,
    EXCHANGE_NAME,
    BrokerSettings,
    Delivery,
    DurableQueueLayer,
)


def make_channel(queue):
    channel = MagicMock()
    channel.is_closed = False
    channel.declare_exchange = AsyncMock(return_value=MagicMock(name="exchange"))
    channel.declare_queue = AsyncMock(return_value=queue)
    channel.set_qos = AsyncMock()
    channel.close = AsyncMock()
    channel.default_exchange.publish = AsyncMock()
    return channel


@pytest.fixture
def queue():
    queue = MagicMock()
    queue.bind = AsyncMock()
    queue.consume = AsyncMock(return_value="ctag-1")
    queue.cancel = AsyncMock()
    return queue


@pytest.fixture
def channel(queue):
    return make_channel(queue)


@pytest.fixture
def consumer_channel(queue):
    return make_channel(queue)


@pytest.fixture
def connection(channel, consumer_channel):
    connection = MagicMock()
    connection.is_closed = False
    connection.channel = AsyncMock(side_effect=[channel, consumer_channel, make_channel(MagicMock())])
    connection.close = AsyncMock()
    return connection


@pytest.fixture
def connect(connection):
    return AsyncMock(return_value=connection)


@pytest.fixture
def broker(connect):
    settings = BrokerSettings(host="rabbit", port=5673, username="sync", password="s3cret", vhost="/npl")
    return DurableQueueLayer(settings, DEFAULT_QUEUES, connect=connect)


def make_message(body: bytes):
    message = MagicMock()
    message.body = body
    message.message_id = "evt-1"
    message.correlation_id = "corr-1"
    message.ack = AsyncMock()
    message.nack = AsyncMock()
    return message


class TestSettings:
    def test_repr_hides_password(self):
        assert "s3cret" not in repr(BrokerSettings(password="s3cret"))


class TestInitialize:
    """Tests for connection and declaration."""

    @pytest.mark.asyncio
    async def test_declares_and_binds_every_queue(self, broker, connect, channel, queue):
        await broker.initialize()

        connect.assert_awaited_once_with(
            host="rabbit", port=5673, login="sync", password="s3cret", virtualhost="/npl"
        )
        channel.declare_exchange.assert_awaited_once_with(
            EXCHANGE_NAME, aio_pika.ExchangeType.TOPIC, durable=True
        )
        declared = [c.args[0] for c in channel.declare_queue.await_args_list]
        assert declared == ["device-sync", "tenant-sync"]
        for call in channel.declare_queue.await_args_list:
            assert call.kwargs == {"durable": True, "auto_delete": False}
        routing_keys = [c.kwargs["routing_key"] for c in queue.bind.await_args_list]
        assert routing_keys == ["device.*", "tenant.*"]
        assert broker.is_healthy

    @pytest.mark.asyncio
    async def test_unreachable_broker(self, connect, broker):
        connect.side_effect = ConnectionRefusedError("refused")
        with pytest.raises(BrokerError):
            await broker.initialize()
        assert not broker.is_healthy

    @pytest.mark.asyncio
    async def test_conflicting_queue(self, broker, channel):
        channel.declare_queue.side_effect = ChannelPreconditionFailed()
        with pytest.raises(QueueDeclarationError) as exc_info:
            await broker.initialize()
        assert exc_info.value.queue_name == "device-sync"

    @pytest.mark.asyncio
    async def test_conflicting_exchange(self, broker, channel):
        channel.declare_exchange.side_effect = ChannelPreconditionFailed()
        with pytest.raises(QueueDeclarationError):
            await broker.initialize()


class TestPublish:
    """Tests for publish()."""

    @pytest.mark.asyncio
    async def test_persistent_json_message(self, broker, channel):
        await broker.initialize()
        envelope = {
            "eventType": "DEVICE_DELETED",
            "eventId": "evt-1",
            "payload": {"entityId": "d1"},
            "metadata": {"correlationId": "corr-1"},
        }

        await broker.publish("device-sync", envelope)

        publish = channel.default_exchange.publish
        message = publish.await_args.args[0]
        assert publish.await_args.kwargs["routing_key"] == "device-sync"
        assert json.loads(message.body) == envelope
        assert message.content_type == "application/json"
        assert message.delivery_mode == aio_pika.DeliveryMode.PERSISTENT
        assert message.message_id == "evt-1"
        assert message.correlation_id == "corr-1"

    @pytest.mark.asyncio
    async def test_unknown_queue(self, broker):
        await broker.initialize()
        with pytest.raises(BrokerError) as exc_info:
            await broker.publish("customer-sync", {})
        assert exc_info.value.recoverable is False

    @pytest.mark.asyncio
    async def test_not_initialized(self, broker):
        with pytest.raises(BrokerError):
            await broker.publish("device-sync", {})

    @pytest.mark.asyncio
    async def test_publish_failure(self, broker, channel):
        await broker.initialize()
        channel.default_exchange.publish.side_effect = ConnectionResetError("gone")
        with pytest.raises(BrokerError) as exc_info:
            await broker.publish("device-sync", {"eventId": "evt-1"})
        assert exc_info.value.queue_name == "device-sync"


class TestConsume:
    """Tests for consume() and delivery settlement."""

    async def start(self, broker, queue, handler):
        await broker.initialize()
        await broker.consume("device-sync", handler)
        return queue.consume.await_args.args[0]

    @pytest.mark.asyncio
    async def test_dedicated_channel_with_prefetch_one(self, broker, queue, consumer_channel):
        await self.start(broker, queue, AsyncMock())

        consumer_channel.set_qos.assert_awaited_once_with(prefetch_count=1)
        assert queue.consume.await_args.kwargs["no_ack"] is False

    @pytest.mark.asyncio
    async def test_handler_ack(self, broker, queue):
        async def handler(delivery):
            assert delivery.json() == {"ok": True}
            await delivery.ack()

        on_message = await self.start(broker, queue, handler)
        message = make_message(b'{"ok": true}')
        await on_message(message)

        message.ack.assert_awaited_once()
        message.nack.assert_not_called()

    @pytest.mark.asyncio
    async def test_handler_error_nacks_without_requeue(self, broker, queue):
        on_message = await self.start(broker, queue, AsyncMock(side_effect=RuntimeError("boom")))
        message = make_message(b"{}")

        await on_message(message)

        message.nack.assert_awaited_once_with(requeue=False)

    @pytest.mark.asyncio
    async def test_unsettled_message_left_alone(self, broker, queue):
        on_message = await self.start(broker, queue, AsyncMock())
        message = make_message(b"{}")

        await on_message(message)

        message.ack.assert_not_called()
        message.nack.assert_not_called()

    @pytest.mark.asyncio
    async def test_consume_twice(self, broker, queue):
        await self.start(broker, queue, AsyncMock())
        with pytest.raises(BrokerError):
            await broker.consume("device-sync", AsyncMock())

    @pytest.mark.asyncio
    async def test_close_cancels_consumers(self, broker, queue, consumer_channel, channel, connection):
        await self.start(broker, queue, AsyncMock())

        await broker.close()

        queue.cancel.assert_awaited_once_with("ctag-1")
        consumer_channel.close.assert_awaited_once()
        channel.close.assert_awaited_once()
        connection.close.assert_awaited_once()
        assert not broker.is_healthy


class TestConnectionWatch:
    """Tests for tracking unexpected connection loss."""

    @pytest.mark.asyncio
    async def test_registers_connection_callbacks(self, broker, connection):
        await broker.initialize()

        connection.close_callbacks.add.assert_called_once_with(broker._on_connection_closed)
        connection.reconnect_callbacks.add.assert_called_once_with(broker._on_reconnected)
        assert not broker.connection_lost

    @pytest.mark.asyncio
    async def test_loss_and_restore(self, broker):
        await broker.initialize()

        broker._on_connection_closed(None, ConnectionResetError("reset"))
        assert broker.connection_lost
        assert not broker.is_healthy
        await asyncio.wait_for(broker.wait_connection_lost(), timeout=1.0)

        broker._on_reconnected(None)
        assert not broker.connection_lost
        assert broker.is_healthy

    @pytest.mark.asyncio
    async def test_own_close_is_not_a_loss(self, broker):
        await broker.initialize()
        await broker.close()

        broker._on_connection_closed(None, None)

        assert not broker.connection_lost


class TestDelivery:
    def test_invalid_json(self):
        with pytest.raises(EventDecodeError):
            Delivery(make_message(b"\xff\xfe"), "device-sync").json()

    @pytest.mark.asyncio
    async def test_settles_once(self):
        message = make_message(b"{}")
        delivery = Delivery(message, "device-sync")

        await delivery.ack()
        await delivery.nack()
        await delivery.ack()

        message.ack.assert_awaited_once()
        message.nack.assert_not_called()
        assert delivery.settled
