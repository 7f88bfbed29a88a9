"""
Unit Tests for the Message Producer

Tests payload stamping, size limits, failure handling and the convenience
publishers.
"""

from unittest.mock import AsyncMock

import orjson
import pytest
from aio_pika.exceptions import AMQPError

from chat_relay.core.exceptions import BrokerConnectionError, InvalidQueueNameError
from chat_relay.core.models import MessagePriority, QueueMessage
from chat_relay.infrastructure.broker.producer import (
    MessageBuilder,
    Producer,
    PublishOptions,
    validate_queue_name,
)
from chat_relay.infrastructure.broker.topology import Topology


@pytest.fixture
def topology(mock_connection):
    return Topology(mock_connection)


@pytest.fixture
def producer(topology, mock_metrics):
    return Producer(topology, mock_metrics)


def published(exchange_mock):
    """(decoded body, aio_pika Message, routing key) of the last publish."""
    message = exchange_mock.publish.await_args.args[0]
    return orjson.loads(message.body), message, exchange_mock.publish.await_args.kwargs["routing_key"]


@pytest.mark.unit
class TestMessageBuilder:
    def test_stamp_adds_event_id_and_timestamp(self):
        """Test stamping of a plain dict."""
        body, event_id = MessageBuilder.stamp({"sessionId": "acme"})

        assert body["eventId"] == event_id
        assert "timestamp" in body

    def test_stamp_keeps_existing_event_id(self):
        """Test that a republished payload keeps its id and timestamp."""
        body, event_id = MessageBuilder.stamp({"eventId": "e-1", "timestamp": "t"})

        assert event_id == "e-1"
        assert body["timestamp"] == "t"

    def test_stamp_keeps_envelope_untouched(self):
        """Test that a queue envelope is identified by its own id."""
        body, event_id = MessageBuilder.stamp(QueueMessage(id="m-1", content={}))

        assert event_id == "m-1"
        assert "eventId" not in body

    def test_build_sets_persistent_json(self):
        """Test AMQP properties of built messages."""
        message = MessageBuilder().build({"a": 1}, PublishOptions(headers={"x": "y"}, priority=2))

        assert message.content_type == "application/json"
        assert message.headers == {"x": "y"}
        assert message.priority == 2


@pytest.mark.unit
class TestPublish:
    @pytest.mark.asyncio
    async def test_publish_success(self, producer, mock_channel, mock_metrics):
        """Test a confirmed publish onto a topology exchange."""
        ok = await producer.publish("relay.messages", "message.received", {"sessionId": "acme"})

        body, message, routing_key = published(mock_channel.exchanges["relay.messages"])
        assert ok is True
        assert routing_key == "message.received"
        assert message.message_id == body["eventId"]
        mock_metrics.record_published.assert_called_once_with("relay.messages")

    @pytest.mark.asyncio
    async def test_publish_declares_topology_first(self, producer, topology):
        """Test that the first publish declares the topology."""
        await producer.publish("relay.messages", "message.received", {})

        assert topology.declared

    @pytest.mark.asyncio
    async def test_no_connection_raises_and_schedules_reconnect(self, producer, mock_connection, mock_metrics):
        """Test fail-closed publishing without a connection."""
        mock_connection.is_connected = False

        with pytest.raises(BrokerConnectionError):
            await producer.publish("relay.messages", "message.received", {})

        mock_connection.schedule_reconnect.assert_called_once()
        mock_metrics.record_publish_failure.assert_called_once_with("relay.messages", "no_connection")

    @pytest.mark.asyncio
    async def test_too_large_returns_false(self, topology, mock_metrics, mock_channel):
        """Test that oversized messages are rejected before reaching the broker."""
        producer = Producer(topology, mock_metrics, max_message_bytes=64)

        ok = await producer.publish("relay.messages", "k", {"content": "x" * 100})

        assert ok is False
        mock_metrics.record_publish_failure.assert_called_once_with("relay.messages", "too_large")
        mock_channel.declare_exchange.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_broker_error_returns_false_and_marks_stale(self, producer, topology, mock_channel):
        """Test that a channel failure is reported as an unconfirmed publish."""
        await topology.declare()
        mock_channel.exchanges["relay.messages"].publish = AsyncMock(side_effect=AMQPError("channel closed"))

        ok = await producer.publish("relay.messages", "message.received", {})

        assert ok is False
        assert not topology.declared


@pytest.mark.unit
class TestSendToQueue:
    def test_queue_name_validation(self):
        """Test the queue name rules."""
        assert validate_queue_name("relay.send.commands") == "relay.send.commands"
        for bad in ("", "has space", "x" * 256, "bad/name"):
            with pytest.raises(InvalidQueueNameError):
                validate_queue_name(bad)

    @pytest.mark.asyncio
    async def test_invalid_queue_name_raises(self, producer):
        """Test that send_to_queue validates before publishing."""
        with pytest.raises(InvalidQueueNameError):
            await producer.send_to_queue("bad queue", {})

    @pytest.mark.asyncio
    async def test_declares_queue_and_uses_default_exchange(self, producer, mock_channel):
        """Test direct-to-queue publishing."""
        ok = await producer.send_to_queue("relay.custom", {"a": 1})

        assert ok is True
        assert "relay.custom" in mock_channel.queues
        _, _, routing_key = published(mock_channel.default_exchange)
        assert routing_key == "relay.custom"


@pytest.mark.unit
class TestConveniencePublishers:
    @pytest.mark.asyncio
    async def test_publish_send_command_wraps_envelope(self, producer, mock_channel, sample_send_command):
        """Test the send-command envelope and its headers."""
        ok = await producer.publish_send_command(sample_send_command, priority=MessagePriority.HIGH)

        body, message, routing_key = published(mock_channel.default_exchange)
        assert ok is True
        assert routing_key == "relay.send.commands"
        assert body["id"] == sample_send_command.event_id
        assert body["content"]["payload"]["to"] == "5511988887777"
        assert body["metadata"]["originalQueue"] == "relay.send.commands"
        assert message.priority == 3
        assert message.headers["session-id"] == "acme"

    @pytest.mark.asyncio
    async def test_publish_http_send_request(self, producer, mock_channel):
        """Test the HTTP-originated send shortcut."""
        await producer.publish_http_send_request("acme", "5511", "hello")

        body, message, _ = published(mock_channel.default_exchange)
        assert body["content"]["metadata"] == {"source": "http"}
        assert message.headers["from-user"] == "http-api"

    @pytest.mark.asyncio
    async def test_publish_message_received(self, producer, mock_channel, sample_inbound_event):
        """Test inbound events on the messages exchange."""
        await producer.publish_message_received(sample_inbound_event)

        body, message, routing_key = published(mock_channel.exchanges["relay.messages"])
        assert routing_key == "message.received"
        assert body["eventId"] == sample_inbound_event.event_id
        assert body["sessionId"] == "acme:device-1"
        assert message.headers["session-id"] == "acme:device-1"

    @pytest.mark.asyncio
    async def test_publish_instance_event(self, producer, mock_channel):
        """Test instance lifecycle events."""
        await producer.publish_instance_event("create", "acme", {"name": "Acme"})

        body, _, routing_key = published(mock_channel.exchanges["relay.events"])
        assert routing_key == "instance.create"
        assert body["instanceId"] == "acme"

    @pytest.mark.asyncio
    async def test_republish_keeps_envelope_id(self, producer, mock_channel, sample_envelope):
        """Test the retry path keeps the original id."""
        retried = sample_envelope.with_retry()

        await producer.republish("relay.send.commands", retried, {"x-retry-count": 1})

        body, message, routing_key = published(mock_channel.default_exchange)
        assert message.message_id == sample_envelope.id
        assert body["metadata"]["retryCount"] == 1
        assert routing_key == "relay.send.commands"
