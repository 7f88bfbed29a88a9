"""
Message Producer

Architecture:
    Producer (Public API)
        ├── PublishOptions      headers, priority, ids, expiration
        ├── MessageBuilder      stamping + aio_pika.Message construction
        ├── publish()           exchange + routing key, fails closed
        ├── send_to_queue()     default exchange, queue declared on demand
        └── convenience         publish_event / publish_message_received /
                                publish_send_command / publish_http_send_request /
                                publish_instance_event

Publishing Rules:
    - Every dict payload is stamped with `eventId` and an ISO `timestamp`
      unless it already carries them (a republish keeps its original id).
    - Messages are persistent JSON with publisher confirms.
    - No connection at all      → BrokerConnectionError (reconnect scheduled)
    - Broker rejects / unroutable / channel error → False, logged
    - First publish after a reconnect re-declares the topology.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import orjson
from aio_pika import DeliveryMode, Message
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError
from pydantic import BaseModel

from chat_relay.core.exceptions import (
    BrokerConnectionError,
    InvalidQueueNameError,
    MessageTooLargeError,
    TopologyError,
)
from chat_relay.core.logging import get_logger
from chat_relay.core.models import (
    DomainEvent,
    EventKind,
    InboundMessageEvent,
    MessageMetadata,
    MessagePriority,
    QueueMessage,
    SendCommand,
    SendPayload,
    generate_event_id,
    utc_now,
)
from chat_relay.infrastructure.broker.topology import DEFAULT_EXCHANGE, Topology

logger = get_logger(__name__)

MAX_MESSAGE_BYTES = 1024 * 1024
QUEUE_NAME_RE = re.compile(r"^[a-zA-Z0-9._-]+$")


def validate_queue_name(name: str) -> str:
    """
    Raises:
        InvalidQueueNameError: Empty, longer than 255, or outside [a-zA-Z0-9._-]
    """
    if not name or len(name) > 255 or not QUEUE_NAME_RE.match(name):
        raise InvalidQueueNameError(f"Invalid queue name: {name!r}", details={"queue": name})
    return name


@dataclass
class PublishOptions:
    headers: dict[str, Any] = field(default_factory=dict)
    priority: int | None = None
    message_id: str | None = None
    expiration: int | None = None  # seconds
    persistent: bool = True


# =============================================================================
# LAYER 1: MESSAGE CONSTRUCTION
# =============================================================================


class MessageBuilder:
    """Turns payloads into stamped, size-checked aio_pika messages."""

    def __init__(self, max_message_bytes: int = MAX_MESSAGE_BYTES):
        self._max_bytes = max_message_bytes

    @staticmethod
    def stamp(payload: Any) -> tuple[Any, str]:
        """
        Returns:
            (body object, message id)
        """
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json", by_alias=True, exclude_none=True)
        if isinstance(payload, dict):
            if "id" in payload and "metadata" in payload:
                # QueueMessage envelope: already identified
                return payload, str(payload["id"])
            event_id = payload.get("eventId") or generate_event_id()
            stamped = {**payload, "eventId": event_id}
            stamped.setdefault("timestamp", utc_now().isoformat())
            return stamped, event_id
        return payload, generate_event_id()

    def build(self, payload: Any, options: PublishOptions) -> Message:
        """
        Raises:
            MessageTooLargeError: Encoded body exceeds the size limit
        """
        body_obj, event_id = self.stamp(payload)
        body = orjson.dumps(body_obj)
        if len(body) > self._max_bytes:
            raise MessageTooLargeError(
                f"Message of {len(body)} bytes exceeds {self._max_bytes}",
                details={"size": len(body), "limit": self._max_bytes},
            )
        return Message(
            body,
            content_type="application/json",
            delivery_mode=DeliveryMode.PERSISTENT if options.persistent else DeliveryMode.NOT_PERSISTENT,
            message_id=options.message_id or event_id,
            headers=options.headers,
            priority=options.priority,
            expiration=options.expiration,
            timestamp=datetime.now(),
        )


# =============================================================================
# LAYER 2: PUBLIC API
# =============================================================================


class Producer:
    """
    Publishes onto the relay topology.

    Usage:
        producer = Producer(topology, metrics)
        ok = await producer.publish("relay.messages", "message.received", {...})
    """

    def __init__(self, topology: Topology, metrics=None, max_message_bytes: int = MAX_MESSAGE_BYTES):
        self._topology = topology
        self._connection = topology.connection
        self._metrics = metrics
        self._builder = MessageBuilder(max_message_bytes)

    @property
    def topology(self) -> Topology:
        return self._topology

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        payload: Any,
        options: PublishOptions | None = None,
    ) -> bool:
        """
        Publish a payload.

        STAGE-PUB.1: Publish

        Returns:
            True when the broker confirmed the message, False otherwise

        Raises:
            BrokerConnectionError: No connection exists (reconnect scheduled)
        """
        options = options or PublishOptions()

        if not self._connection.is_connected:
            self._connection.schedule_reconnect()
            self._record_failure(exchange, "no_connection")
            raise BrokerConnectionError(
                "Cannot publish without a broker connection",
                details={"exchange": exchange, "routing_key": routing_key},
            )

        try:
            message = self._builder.build(payload, options)
        except MessageTooLargeError as e:
            logger.error(
                "Message rejected before publish",
                stage="PUB.SIZE",
                exchange=exchange,
                routing_key=routing_key,
                error=e.message,
            )
            self._record_failure(exchange, "too_large")
            return False

        try:
            await self._topology.ensure_declared()
            target = await self._topology.get_exchange(exchange)
            await target.publish(message, routing_key=routing_key)
        except BrokerConnectionError:
            self._record_failure(exchange, "no_connection")
            raise
        except (AMQPError, ChannelInvalidStateError, ConnectionError, TopologyError) as e:
            logger.error(
                "Publish failed",
                stage="PUB.ERR",
                exchange=exchange or "default",
                routing_key=routing_key,
                message_id=message.message_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            self._record_failure(exchange, type(e).__name__)
            # A broken channel or connection leaves cached declarations suspect
            self._topology.mark_stale()
            return False

        logger.debug(
            "Message published",
            stage="PUB.1",
            exchange=exchange or "default",
            routing_key=routing_key,
            message_id=message.message_id,
        )
        if self._metrics:
            self._metrics.record_published(exchange)
        return True

    async def send_to_queue(
        self, queue_name: str, payload: Any, options: PublishOptions | None = None
    ) -> bool:
        """
        Publish straight to a queue via the default exchange.

        The queue (with its dead-letter arguments) is declared first.
        """
        validate_queue_name(queue_name)
        if self._connection.is_connected:
            try:
                await self._topology.ensure_queue(queue_name)
            except (AMQPError, ChannelInvalidStateError) as e:
                logger.error(
                    "Queue declaration failed", stage="PUB.QUEUE", queue=queue_name, error=str(e)
                )
                self._record_failure(DEFAULT_EXCHANGE, type(e).__name__)
                return False
        return await self.publish(DEFAULT_EXCHANGE, queue_name, payload, options)

    def _record_failure(self, exchange: str, reason: str) -> None:
        if self._metrics:
            self._metrics.record_publish_failure(exchange, reason)

    # ------------------------------------------------------------------
    # Convenience publishers
    # ------------------------------------------------------------------

    async def publish_event(self, event: DomainEvent) -> bool:
        """Route a DomainEvent to the exchange for its kind."""
        names = self._topology.names
        exchange = (
            names.messages_exchange
            if event.kind == EventKind.MESSAGE_RECEIVED
            else names.commands_exchange
        )
        options = PublishOptions(
            message_id=event.id,
            headers={"message-type": event.kind.value, "session-id": event.tenant_id},
        )
        return await self.publish(exchange, event.routing_key, event.to_json_dict(), options)

    async def publish_message_received(self, event: InboundMessageEvent) -> bool:
        names = self._topology.names
        body = event.to_json_dict()
        body.setdefault("eventId", event.event_id or generate_event_id())
        options = PublishOptions(
            headers={
                "message-type": event.message_type,
                "session-id": event.session_id,
                "from-user": event.from_user,
            },
        )
        return await self.publish(names.messages_exchange, names.message_received_key, body, options)

    async def publish_send_command(
        self,
        command: SendCommand,
        priority: MessagePriority = MessagePriority.MEDIUM,
        sender: str = "system",
        max_retries: int = 3,
    ) -> bool:
        """Wrap a SendCommand in a queue envelope and put it on the send-commands queue."""
        queue = self._topology.names.send_commands_queue
        envelope = QueueMessage(
            id=command.event_id,
            content=command.to_json_dict(),
            metadata=MessageMetadata(
                sender=sender, priority=priority, max_retries=max_retries, original_queue=queue
            ),
        )
        options = PublishOptions(
            priority=priority.broker_priority,
            headers={
                "message-type": command.command,
                "session-id": command.instance_id,
                "from-user": sender,
            },
        )
        return await self.send_to_queue(queue, envelope, options)

    async def publish_http_send_request(
        self,
        instance_id: str,
        to: str,
        message: str,
        message_type: str = "text",
        sender: str = "http-api",
        priority: MessagePriority = MessagePriority.MEDIUM,
    ) -> bool:
        command = SendCommand(
            instance_id=instance_id,
            payload=SendPayload(to=to, message=message, type=message_type),
            metadata={"source": "http"},
        )
        return await self.publish_send_command(command, priority=priority, sender=sender)

    async def publish_instance_event(
        self, kind: str, instance_id: str, data: dict[str, Any] | None = None
    ) -> bool:
        """Instance lifecycle event on `instance.<kind>` (create, delete, ...)."""
        payload = {"instanceId": instance_id, "event": kind, "data": data or {}}
        options = PublishOptions(headers={"message-type": f"instance.{kind}", "session-id": instance_id})
        return await self.publish(
            self._topology.names.events_exchange, f"instance.{kind}", payload, options
        )

    async def republish(
        self, queue_name: str, envelope: QueueMessage, headers: dict[str, Any]
    ) -> bool:
        """Put an envelope back on its queue (retry path), keeping its id."""
        options = PublishOptions(
            message_id=envelope.id,
            priority=envelope.metadata.priority.broker_priority,
            headers=headers,
        )
        return await self.publish(DEFAULT_EXCHANGE, queue_name, envelope, options)
