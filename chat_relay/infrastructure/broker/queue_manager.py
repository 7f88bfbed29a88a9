"""
Queue Manager

Operator-facing queue administration on top of the shared connection:
per-queue dead-letter pairs, reliable direct sends, status, purge, delete.

Architecture:
    QueueManager (Public API)
        ├── ensure_queue()        relay queues via Topology, others get a <q>.dlx / <q>.dlq pair
        ├── send_message()        retry loop with backoff, dead-letter queue on exhaustion
        ├── queue_exists() / get_queue_status() / cached_queues()
        ├── delete_queue() / purge_queue()
        ├── validate_permissions()
        └── stats()

Dead-lettering (when DLQ is enabled):
    relay-owned queues  declared by Topology: relay.dlx ──dead.letter──> relay.dead.letter
    any other queue     <q> ──(x-dead-letter-exchange=<q>.dlx, routing key <q>)──> <q>.dlx ──<q>──> <q>.dlq

A queue is declared with one set of dead-letter arguments only; a second
scheme on the same name is refused by the broker (PRECONDITION_FAILED).

Existence checks always use a temporary channel: a passive declare of a
missing queue closes the channel it ran on.
"""

from typing import Any

import orjson
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import AbstractQueue
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError
from aiormq.exceptions import ChannelAccessRefused, ChannelNotFoundEntity

from chat_relay.config.settings import RetrySettings
from chat_relay.core.exceptions import BrokerConnectionError, PublishError
from chat_relay.core.logging import get_logger
from chat_relay.core.models import QueueMessage, QueueStatus, generate_event_id, utc_now
from chat_relay.core.resilience.error_classifier import BackoffPolicy, ErrorHandler
from chat_relay.core.resilience.scheduler import Clock, SystemClock
from chat_relay.infrastructure.broker.connection import BrokerConnection
from chat_relay.infrastructure.broker.producer import MAX_MESSAGE_BYTES, validate_queue_name
from chat_relay.infrastructure.broker.topology import Topology

logger = get_logger(__name__)


def dead_letter_exchange_for(queue_name: str) -> str:
    return f"{queue_name}.dlx"


def dead_letter_queue_for(queue_name: str) -> str:
    return f"{queue_name}.dlq"


class QueueManager:
    """
    Queue administration and reliable direct sends.

    Args:
        connection: Shared broker connection
        retry: Retry settings (attempts, backoff, DLQ switch)
        clock: Time source for backoff sleeps
        metrics: Optional MetricsCollector
        topology: Relay topology; the queues it owns keep its declaration
    """

    def __init__(
        self,
        connection: BrokerConnection,
        retry: RetrySettings | None = None,
        clock: Clock | None = None,
        metrics=None,
        error_handler: ErrorHandler | None = None,
        topology: Topology | None = None,
    ):
        self._connection = connection
        self._topology = topology
        self._retry = retry or RetrySettings()
        self._clock = clock or SystemClock()
        self._metrics = metrics
        self._error_handler = error_handler or ErrorHandler(
            max_retries=self._retry.RETRY_MAX_RETRIES,
            backoff=BackoffPolicy(
                base_delay_ms=self._retry.RETRY_BASE_DELAY_MS,
                max_delay_ms=self._retry.RETRY_MAX_DELAY_MS,
                exponential=self._retry.RETRY_EXPONENTIAL_BACKOFF,
            ),
            dlq_enabled=self._retry.DLQ_ENABLED,
        )
        self._queues: dict[str, QueueStatus] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        await self._connection.connect()

    async def disconnect(self) -> None:
        self._queues.clear()
        await self._connection.close()

    # ------------------------------------------------------------------
    # Declarations
    # ------------------------------------------------------------------

    async def queue_exists(self, queue_name: str) -> bool:
        validate_queue_name(queue_name)
        try:
            async with self._connection.temporary_channel() as channel:
                await channel.declare_queue(queue_name, passive=True)
            return True
        except ChannelNotFoundEntity:
            return False

    async def ensure_queue(
        self,
        queue_name: str,
        durable: bool = True,
        exclusive: bool = False,
        auto_delete: bool = False,
        arguments: dict[str, Any] | None = None,
    ) -> AbstractQueue:
        """
        Declare a queue, with its own dead-letter pair when DLQ is enabled.

        Relay queues (see owns_queue) are declared through the Topology so
        they keep the shared relay.dlx arguments; the options here are
        ignored for them.

        STAGE-QM.1: Queue declaration
        """
        validate_queue_name(queue_name)
        if self.owns_queue(queue_name):
            await self._topology.ensure_declared()
            queue = await self._topology.ensure_queue(queue_name)
            self._cache_status(queue_name, queue)
            logger.info("Queue ensured", stage="QM.1", queue=queue_name, declared_by="topology")
            return queue

        channel = await self._connection.get_channel()
        queue_arguments = dict(arguments or {})
        if self._retry.DLQ_ENABLED and not queue_name.endswith(".dlq"):
            await self._ensure_dead_letter_pair(queue_name)
            queue_arguments.setdefault("x-dead-letter-exchange", dead_letter_exchange_for(queue_name))
            queue_arguments.setdefault("x-dead-letter-routing-key", queue_name)

        queue = await channel.declare_queue(
            queue_name,
            durable=durable,
            exclusive=exclusive,
            auto_delete=auto_delete,
            arguments=queue_arguments or None,
        )
        self._cache_status(queue_name, queue)
        logger.info("Queue ensured", stage="QM.1", queue=queue_name, arguments=queue_arguments)
        return queue

    def owns_queue(self, queue_name: str) -> bool:
        """Whether the relay topology declares this queue."""
        if self._topology is None:
            return False
        names = self._topology.names
        return queue_name in (
            names.send_commands_queue,
            names.bridge_queue,
            names.dead_letter_queue,
        ) or queue_name.startswith(names.instance_queue_prefix)

    def dead_letter_queue(self, queue_name: str) -> str:
        if self.owns_queue(queue_name):
            return self._topology.names.dead_letter_queue
        return dead_letter_queue_for(queue_name)

    async def _ensure_dead_letter_pair(self, queue_name: str) -> None:
        channel = await self._connection.get_channel()
        dlx = await channel.declare_exchange(
            dead_letter_exchange_for(queue_name), ExchangeType.DIRECT, durable=True
        )
        dlq = await channel.declare_queue(dead_letter_queue_for(queue_name), durable=True)
        await dlq.bind(dlx, routing_key=queue_name)

    def _cache_status(self, queue_name: str, queue: AbstractQueue) -> None:
        result = getattr(queue, "declaration_result", None)
        self._queues[queue_name] = QueueStatus(
            name=queue_name,
            message_count=getattr(result, "message_count", 0) or 0,
            consumer_count=getattr(result, "consumer_count", 0) or 0,
            exists=True,
            last_activity=utc_now(),
        )

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send_message(self, queue_name: str, message: QueueMessage) -> bool:
        """
        Send an envelope straight to a queue, retrying with backoff.

        STAGE-QM.2: Reliable send

        Attempts are 1 + max_retries. Terminal failures stop early. When
        attempts run out the message goes to its dead-letter queue and
        PublishError is raised.

        Raises:
            PublishError: Every attempt failed
        """
        validate_queue_name(queue_name)
        attempts = 1 + message.metadata.max_retries
        last_error: BaseException | None = None

        for attempt in range(1, attempts + 1):
            envelope = message.model_copy(
                update={
                    "metadata": message.metadata.model_copy(
                        update={"retry_count": attempt - 1, "original_queue": queue_name}
                    )
                }
            )
            try:
                await self.ensure_queue(queue_name)
                await self._publish_to_queue(
                    queue_name,
                    envelope,
                    headers={
                        "x-original-queue": queue_name,
                        "x-retry-count": attempt - 1,
                        "x-max-retries": message.metadata.max_retries,
                        "x-sender": message.metadata.sender,
                    },
                )
                logger.info(
                    "Message sent", stage="QM.2", queue=queue_name, message_id=message.id, attempt=attempt
                )
                return True
            except (AMQPError, ChannelInvalidStateError, BrokerConnectionError, ConnectionError) as e:
                last_error = e
                action = self._error_handler.handle(e, "queue_send", attempt - 1, message.metadata.max_retries)
                if action.info.terminal or attempt == attempts:
                    break
                if action.info.reconnect and not self._connection.is_connected:
                    self._connection.schedule_reconnect()
                await self._clock.sleep(action.delay_ms / 1000.0)

        reason = self._error_handler.classify(last_error).describe() if last_error else "unknown"
        if self._retry.DLQ_ENABLED:
            await self.send_to_dead_letter_queue(queue_name, message, reason)
        raise PublishError(
            f"Failed to send message to {queue_name}: {reason}",
            correlation_id=message.id,
            details={"queue": queue_name, "attempts": attempts},
        ) from last_error

    async def send_to_dead_letter_queue(
        self, queue_name: str, message: QueueMessage, reason: str
    ) -> bool:
        """Park a message in its dead-letter queue with its failure context. Never raises."""
        dlq_name = self.dead_letter_queue(queue_name)
        failed_at = utc_now().isoformat()
        body = {
            **message.to_json_dict(),
            "originalQueue": queue_name,
            "errorMessage": reason,
            "failedAt": failed_at,
        }
        try:
            if self.owns_queue(dlq_name):
                await self._topology.ensure_declared()
            else:
                channel = await self._connection.get_channel()
                await channel.declare_queue(dlq_name, durable=True)
            await self._publish_to_queue(
                dlq_name,
                body,
                headers={
                    "x-original-queue": queue_name,
                    "x-failure-reason": reason,
                    "x-failed-at": failed_at,
                },
            )
        except (AMQPError, ChannelInvalidStateError, BrokerConnectionError, ConnectionError) as e:
            logger.error(
                "Dead-letter send failed", stage="QM.DLQ_ERR", queue=dlq_name, message_id=message.id, error=str(e)
            )
            return False

        logger.warning("Message dead-lettered", stage="QM.DLQ", queue=dlq_name, message_id=message.id, reason=reason)
        return True

    async def _publish_to_queue(self, queue_name: str, payload: Any, headers: dict[str, Any]) -> None:
        if isinstance(payload, QueueMessage):
            message_id = payload.id
            priority = payload.metadata.priority.broker_priority
            body = payload.to_bytes()
        else:
            message_id = payload.get("id") or generate_event_id()
            priority = None
            body = orjson.dumps(payload)
        if len(body) > MAX_MESSAGE_BYTES:
            raise PublishError(f"Message of {len(body)} bytes exceeds {MAX_MESSAGE_BYTES}")

        channel = await self._connection.get_channel()
        await channel.default_exchange.publish(
            Message(
                body,
                content_type="application/json",
                delivery_mode=DeliveryMode.PERSISTENT,
                message_id=message_id,
                priority=priority,
                headers=headers,
            ),
            routing_key=queue_name,
        )
        if self._metrics:
            self._metrics.record_published("")

    # ------------------------------------------------------------------
    # Inspection and maintenance
    # ------------------------------------------------------------------

    async def get_queue_status(self, queue_name: str) -> QueueStatus:
        """Live counts via a passive declare; exists=False when the queue is missing."""
        validate_queue_name(queue_name)
        try:
            async with self._connection.temporary_channel() as channel:
                queue = await channel.declare_queue(queue_name, passive=True)
        except ChannelNotFoundEntity:
            self._queues.pop(queue_name, None)
            return QueueStatus(name=queue_name, exists=False)

        self._cache_status(queue_name, queue)
        return self._queues[queue_name]

    def cached_queues(self) -> list[QueueStatus]:
        return list(self._queues.values())

    async def delete_queue(self, queue_name: str, if_unused: bool = False, if_empty: bool = False) -> bool:
        """
        Returns:
            True if deleted, False if the broker refused (in use / not empty / missing)
        """
        validate_queue_name(queue_name)
        try:
            async with self._connection.temporary_channel() as channel:
                await channel.queue_delete(queue_name, if_unused=if_unused, if_empty=if_empty)
        except AMQPError as e:
            logger.warning("Queue delete refused", stage="QM.DELETE", queue=queue_name, error=str(e))
            return False
        self._queues.pop(queue_name, None)
        logger.info("Queue deleted", stage="QM.DELETE", queue=queue_name)
        return True

    async def purge_queue(self, queue_name: str) -> int:
        """
        Returns:
            Number of messages purged (0 if the queue does not exist)
        """
        validate_queue_name(queue_name)
        try:
            async with self._connection.temporary_channel() as channel:
                queue = await channel.declare_queue(queue_name, passive=True)
                result = await queue.purge()
        except ChannelNotFoundEntity:
            return 0
        purged = getattr(result, "message_count", 0) or 0
        logger.info("Queue purged", stage="QM.PURGE", queue=queue_name, purged=purged)
        return purged

    async def validate_permissions(self) -> dict[str, Any]:
        """
        Check that the configured user may declare and publish.

        Uses an exclusive, auto-deleted probe queue.
        """
        report: dict[str, Any] = {"can_declare": False, "can_publish": False, "errors": []}
        probe = f"relay.permission.check.{generate_event_id()}"
        try:
            async with self._connection.temporary_channel() as channel:
                queue = await channel.declare_queue(probe, exclusive=True, auto_delete=True)
                report["can_declare"] = True
                await channel.default_exchange.publish(Message(b"{}"), routing_key=probe)
                report["can_publish"] = True
                await queue.delete(if_unused=False, if_empty=False)
        except ChannelAccessRefused as e:
            report["errors"].append(f"PERMISSION_DENIED: {e}")
        except AMQPError as e:
            report["errors"].append(str(e))

        log = logger.info if not report["errors"] else logger.error
        log("Broker permissions checked", stage="QM.PERMS", **report)
        return report

    def stats(self) -> dict[str, Any]:
        return {
            "connected": self._connection.is_connected,
            "url": self._connection.masked_url,
            "queue_count": len(self._queues),
            "queues": [status.to_json_dict() for status in self._queues.values()],
            "dlq_enabled": self._retry.DLQ_ENABLED,
            "max_retries": self._retry.RETRY_MAX_RETRIES,
        }
