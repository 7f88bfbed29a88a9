"""
Reliable Consumer - At-Least-Once Queue Processing

Consumes one or more broker queues, runs the business handler per delivery,
and settles every delivery exactly once.

Architecture:
    ReliableConsumer (Public API)
        ├── EnvelopeDecoder (body → QueueMessage, retry count from headers)
        ├── FailureResolver (classify → retry / dead-letter / discard)
        └── ConsumerLoop (bounded inbox drained by one task)

Delivery State Machine:
    Received ──handler ok──────────────────────────────> Acked
    Received ──retryable, retry_count < max────────────> Retried
             (DelayedTask on the shared Scheduler: republish same queue
              with retry_count+1, then ack; the loop does not wait)
    Received ──terminal or exhausted──(DLX publish ok)─> DeadLettered (ack)
    Received ──terminal or exhausted──(DLX publish fails)> Discarded
             (record parked in the dead-letter store, nack without requeue)

Flow Control:
    The broker callback only enqueues onto a bounded asyncio.Queue; a single
    processing task drains it. Broker prefetch bounds what can be in flight.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import orjson
from aio_pika.abc import AbstractIncomingMessage, AbstractQueue
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError

from chat_relay.core.exceptions import BrokerConnectionError, ErrorCategory, InvalidMessageFormatError
from chat_relay.core.logging import clear_correlation_id, get_logger, set_correlation_id
from chat_relay.core.models import (
    DeadLetterRecord,
    MessageMetadata,
    QueueMessage,
    generate_event_id,
    utc_now,
)
from chat_relay.core.resilience.error_classifier import ActionType, ErrorHandler, ErrorInfo
from chat_relay.core.resilience.scheduler import Clock, DelayedTask, Scheduler, SystemClock
from chat_relay.infrastructure.broker.producer import PublishOptions

logger = get_logger(__name__)

MessageHandler = Callable[[QueueMessage, AbstractIncomingMessage], Awaitable[Any]]

RETRY_COUNT_HEADER = "x-retry-count"
DLQ_ID_HEADER = "x-dlq-message-id"
DLQ_ATTEMPT_HEADER = "x-retry-attempt"


# =============================================================================
# CONFIGURATION & CONSTANTS
# =============================================================================


class DeliveryOutcome(str, Enum):
    ACKED = "acked"
    RETRIED = "retried"
    DEAD_LETTERED = "dead_lettered"
    DISCARDED = "discarded"


@dataclass
class ConsumerConfig:
    """
    Attributes:
        max_retries: Retry budget for bodies that carry no envelope metadata
        inbox_size: Bound of the callback → processing queue
        shutdown_timeout_seconds: Wait for the in-flight delivery on stop()
    """
    max_retries: int = 3
    inbox_size: int = 100
    shutdown_timeout_seconds: float = 5.0


@dataclass
class DeliveryContext:
    """State of one delivery while it is being processed."""
    queue_name: str
    message: AbstractIncomingMessage
    envelope: QueueMessage | None = None
    retry_count: int = 0
    start_time: float = field(default_factory=time.perf_counter)

    @property
    def elapsed_seconds(self) -> float:
        return time.perf_counter() - self.start_time


def header_int(headers: dict[str, Any] | None, key: str) -> int | None:
    if not headers or key not in headers:
        return None
    value = headers[key]
    if isinstance(value, bytes):
        value = value.decode()
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def header_str(headers: dict[str, Any] | None, key: str) -> str | None:
    if not headers or headers.get(key) is None:
        return None
    value = headers[key]
    return value.decode() if isinstance(value, bytes) else str(value)


# =============================================================================
# LAYER 1: ENVELOPE DECODING
# =============================================================================


class EnvelopeDecoder:
    """
    Turns a delivery body into a QueueMessage.

    Bodies that are not envelopes (e.g. events published onto an exchange)
    are wrapped in one, keyed by the AMQP message id.
    """

    @staticmethod
    def decode(message: AbstractIncomingMessage, queue_name: str, default_max_retries: int) -> QueueMessage:
        """
        Raises:
            InvalidMessageFormatError: Body is not JSON
            pydantic.ValidationError: Body looks like an envelope but is malformed
        """
        try:
            data = orjson.loads(message.body)
        except orjson.JSONDecodeError as e:
            raise InvalidMessageFormatError(
                f"Delivery body is not JSON: {e}", details={"queue": queue_name}
            ) from e

        if isinstance(data, dict) and "id" in data and "metadata" in data:
            envelope = QueueMessage.model_validate(data)
        else:
            envelope = QueueMessage(
                id=message.message_id or generate_event_id(),
                content=data,
                metadata=MessageMetadata(max_retries=default_max_retries, original_queue=queue_name),
            )

        # Header wins when a republish path bumped it without rewriting the body
        header_count = header_int(message.headers, RETRY_COUNT_HEADER)
        if header_count is not None and header_count > envelope.metadata.retry_count:
            retry_count = min(header_count, envelope.metadata.max_retries)
            envelope = envelope.model_copy(
                update={"metadata": envelope.metadata.model_copy(update={"retry_count": retry_count})}
            )
        return envelope


# =============================================================================
# LAYER 2: FAILURE RESOLUTION
# =============================================================================


class FailureResolver:
    """
    Settles a failed delivery.

    Responsibility: classify the error, then retry, dead-letter or discard,
    and ack/nack the original exactly once.
    """

    def __init__(
        self,
        producer,
        error_handler: ErrorHandler,
        scheduler: Scheduler,
        dead_letter_store=None,
        on_settled: Callable[[str, DeliveryOutcome], None] | None = None,
    ):
        self._producer = producer
        self._error_handler = error_handler
        self._scheduler = scheduler
        self._store = dead_letter_store
        self._on_settled = on_settled
        # Deliveries backing off: unacked until their DelayedTask fires
        self._pending: dict[DelayedTask, DeliveryContext] = {}

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def resolve(self, ctx: DeliveryContext, error: Exception) -> DeliveryOutcome:
        max_retries = (
            ctx.envelope.metadata.max_retries if ctx.envelope else self._error_handler.max_retries
        )
        action = self._error_handler.handle(error, f"consume:{ctx.queue_name}", ctx.retry_count, max_retries)
        info = action.info

        if info.category == ErrorCategory.DUPLICATE:
            # Already delivered once; nothing left to do
            await settle(ctx.message.ack)
            return DeliveryOutcome.ACKED

        if action.action in (ActionType.RETRY, ActionType.RECONNECT) and ctx.envelope is not None:
            connection = self._producer.topology.connection
            if action.action == ActionType.RECONNECT and not connection.is_connected:
                connection.schedule_reconnect()
            self._schedule_retry(ctx, info, action.delay_ms)
            return DeliveryOutcome.RETRIED

        if action.action == ActionType.DISCARD:
            logger.error(
                "Delivery discarded (dead-lettering disabled)",
                stage="CONSUMER.DISCARD",
                queue=ctx.queue_name,
                error=info.describe(),
            )
            await settle(ctx.message.nack, requeue=False)
            return DeliveryOutcome.DISCARDED

        return await self._dead_letter(ctx, info)

    def _schedule_retry(self, ctx: DeliveryContext, info: ErrorInfo, delay_ms: int) -> DelayedTask:
        """
        Republish after `delay_ms` on the shared scheduler.

        The processing loop moves on immediately; the original delivery stays
        unacked (and counted against prefetch) until the republish settles it.
        """
        task: DelayedTask | None = None

        async def fire() -> None:
            try:
                await self._retry(ctx, info)
            finally:
                self._pending.pop(task, None)

        task = self._scheduler.after(f"retry:{ctx.queue_name}:{ctx.envelope.id}", delay_ms / 1000.0, fire)
        self._pending[task] = ctx
        logger.info(
            "Delivery backing off before retry",
            stage="CONSUMER.BACKOFF",
            queue=ctx.queue_name,
            message_id=ctx.envelope.id,
            retry_count=ctx.retry_count,
            delay_ms=delay_ms,
        )
        return task

    async def _retry(self, ctx: DeliveryContext, info: ErrorInfo) -> None:
        if await self._republish(ctx, info):
            await settle(ctx.message.ack)
            return
        logger.error(
            "Retry republish failed, dead-lettering instead",
            stage="CONSUMER.RETRY_ERR",
            queue=ctx.queue_name,
            message_id=ctx.envelope.id,
        )
        outcome = await self._dead_letter(ctx, info)
        if self._on_settled:
            self._on_settled(ctx.queue_name, outcome)

    async def wait_pending(self) -> None:
        """Wait until every scheduled retry has settled its delivery."""
        while self._pending:
            task = next(iter(self._pending))
            await task.join()
            self._pending.pop(task, None)

    async def cancel_pending(self) -> int:
        """
        Stop scheduled retries. Deliveries that were still waiting go back to
        the broker with their current retry count.
        """
        pending = list(self._pending.items())
        self._pending.clear()
        for task, ctx in pending:
            await task.stop()
            if not task.fired:
                await settle(ctx.message.nack, requeue=True)
        return len(pending)

    async def _republish(self, ctx: DeliveryContext, info: ErrorInfo) -> bool:
        retried = ctx.envelope.with_retry()
        headers = {
            **passthrough_headers(ctx.message.headers),
            RETRY_COUNT_HEADER: retried.metadata.retry_count,
            "x-last-error": info.describe(),
            "x-failed-at": utc_now().isoformat(),
        }
        try:
            ok = await self._producer.republish(ctx.queue_name, retried, headers)
        except BrokerConnectionError:
            return False
        if ok:
            logger.info(
                "Delivery scheduled for retry",
                stage="CONSUMER.RETRY",
                queue=ctx.queue_name,
                message_id=retried.id,
                retry_count=retried.metadata.retry_count,
                max_retries=retried.metadata.max_retries,
            )
        return ok

    async def _dead_letter(self, ctx: DeliveryContext, info: ErrorInfo) -> DeliveryOutcome:
        names = self._producer.topology.names
        message = ctx.message
        failed_at = utc_now().isoformat()
        headers = {
            RETRY_COUNT_HEADER: ctx.retry_count,
            "x-error-message": info.message,
            "x-error-type": info.category.value,
            "x-failed-at": failed_at,
            "x-final-error": info.describe(),
            "x-original-queue": ctx.queue_name,
            "x-original-exchange": message.exchange or "",
            "x-original-routing-key": message.routing_key or ctx.queue_name,
        }
        body = ctx.envelope.to_json_dict() if ctx.envelope else message.body.decode("utf-8", errors="replace")

        try:
            published = await self._producer.publish(
                names.dead_letter_exchange,
                names.dead_letter_key,
                body,
                PublishOptions(message_id=message.message_id, headers=headers),
            )
        except BrokerConnectionError:
            published = False

        record = self._build_record(ctx, info)

        if published:
            await self._park(record)
            await settle(message.ack)
            logger.warning(
                "Delivery dead-lettered",
                stage="CONSUMER.DLQ",
                queue=ctx.queue_name,
                message_id=message.message_id,
                error=info.describe(),
                retry_count=ctx.retry_count,
            )
            return DeliveryOutcome.DEAD_LETTERED

        parked = await self._park(record)
        logger.error(
            "Dead-letter publish failed, rejecting delivery",
            stage="CONSUMER.DLQ_ERR",
            queue=ctx.queue_name,
            message_id=message.message_id,
            error=info.describe(),
            parked_locally=parked,
        )
        await settle(message.nack, requeue=False)
        return DeliveryOutcome.DISCARDED

    def _build_record(self, ctx: DeliveryContext, info: ErrorInfo) -> DeadLetterRecord | None:
        if self._store is None:
            return None
        message = ctx.message
        max_retries = self._store.max_retries

        # A delivery produced by a dead-letter retry keeps its record identity
        record_id = header_str(message.headers, DLQ_ID_HEADER) or generate_event_id("dlq-")
        attempts = min(header_int(message.headers, DLQ_ATTEMPT_HEADER) or 0, max_retries)

        if ctx.envelope is not None:
            # Original payload: a fresh retry budget on redelivery
            original = ctx.envelope.model_copy(
                update={"metadata": ctx.envelope.metadata.model_copy(update={"retry_count": 0})}
            )
            payload: Any = original.to_json_dict()
        else:
            payload = message.body.decode("utf-8", errors="replace")

        return DeadLetterRecord(
            id=record_id,
            original_routing_key=message.routing_key or ctx.queue_name,
            original_exchange=message.exchange or "",
            original_queue=ctx.queue_name,
            payload=payload,
            error=info.describe(),
            retry_count=attempts,
            max_retries=max_retries,
            tenant_id=header_str(message.headers, "session-id"),
        )

    async def _park(self, record: DeadLetterRecord | None) -> bool:
        if record is None:
            return False
        try:
            await self._store.park(record, publish=False)
            return True
        except Exception as e:
            logger.error(
                "Failed to park dead-letter record",
                stage="CONSUMER.PARK_ERR",
                record_id=record.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False


def passthrough_headers(headers: dict[str, Any] | None) -> dict[str, Any]:
    """Application headers worth keeping across a republish."""
    keep = ("message-type", "session-id", "from-user", DLQ_ID_HEADER, DLQ_ATTEMPT_HEADER)
    return {k: headers[k] for k in keep if headers and k in headers}


async def settle(action: Callable[..., Awaitable[Any]], **kwargs) -> bool:
    """
    ack()/nack() that survives a closed channel.

    If the channel is gone the broker redelivers the message anyway.
    """
    try:
        await action(**kwargs)
        return True
    except (AMQPError, ChannelInvalidStateError) as e:
        logger.warning(
            "Could not settle delivery, broker will redeliver",
            stage="CONSUMER.SETTLE_ERR",
            error=str(e),
            error_type=type(e).__name__,
        )
        return False


# =============================================================================
# LAYER 3: PUBLIC API
# =============================================================================


class ReliableConsumer:
    """
    Consumes queues with at-least-once semantics.

    Usage:
        consumer = ReliableConsumer(
            producer,
            handlers={"relay.send.commands": send_handler},
            error_handler=error_handler,
            dead_letter_store=store,
        )
        await consumer.start()
        ...
        await consumer.stop()
    """

    def __init__(
        self,
        producer,
        handlers: dict[str, MessageHandler],
        error_handler: ErrorHandler | None = None,
        clock: Clock | None = None,
        dead_letter_store=None,
        metrics=None,
        config: ConsumerConfig | None = None,
        name: str = "reliable-consumer",
        scheduler: Scheduler | None = None,
    ):
        self.name = name
        self._producer = producer
        self._handlers = handlers
        self._error_handler = error_handler or ErrorHandler()
        self._scheduler = scheduler or Scheduler(clock or SystemClock())
        self._metrics = metrics
        self._config = config or ConsumerConfig(max_retries=self._error_handler.max_retries)
        self._resolver = FailureResolver(
            producer, self._error_handler, self._scheduler, dead_letter_store, on_settled=self._record
        )

        self._inbox: asyncio.Queue[tuple[str, AbstractIncomingMessage]] = asyncio.Queue(
            maxsize=self._config.inbox_size
        )
        self._subscriptions: list[tuple[AbstractQueue, str]] = []
        self._task: asyncio.Task | None = None
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._counts = {outcome: 0 for outcome in DeliveryOutcome}

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """
        Subscribe to every handled queue and start the processing task.

        STAGE-CONSUMER.1: Start
        """
        if self._running:
            return
        topology = self._producer.topology
        await topology.ensure_declared()

        for queue_name in self._handlers:
            queue = await topology.ensure_queue(queue_name)
            tag = await queue.consume(self._make_callback(queue_name))
            self._subscriptions.append((queue, tag))

        self._running = True
        self._shutdown_event.clear()
        self._task = asyncio.create_task(self._run(), name=self.name)
        logger.info("Consumer started", stage="CONSUMER.1", consumer=self.name, queues=list(self._handlers))

    def _make_callback(self, queue_name: str):
        async def on_message(message: AbstractIncomingMessage) -> None:
            await self._inbox.put((queue_name, message))

        return on_message

    async def _run(self) -> None:
        while self._running and not self._shutdown_event.is_set():
            queue_name, message = await self._inbox.get()
            try:
                await self.process(queue_name, message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Unexpected error settling delivery",
                    stage="CONSUMER.LOOP_ERR",
                    consumer=self.name,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
            finally:
                self._inbox.task_done()

    async def process(self, queue_name: str, message: AbstractIncomingMessage) -> DeliveryOutcome:
        """
        Run the handler for one delivery and settle it.

        STAGE-CONSUMER.2: Process delivery
        """
        ctx = DeliveryContext(queue_name=queue_name, message=message)
        set_correlation_id(message.message_id or generate_event_id())
        try:
            try:
                ctx.envelope = EnvelopeDecoder.decode(message, queue_name, self._config.max_retries)
                ctx.retry_count = ctx.envelope.metadata.retry_count
                handler = self._handlers[queue_name]
                await handler(ctx.envelope, message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                outcome = await self._resolver.resolve(ctx, e)
            else:
                await settle(message.ack)
                outcome = DeliveryOutcome.ACKED
                logger.info(
                    "Delivery acknowledged",
                    stage="CONSUMER.ACK",
                    queue=queue_name,
                    message_id=ctx.envelope.id,
                    retry_count=ctx.retry_count,
                )
        finally:
            if self._metrics:
                self._metrics.record_handler_duration(queue_name, ctx.elapsed_seconds)
            clear_correlation_id()

        self._record(queue_name, outcome)
        return outcome

    def _record(self, queue_name: str, outcome: DeliveryOutcome) -> None:
        self._counts[outcome] += 1
        if self._metrics:
            self._metrics.record_delivery(queue_name, outcome.value)

    async def wait_for_retries(self) -> None:
        """Wait until every delivery backing off has been republished or dead-lettered."""
        await self._resolver.wait_pending()

    async def stop(self) -> None:
        """
        Cancel subscriptions, the processing task and pending retries, and
        return anything still queued locally to the broker. A delivery cut
        off mid-handler stays unacked and is redelivered.

        STAGE-CONSUMER.3: Stop
        """
        self._running = False
        self._shutdown_event.set()

        for queue, tag in self._subscriptions:
            try:
                await queue.cancel(tag)
            except (AMQPError, ChannelInvalidStateError) as e:
                logger.warning("Consumer cancel failed", stage="CONSUMER.3", queue=queue.name, error=str(e))
        self._subscriptions.clear()

        if self._task is not None:
            self._task.cancel()
            try:
                await asyncio.wait_for(self._task, timeout=self._config.shutdown_timeout_seconds)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass
            self._task = None

        returned = await self._resolver.cancel_pending()
        while not self._inbox.empty():
            _, message = self._inbox.get_nowait()
            await settle(message.nack, requeue=True)
            returned += 1

        logger.info("Consumer stopped", stage="CONSUMER.3", consumer=self.name, returned=returned)

    def stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "running": self._running,
            "queues": list(self._handlers),
            "inbox_depth": self._inbox.qsize(),
            "pending_retries": self._resolver.pending,
            **{outcome.value: count for outcome, count in self._counts.items()},
        }
