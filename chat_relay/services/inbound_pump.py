"""
Inbound Event Pump

Turns the session provider's inbound-message callbacks into a bounded queue
drained by one publishing task.

Architecture:
    provider.on_inbound(callback) ──put──> asyncio.Queue(maxsize) ──> _run()
                                                                      └── publish_message_received
                                                                          (tenacity retry)

When the queue is full the callback waits, so a burst from the provider is
slowed down instead of buffered without bound. An event the broker still
refuses after publish_attempts is parked in the dead-letter store under the
messages exchange, so the retry sweep can republish it later. stop() drains
whatever is still queued through the same publish path.
"""

import asyncio
from typing import Any

from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from chat_relay.core.exceptions import BrokerConnectionError, PublishError
from chat_relay.core.interfaces.session_provider import SessionProvider
from chat_relay.core.logging import get_logger
from chat_relay.core.models import DeadLetterRecord, InboundMessageEvent, generate_event_id
from chat_relay.core.resilience.error_classifier import ErrorClassifier

logger = get_logger(__name__)


class InboundEventPump:
    """
    Usage:
        pump = InboundEventPump(producer, queue_size=1000)
        pump.attach(provider)
        await pump.start()
    """

    def __init__(
        self,
        producer,
        queue_size: int = 1000,
        publish_attempts: int = 3,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 5.0,
        retry_wait: wait_base | None = None,
        dead_letter_store=None,
    ):
        self._producer = producer
        self._store = dead_letter_store
        self._classifier = ErrorClassifier()
        self._queue: asyncio.Queue[InboundMessageEvent] = asyncio.Queue(maxsize=queue_size)
        self._publish_attempts = publish_attempts
        self._retry_wait = retry_wait or wait_exponential(multiplier=retry_base_delay, max=retry_max_delay)
        self._task: asyncio.Task | None = None
        self._in_flight: InboundMessageEvent | None = None
        self._running = False
        self.published = 0
        self.parked = 0
        self.dropped = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    def attach(self, provider: SessionProvider) -> None:
        provider.on_inbound(self.enqueue)

    async def enqueue(self, event: InboundMessageEvent) -> None:
        """Provider callback: waits while the queue is full."""
        await self._queue.put(event)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run(), name="inbound-event-pump")
        logger.info("Inbound pump started", stage="PUMP.0", queue_size=self._queue.maxsize)

    async def _run(self) -> None:
        while self._running:
            event = await self._queue.get()
            self._in_flight = event
            try:
                await self.publish(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.dropped += 1
                logger.error(
                    "Inbound message dropped",
                    stage="PUMP.ERR",
                    session_id=event.session_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
            finally:
                self._queue.task_done()
            self._in_flight = None

    async def publish(self, event: InboundMessageEvent) -> bool:
        """
        Publish one inbound event, retrying transient broker failures.

        STAGE-PUMP.1: Publish inbound message

        Returns:
            Whether the event reached the broker. False means it was parked
            in the dead-letter store (or dropped when there is none).
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._publish_attempts),
            wait=self._retry_wait,
            retry=retry_if_exception_type((PublishError, BrokerConnectionError)),
            before_sleep=lambda state: logger.warning(
                "Inbound publish failed, retrying",
                stage="PUMP.RETRY",
                attempt=state.attempt_number,
                session_id=event.session_id,
                message_id=event.message_id,
            ),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    if not await self._producer.publish_message_received(event):
                        raise PublishError(
                            "Broker did not confirm inbound message",
                            details={"session_id": event.session_id, "message_id": event.message_id},
                        )
        except RetryError as e:
            await self._park(event, e.last_attempt.exception())
            return False

        self.published += 1
        logger.debug(
            "Inbound message published",
            stage="PUMP.1",
            session_id=event.session_id,
            message_id=event.message_id,
        )
        return True

    async def _park(self, event: InboundMessageEvent, cause: BaseException) -> None:
        """
        STAGE-PUMP.DLQ: Park an event the broker kept refusing
        """
        error = self._classifier.classify(cause).describe()
        if self._store is None:
            self.dropped += 1
            logger.error(
                "Inbound message dropped after retries",
                stage="PUMP.ERR",
                session_id=event.session_id,
                message_id=event.message_id,
                attempts=self._publish_attempts,
                error=error,
            )
            return

        names = self._producer.topology.names
        body = event.to_json_dict()
        body.setdefault("eventId", event.event_id or generate_event_id())
        record = DeadLetterRecord(
            id=generate_event_id("dlq-"),
            original_exchange=names.messages_exchange,
            original_routing_key=names.message_received_key,
            payload=body,
            error=error,
            max_retries=self._store.max_retries,
            tenant_id=event.session_id,
        )
        try:
            await self._store.park(record, publish=False)
        except Exception as e:
            self.dropped += 1
            logger.error(
                "Inbound message dropped, dead-letter store unavailable",
                stage="PUMP.ERR",
                session_id=event.session_id,
                message_id=event.message_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return

        self.parked += 1
        logger.warning(
            "Inbound message parked after retries",
            stage="PUMP.DLQ",
            session_id=event.session_id,
            message_id=event.message_id,
            record_id=record.id,
            attempts=self._publish_attempts,
            error=error,
        )

    async def stop(self) -> None:
        """
        Stop the drain task, then publish what is still queued.

        An event interrupted mid-publish is published again (at-least-once);
        stores keyed by eventId absorb the repeat.
        """
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        remaining: list[InboundMessageEvent] = []
        if self._in_flight is not None:
            remaining.append(self._in_flight)
            self._in_flight = None
        while not self._queue.empty():
            remaining.append(self._queue.get_nowait())
            self._queue.task_done()

        if remaining:
            logger.info("Draining inbound events at shutdown", stage="PUMP.0", pending=len(remaining))
        for event in remaining:
            await self.publish(event)
        logger.info("Inbound pump stopped", stage="PUMP.0")

    def stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "depth": self.depth,
            "published": self.published,
            "parked": self.parked,
            "dropped": self.dropped,
        }
