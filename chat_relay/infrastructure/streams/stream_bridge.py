"""
Broker → Redis Streams → Store Bridge

Architecture:
    StreamBridge (Public API)
        ├── StreamManager (stream lifecycle and consumer group)
        ├── MessageSerializer (payload encoding/decoding)
        ├── BrokerToLogRelay (broker queue → XADD, ack after append)
        └── LogReader (XREADGROUP → storage callback → XACK)

Delivery Guarantees:
    - A broker delivery is acked only after XADD returned an entry id.
      A failed append is nacked without requeue; the queue's dead-letter
      binding catches it.
    - A stream entry is acked only after the storage callback returned.
      Entries whose callback failed stay pending in the group.
    - On start the reader replays this consumer's pending entries (id "0")
      before reading new ones (">"), so a crash between store write and XACK
      is recovered on restart. Stores are idempotent on the event id, which
      makes the replay harmless.

Stream Entry Layout:
    eventId     event id stamped by the producer
    sessionId   tenant the message arrived on
    routingKey  broker routing key of the delivery
    payload     JSON-encoded event body
    timestamp   append time (ISO-8601)

Author: Senior Solution Architect
Date: 2025-12-10
"""

import asyncio
import os
import socket
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import orjson
from aio_pika.abc import AbstractIncomingMessage, AbstractQueue
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError
from redis.exceptions import RedisError, ResponseError

from chat_relay.config.settings import StreamSettings
from chat_relay.core.exceptions import ConsumerGroupError, StreamAppendError
from chat_relay.core.interfaces.persistent_store import PersistentStore
from chat_relay.core.logging import clear_correlation_id, get_logger, set_correlation_id
from chat_relay.core.models import InboundMessageEvent
from chat_relay.core.resilience.scheduler import Clock, SystemClock
from chat_relay.infrastructure.broker.topology import Topology
from chat_relay.infrastructure.cache.redis_client import RedisClient

logger = get_logger(__name__)

StorageCallback = Callable[[str, dict[str, Any]], Awaitable[None]]


def default_consumer_name() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


# =============================================================================
# LAYER 1: STREAM MANAGEMENT
# Handles Redis Stream lifecycle and consumer group operations
# =============================================================================


class StreamManager:
    """
    Manages the replay log stream and its consumer group.

    Consumer Group Pattern:
    - Stream: Ordered log of relayed messages
    - Group: Logical set of readers that store them
    - Consumer: One relay process (hostname-pid)
    - Pending: Entries delivered to a consumer but not yet XACKed
    """

    def __init__(self, stream_name: str, group_name: str, redis_client: RedisClient):
        self._stream_name = stream_name
        self._group_name = group_name
        self._redis = redis_client
        self._initialized = False

    @property
    def stream_name(self) -> str:
        return self._stream_name

    @property
    def group_name(self) -> str:
        return self._group_name

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """
        Create the consumer group (and the stream) if missing.

        STAGE-STREAM.1: Initialization

        Raises:
            ConsumerGroupError: Group creation failed for a reason other than BUSYGROUP
        """
        if self._initialized:
            return

        try:
            await self._redis.client.xgroup_create(
                self._stream_name,
                self._group_name,
                id="0",
                mkstream=True,
            )
            logger.info("Consumer group created", stage="STREAM.1", stream=self._stream_name, group=self._group_name)
        except RedisError as e:
            if "BUSYGROUP" in str(e):
                logger.info("Consumer group already exists (OK)", stage="STREAM.1", group=self._group_name)
            else:
                logger.error("Failed to create consumer group", stage="STREAM.ERR", error=str(e))
                raise ConsumerGroupError(
                    f"Failed to create consumer group: {e}",
                    details={"stream": self._stream_name, "group": self._group_name},
                ) from e

        self._initialized = True

    async def recreate_group(self) -> None:
        """Re-run group creation after the stream or group disappeared (NOGROUP)."""
        self._initialized = False
        await self.initialize()

    async def append(self, fields: dict[str, str], max_len: int) -> str:
        """
        XADD with approximate trimming.

        Returns:
            Entry id (e.g. "1733836800000-0")
        """
        entry_id = await self._redis.client.xadd(
            self._stream_name, fields, maxlen=max_len, approximate=True
        )
        logger.debug("Entry appended", stage="STREAM.ADD", entry_id=entry_id)
        return entry_id

    async def read(
        self, consumer_name: str, batch_size: int, block_ms: int | None, start_id: str = ">"
    ) -> list[tuple[str, dict[str, str] | None]]:
        """
        XREADGROUP for this consumer.

        start_id ">" returns entries never delivered to the group; any other id
        returns this consumer's pending entries after that id (BLOCK is ignored).

        Returns:
            List of (entry_id, fields) tuples; fields is None for a pending
            entry that was trimmed from the stream
        """
        response = await self._redis.client.xreadgroup(
            self._group_name,
            consumer_name,
            {self._stream_name: start_id},
            count=batch_size,
            block=block_ms,
        )

        entries = []
        if response:
            # response format: [[stream_name, [[id, {data}]]]]
            for _stream, entry_list in response:
                for entry_id, fields in entry_list:
                    entries.append((entry_id, fields or None))
        return entries

    async def acknowledge(self, entry_id: str) -> None:
        await self._redis.client.xack(self._stream_name, self._group_name, entry_id)

    async def length(self) -> int:
        return await self._redis.client.xlen(self._stream_name)

    async def info(self) -> dict[str, Any]:
        return await self._redis.client.xinfo_stream(self._stream_name)

    async def groups(self) -> list[dict[str, Any]]:
        return await self._redis.client.xinfo_groups(self._stream_name)

    async def recent(self, limit: int) -> list[tuple[str, dict[str, str]]]:
        return await self._redis.client.xrevrange(self._stream_name, count=limit)


# =============================================================================
# LAYER 2: MESSAGE SERIALIZATION
# Handles encoding and decoding of stream entry fields
# =============================================================================


class MessageSerializer:
    """
    Converts between Python dicts and Redis stream fields.

    Serialization Strategy:
    - dict, list and bool values are JSON encoded
    - Everything else is converted with str()
    - A timestamp is added if not present

    Deserialization Strategy:
    - Values starting with { or [ are parsed as JSON
    - Otherwise kept as strings
    """

    @staticmethod
    def serialize(payload: dict[str, Any]) -> dict[str, str]:
        fields = dict(payload)
        fields.setdefault("timestamp", datetime.now(UTC).isoformat())

        encoded = {}
        for key, value in fields.items():
            if value is None:
                continue
            if isinstance(value, dict | list | bool):
                encoded[key] = orjson.dumps(value).decode("utf-8")
            else:
                encoded[key] = str(value)
        return encoded

    @staticmethod
    def deserialize(fields: dict[str, str]) -> dict[str, Any]:
        parsed = {}
        for key, value in fields.items():
            try:
                if value.startswith("{") or value.startswith("["):
                    parsed[key] = orjson.loads(value)
                else:
                    parsed[key] = value
            except (ValueError, AttributeError):
                parsed[key] = value
        return parsed


# =============================================================================
# LAYER 3: BROKER → LOG
# Appends each bridge-queue delivery to the stream before acking it
# =============================================================================


class BrokerToLogRelay:
    """
    Consumes the bridge queue and appends every delivery to the stream.

    Deliveries are pushed into a bounded inbox by the broker callback and
    drained by a single task, so appends happen in delivery order.
    """

    def __init__(
        self,
        stream_manager: StreamManager,
        serializer: MessageSerializer,
        max_len: int,
        metrics=None,
        inbox_size: int = 100,
    ):
        self._stream_mgr = stream_manager
        self._serializer = serializer
        self._max_len = max_len
        self._metrics = metrics
        self._inbox: asyncio.Queue[AbstractIncomingMessage] = asyncio.Queue(maxsize=inbox_size)
        self._subscription: tuple[AbstractQueue, str] | None = None
        self._task: asyncio.Task | None = None
        self.appended = 0
        self.failed = 0

    async def start(self, queue: AbstractQueue) -> None:
        tag = await queue.consume(self._on_message)
        self._subscription = (queue, tag)
        self._task = asyncio.create_task(self._run(), name="stream-bridge-relay")
        logger.info("Bridge relay started", stage="STREAM.RELAY", queue=queue.name)

    async def _on_message(self, message: AbstractIncomingMessage) -> None:
        await self._inbox.put(message)

    async def _run(self) -> None:
        while True:
            message = await self._inbox.get()
            try:
                await self.relay(message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Unexpected error relaying delivery",
                    stage="STREAM.RELAY_ERR",
                    message_id=message.message_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
            finally:
                self._inbox.task_done()

    async def relay(self, message: AbstractIncomingMessage) -> str | None:
        """
        Append one delivery to the stream and settle it.

        STAGE-STREAM.2: Broker → log

        Returns:
            The stream entry id, or None when the delivery was rejected
        """
        set_correlation_id(message.message_id)
        try:
            entry_id = await self._append(message)
        except (StreamAppendError, RedisError) as e:
            self.failed += 1
            if self._metrics:
                self._metrics.record_stream_append(self._stream_mgr.stream_name, False)
            logger.error(
                "Stream append failed, rejecting delivery",
                stage="STREAM.2",
                message_id=message.message_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._settle(message.nack, requeue=False)
            return None
        finally:
            clear_correlation_id()

        self.appended += 1
        if self._metrics:
            self._metrics.record_stream_append(self._stream_mgr.stream_name, True)
        await self._settle(message.ack)
        logger.debug("Delivery relayed to stream", stage="STREAM.2", entry_id=entry_id)
        return entry_id

    async def _append(self, message: AbstractIncomingMessage) -> str:
        try:
            body = orjson.loads(message.body)
        except orjson.JSONDecodeError as e:
            raise StreamAppendError(
                f"Delivery body is not JSON: {e}", details={"message_id": message.message_id}
            ) from e
        if not isinstance(body, dict):
            raise StreamAppendError(
                "Delivery body is not a JSON object", details={"message_id": message.message_id}
            )

        headers = message.headers or {}
        fields = self._serializer.serialize(
            {
                "eventId": body.get("eventId") or message.message_id,
                "sessionId": body.get("sessionId") or headers.get("session-id"),
                "routingKey": message.routing_key,
                "payload": body,
            }
        )
        return await self._stream_mgr.append(fields, self._max_len)

    @staticmethod
    async def _settle(action, **kwargs) -> None:
        try:
            await action(**kwargs)
        except (AMQPError, ChannelInvalidStateError) as e:
            logger.warning("Settling bridge delivery failed", stage="STREAM.2", error=str(e))

    async def stop(self) -> int:
        """Cancel the subscription and return undrained deliveries to the broker."""
        if self._subscription is not None:
            queue, tag = self._subscription
            try:
                await queue.cancel(tag)
            except (AMQPError, ChannelInvalidStateError) as e:
                logger.warning("Bridge consumer cancel failed", stage="STREAM.RELAY", error=str(e))
            self._subscription = None

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        returned = 0
        while not self._inbox.empty():
            message = self._inbox.get_nowait()
            await self._settle(message.nack, requeue=True)
            returned += 1
        return returned


# =============================================================================
# LAYER 4: LOG → STORE
# Reads the stream through the consumer group and acks after storage
# =============================================================================


class LogReader:
    """
    Continuous XREADGROUP loop feeding the storage callback.

    Algorithm:
    1. Replay this consumer's pending entries (id "0") until none are left
    2. Read new entries (">") in batches, blocking up to block_ms
    3. For each entry: deserialize, run the callback, XACK on success
    4. NOGROUP → recreate the group; other errors → back off and continue
    """

    def __init__(
        self,
        stream_manager: StreamManager,
        serializer: MessageSerializer,
        callback: StorageCallback,
        consumer_name: str,
        settings: StreamSettings,
        clock: Clock,
        metrics=None,
    ):
        self._stream_mgr = stream_manager
        self._serializer = serializer
        self._callback = callback
        self.consumer_name = consumer_name
        self._settings = settings
        self._clock = clock
        self._metrics = metrics
        self._running = False
        self._shutdown_event = asyncio.Event()
        self.stored = 0
        self.failed = 0
        self.replayed = 0

    @property
    def running(self) -> bool:
        return self._running

    async def run(self) -> None:
        """
        STAGE-STREAM.3: Log → store loop
        """
        self._running = True
        self._shutdown_event.clear()
        logger.info("Stream reader started", stage="STREAM.3", consumer=self.consumer_name)

        replay_pending = True
        while self._running and not self._shutdown_event.is_set():
            try:
                if replay_pending:
                    self.replayed += await self.replay_pending()
                    replay_pending = False
                await self.read_once()
            except asyncio.CancelledError:
                raise
            except ResponseError as e:
                if "NOGROUP" in str(e):
                    logger.warning("Consumer group missing, recreating", stage="STREAM.3", error=str(e))
                    try:
                        await self._stream_mgr.recreate_group()
                    except ConsumerGroupError:
                        await self._clock.sleep(self._settings.STREAM_ERROR_BACKOFF_SECONDS)
                    continue
                await self._backoff(e)
            except RedisError as e:
                await self._backoff(e)

        logger.info("Stream reader stopped", stage="STREAM.3", consumer=self.consumer_name)

    async def _backoff(self, error: Exception) -> None:
        logger.error(
            "Stream read error, backing off",
            stage="STREAM.ERR",
            error=str(error),
            backoff_seconds=self._settings.STREAM_ERROR_BACKOFF_SECONDS,
        )
        await self._clock.sleep(self._settings.STREAM_ERROR_BACKOFF_SECONDS)

    async def replay_pending(self) -> int:
        """
        Re-process entries delivered to this consumer but never acked.

        Returns:
            Number of pending entries seen
        """
        seen = 0
        last_id = "0"
        while True:
            entries = await self._stream_mgr.read(
                self.consumer_name, self._settings.STREAM_BATCH_SIZE, None, start_id=last_id
            )
            if not entries:
                break
            for entry_id, fields in entries:
                seen += 1
                await self._handle(entry_id, fields)
            last_id = entries[-1][0]

        if seen:
            logger.info("Pending entries replayed", stage="STREAM.REPLAY", count=seen, consumer=self.consumer_name)
        return seen

    async def read_once(self) -> int:
        entries = await self._stream_mgr.read(
            self.consumer_name, self._settings.STREAM_BATCH_SIZE, self._settings.STREAM_BLOCK_MS
        )
        for entry_id, fields in entries:
            await self._handle(entry_id, fields)
        return len(entries)

    async def _handle(self, entry_id: str, fields: dict[str, str] | None) -> bool:
        if fields is None:
            # Trimmed before it was stored; nothing left to replay
            await self._ack(entry_id)
            return False

        data = self._serializer.deserialize(fields)
        set_correlation_id(data.get("eventId"))
        try:
            await self._callback(entry_id, data)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failed += 1
            logger.error(
                "Storage callback failed, entry left pending",
                stage="STREAM.STORE_ERR",
                entry_id=entry_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False
        finally:
            clear_correlation_id()

        self.stored += 1
        await self._ack(entry_id)
        return True

    async def _ack(self, entry_id: str) -> None:
        await self._stream_mgr.acknowledge(entry_id)
        if self._metrics:
            self._metrics.record_stream_ack(self._stream_mgr.stream_name)

    def stop(self) -> None:
        self._running = False
        self._shutdown_event.set()


# =============================================================================
# LAYER 5: PUBLIC API
# =============================================================================


class StreamBridge:
    """
    Broker → Redis Streams → PersistentStore pipeline.

    Usage:
        bridge = StreamBridge(topology, redis_client, store, settings.stream)
        await bridge.start()
        info = await bridge.get_stream_info()
        await bridge.stop()
    """

    def __init__(
        self,
        topology: Topology,
        redis_client: RedisClient,
        store: PersistentStore,
        settings: StreamSettings | None = None,
        clock: Clock | None = None,
        metrics=None,
        callback: StorageCallback | None = None,
    ):
        self._topology = topology
        self._store = store
        self._settings = settings or StreamSettings()
        self._clock = clock or SystemClock()

        self._stream_mgr = StreamManager(
            self._settings.STREAM_NAME, self._settings.STREAM_GROUP, redis_client
        )
        self._serializer = MessageSerializer()
        self._relay = BrokerToLogRelay(
            self._stream_mgr, self._serializer, self._settings.STREAM_MAX_LENGTH, metrics
        )
        self._reader = LogReader(
            self._stream_mgr,
            self._serializer,
            callback or self.store_entry,
            self._settings.STREAM_CONSUMER_NAME or default_consumer_name(),
            self._settings,
            self._clock,
            metrics,
        )
        self._reader_task: asyncio.Task | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def consumer_name(self) -> str:
        return self._reader.consumer_name

    async def start(self) -> None:
        """
        STAGE-STREAM.0: Start bridge
        """
        if self._running:
            return
        await self._stream_mgr.initialize()

        self._reader_task = asyncio.create_task(self._reader.run(), name="stream-bridge-reader")

        await self._topology.ensure_declared()
        queue = await self._topology.ensure_queue(self._topology.names.bridge_queue)
        await self._relay.start(queue)

        self._running = True
        logger.info(
            "Stream bridge started",
            stage="STREAM.0",
            stream=self._stream_mgr.stream_name,
            group=self._stream_mgr.group_name,
            consumer=self.consumer_name,
        )

    async def stop(self) -> None:
        returned = await self._relay.stop()

        self._reader.stop()
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None

        self._running = False
        logger.info("Stream bridge stopped", stage="STREAM.0", returned=returned)

    async def store_entry(self, entry_id: str, data: dict[str, Any]) -> None:
        """Default storage callback: validate the event and save it."""
        payload = data.get("payload")
        if not isinstance(payload, dict):
            raise StreamAppendError(
                "Stream entry carries no event payload", details={"entry_id": entry_id}
            )
        event = InboundMessageEvent.model_validate(payload)
        if event.event_id is None:
            event = event.model_copy(update={"event_id": data.get("eventId") or entry_id})
        record = await self._store.save(event)
        logger.debug("Entry stored", stage="STREAM.STORE", entry_id=entry_id, record_id=record.record_id)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def get_stream_info(self) -> dict[str, Any]:
        return await self._stream_mgr.info()

    async def get_group_info(self) -> list[dict[str, Any]]:
        return await self._stream_mgr.groups()

    async def recent_entries(self, limit: int = 10) -> list[dict[str, Any]]:
        entries = await self._stream_mgr.recent(limit)
        return [
            {"id": entry_id, **self._serializer.deserialize(fields)} for entry_id, fields in entries
        ]

    async def stats(self) -> dict[str, Any]:
        bridge = {
            "running": self._running,
            "consumer": self.consumer_name,
            "appended": self._relay.appended,
            "append_failures": self._relay.failed,
            "stored": self._reader.stored,
            "store_failures": self._reader.failed,
            "replayed": self._reader.replayed,
        }
        try:
            redis_stats: dict[str, Any] = {
                "stream": self._stream_mgr.stream_name,
                "length": await self._stream_mgr.length(),
                "groups": len(await self._stream_mgr.groups()),
            }
        except RedisError as e:
            redis_stats = {"stream": self._stream_mgr.stream_name, "error": str(e)}
        return {
            "bridge": bridge,
            "redis": redis_stats,
            "database": await self._store.statistics(),
        }
