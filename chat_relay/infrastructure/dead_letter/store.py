"""
Dead-Letter Store (Redis)

Durable record of deliveries that failed terminally, kept for inspection and
for the reprocessing sweep.

Key Layout:
    dlq:message:<id>            JSON DeadLetterRecord, TTL 7 days
    dlq:lineage:<YYYY-MM-DD>    list of park/retry audit entries, TTL 30 days
    dlq:archive:<YYYY-MM-DD>    list of archived records, TTL 30 days

Retry Lifecycle:
    park ──> retry (retry_count+1, republish original payload) ──> record removed
    The republished delivery carries x-dlq-message-id / x-retry-attempt, so a
    renewed failure re-parks under the same id with the bumped count. Once
    retry_count == max_retries the record is terminal and only the sweep may
    archive it.
"""

from datetime import UTC, datetime
from typing import Any

import orjson
from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import RedisError

from chat_relay.config.settings import DeadLetterSettings
from chat_relay.core.exceptions import RelayBaseError
from chat_relay.core.logging import get_logger
from chat_relay.core.models import DeadLetterRecord
from chat_relay.core.resilience.scheduler import Clock, SystemClock
from chat_relay.infrastructure.broker.producer import PublishOptions
from chat_relay.infrastructure.cache.redis_client import RedisClient

logger = get_logger(__name__)

KEY_PREFIX = "dlq:message:"
LINEAGE_PREFIX = "dlq:lineage:"
ARCHIVE_PREFIX = "dlq:archive:"


class DeadLetterStore:
    """
    Usage:
        store = DeadLetterStore(redis_client, producer, settings.dead_letter)
        await store.park(record)
        ok = await store.retry(record.id)
    """

    def __init__(
        self,
        redis_client: RedisClient,
        producer=None,
        settings: DeadLetterSettings | None = None,
        clock: Clock | None = None,
        metrics=None,
    ):
        self._redis = redis_client
        self._producer = producer
        self._settings = settings or DeadLetterSettings()
        self._clock = clock or SystemClock()
        self._metrics = metrics

    @property
    def max_retries(self) -> int:
        return self._settings.DLQ_MAX_RETRIES

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock.time(), UTC)

    def _bucket(self, prefix: str) -> str:
        return f"{prefix}{self._now().strftime('%Y-%m-%d')}"

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def park(self, record: DeadLetterRecord, publish: bool = True) -> DeadLetterRecord:
        """
        Store a record (and optionally copy its payload to the dead-letter queue).

        STAGE-DLQ.1: Park

        Raises:
            RedisError: The record could not be stored
        """
        await self.save(record)
        await self._append(
            self._bucket(LINEAGE_PREFIX),
            {
                "event": "parked",
                "messageId": record.id,
                "originalRoutingKey": record.original_routing_key,
                "error": record.error,
                "retryCount": record.retry_count,
                "tenantId": record.tenant_id,
                "at": self._now().isoformat(),
            },
        )
        if self._metrics:
            self._metrics.record_dlq_parked(record.error_type)
        logger.warning(
            "Dead-letter record parked",
            stage="DLQ.1",
            record_id=record.id,
            error=record.error,
            retry_count=record.retry_count,
            max_retries=record.max_retries,
        )

        if publish and self._producer is not None:
            await self._publish_copy(record)
        return record

    async def _publish_copy(self, record: DeadLetterRecord) -> None:
        names = self._producer.topology.names
        headers = {
            "x-dlq-message-id": record.id,
            "x-error-type": record.error_type,
            "x-final-error": record.error,
            "x-original-queue": record.original_queue or record.original_routing_key,
            "x-failed-at": record.last_error_timestamp.isoformat(),
        }
        try:
            ok = await self._producer.publish(
                names.dead_letter_exchange,
                names.dead_letter_key,
                record.payload,
                PublishOptions(message_id=record.id, headers=headers),
            )
        except RelayBaseError as e:
            ok = False
            logger.error("Dead-letter copy not published", stage="DLQ.1", record_id=record.id, error=e.message)
        if not ok:
            logger.warning("Record parked without broker copy", stage="DLQ.1", record_id=record.id)

    async def save(self, record: DeadLetterRecord) -> None:
        await self._redis.client.set(
            f"{KEY_PREFIX}{record.id}",
            record.to_bytes(),
            ex=self._settings.DLQ_RECORD_TTL_SECONDS,
        )

    async def delete(self, record_id: str) -> bool:
        return bool(await self._redis.client.delete(f"{KEY_PREFIX}{record_id}"))

    async def _append(self, key: str, entry: dict[str, Any]) -> None:
        client = self._redis.client
        await client.lpush(key, orjson.dumps(entry).decode())
        await client.expire(key, self._settings.DLQ_ARCHIVE_TTL_SECONDS)

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def get(self, record_id: str) -> DeadLetterRecord | None:
        raw = await self._redis.client.get(f"{KEY_PREFIX}{record_id}")
        return self._parse(raw, record_id) if raw else None

    @staticmethod
    def _parse(raw: str | bytes, key: str) -> DeadLetterRecord | None:
        try:
            return DeadLetterRecord.from_bytes(raw)
        except (orjson.JSONDecodeError, PydanticValidationError) as e:
            logger.warning("Unreadable dead-letter record skipped", stage="DLQ.PARSE", key=key, error=str(e))
            return None

    async def archived(self, date: str) -> list[dict[str, Any]]:
        """Archive entries for a YYYY-MM-DD bucket, newest first."""
        entries = await self._redis.client.lrange(f"{ARCHIVE_PREFIX}{date}", 0, -1)
        return [orjson.loads(entry) for entry in entries]

    async def list(self, limit: int | None = 100) -> list[DeadLetterRecord]:
        """Records sorted by last_error_timestamp, newest first."""
        client = self._redis.client
        keys = [key async for key in client.scan_iter(match=f"{KEY_PREFIX}*", count=500)]
        if not keys:
            return []

        records = []
        for key, raw in zip(keys, await client.mget(keys)):
            if raw is None:
                continue  # expired between SCAN and MGET
            record = self._parse(raw, key)
            if record is not None:
                records.append(record)

        records.sort(key=lambda r: r.last_error_timestamp, reverse=True)
        return records if limit is None else records[:limit]

    async def count(self) -> int:
        return len([key async for key in self._redis.client.scan_iter(match=f"{KEY_PREFIX}*", count=500)])

    # ------------------------------------------------------------------
    # Retry / archive
    # ------------------------------------------------------------------

    async def retry(self, record_id: str) -> bool:
        """
        Republish a parked record's original payload.

        STAGE-DLQ.2: Retry

        Returns:
            Whether the republish was confirmed by the broker
        """
        record = await self.get(record_id)
        if record is None:
            logger.warning("Dead-letter record not found", stage="DLQ.2", record_id=record_id)
            return False
        if record.is_terminal:
            logger.warning(
                "Dead-letter record exhausted its retries",
                stage="DLQ.2",
                record_id=record_id,
                retry_count=record.retry_count,
                max_retries=record.max_retries,
            )
            return False

        record = record.model_copy(
            update={"retry_count": record.retry_count + 1, "last_error_timestamp": self._now()}
        )
        await self.save(record)

        if self._producer is None:
            logger.error("No producer configured, cannot retry", stage="DLQ.2", record_id=record_id)
            return False

        options = PublishOptions(
            headers={
                "x-retry-attempt": record.retry_count,
                "x-dlq-message-id": record.id,
                "session-id": record.tenant_id,
            }
        )
        try:
            if record.original_exchange:
                ok = await self._producer.publish(
                    record.original_exchange, record.original_routing_key, record.payload, options
                )
            else:
                ok = await self._producer.send_to_queue(record.original_routing_key, record.payload, options)
        except RelayBaseError as e:
            logger.error("Dead-letter retry failed", stage="DLQ.2", record_id=record_id, error=e.message)
            ok = False

        if ok:
            # The redelivery owns the message now; a new failure re-parks it
            await self.delete(record.id)
            await self._append(
                self._bucket(LINEAGE_PREFIX),
                {"event": "retried", "messageId": record.id, "retryCount": record.retry_count, "at": self._now().isoformat()},
            )
            logger.info(
                "Dead-letter record republished",
                stage="DLQ.2",
                record_id=record.id,
                retry_count=record.retry_count,
                routing_key=record.original_routing_key,
            )
        return ok

    async def archive(self, record: DeadLetterRecord, reason: str) -> None:
        """
        Move a record to today's archive bucket and delete the live key.

        STAGE-DLQ.3: Archive
        """
        await self._append(
            self._bucket(ARCHIVE_PREFIX),
            {
                "messageId": record.id,
                "timestamp": record.timestamp.isoformat(),
                "originalRoutingKey": record.original_routing_key,
                "originalQueue": record.original_queue,
                "error": record.error,
                "retryCount": record.retry_count,
                "tenantId": record.tenant_id,
                "reason": reason,
                "archivedAt": self._now().isoformat(),
            },
        )
        await self.delete(record.id)
        logger.info("Dead-letter record archived", stage="DLQ.3", record_id=record.id, reason=reason)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def stats(self) -> dict[str, Any]:
        try:
            records = await self.list(limit=None)
        except RedisError as e:
            logger.error("Dead-letter stats unavailable", stage="DLQ.STATS", error=str(e))
            return {"total": 0, "error": str(e)}

        by_error_type: dict[str, int] = {}
        for record in records:
            by_error_type[record.error_type] = by_error_type.get(record.error_type, 0) + 1

        return {
            "total": len(records),
            "terminal": sum(1 for r in records if r.is_terminal),
            "by_error_type": by_error_type,
            "oldest": min((r.timestamp for r in records), default=None),
            "newest": max((r.timestamp for r in records), default=None),
        }
