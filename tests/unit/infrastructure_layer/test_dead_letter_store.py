"""
Unit Tests for the Dead-Letter Store

Runs against the in-memory Redis double with a virtual clock.
"""

from datetime import UTC, datetime, timedelta

import orjson
import pytest

from chat_relay.config.settings import DeadLetterSettings
from chat_relay.core.exceptions import BrokerConnectionError
from chat_relay.core.models import DeadLetterRecord
from chat_relay.infrastructure.dead_letter.store import DeadLetterStore


def make_record(**overrides) -> DeadLetterRecord:
    values = {
        "id": "dlq-1",
        "original_routing_key": "relay.send.commands",
        "payload": {"id": "m-1", "content": {"instanceId": "acme"}},
        "error": "CONNECTION_RESET: peer closed",
        "tenant_id": "acme",
        **overrides,
    }
    return DeadLetterRecord(**values)


@pytest.fixture
def store(fake_redis_client, mock_producer, fake_clock, mock_metrics):
    return DeadLetterStore(
        fake_redis_client, mock_producer, DeadLetterSettings(_env_file=None), fake_clock, mock_metrics
    )


@pytest.fixture
def today(fake_clock):
    return datetime.fromtimestamp(fake_clock.now, UTC).strftime("%Y-%m-%d")


@pytest.mark.unit
class TestPark:
    @pytest.mark.asyncio
    async def test_park_stores_record_with_ttl(self, store, in_memory_redis):
        """Test the record key and its 7-day expiry."""
        await store.park(make_record())

        assert "dlq:message:dlq-1" in in_memory_redis.data
        assert in_memory_redis.ttl["dlq:message:dlq-1"] == 7 * 24 * 3600
        assert (await store.get("dlq-1")).error == "CONNECTION_RESET: peer closed"

    @pytest.mark.asyncio
    async def test_park_appends_lineage(self, store, in_memory_redis, today):
        """Test the audit trail entry."""
        await store.park(make_record())

        entry = orjson.loads(in_memory_redis.lists[f"dlq:lineage:{today}"][0])
        assert entry["event"] == "parked"
        assert entry["messageId"] == "dlq-1"
        assert entry["tenantId"] == "acme"

    @pytest.mark.asyncio
    async def test_park_publishes_broker_copy(self, store, mock_producer, mock_metrics):
        """Test the copy on the dead-letter exchange."""
        record = make_record()

        await store.park(record)

        exchange, routing_key, payload, options = mock_producer.publish.await_args.args
        assert (exchange, routing_key) == ("relay.dlx", "dead.letter")
        assert payload == record.payload
        assert options.message_id == "dlq-1"
        assert options.headers["x-error-type"] == "CONNECTION_RESET"
        mock_metrics.record_dlq_parked.assert_called_once_with("CONNECTION_RESET")

    @pytest.mark.asyncio
    async def test_park_without_publish(self, store, mock_producer):
        """Test that the consumer path does not copy twice."""
        await store.park(make_record(), publish=False)

        mock_producer.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_park_survives_broker_outage(self, store, mock_producer):
        """Test that a failed broker copy keeps the stored record."""
        mock_producer.publish.side_effect = BrokerConnectionError("down")

        await store.park(make_record())

        assert await store.get("dlq-1") is not None


@pytest.mark.unit
class TestRead:
    @pytest.mark.asyncio
    async def test_list_newest_first(self, store):
        """Test ordering by last failure time and the limit."""
        base = datetime(2025, 12, 1, tzinfo=UTC)
        for i in range(3):
            await store.park(make_record(id=f"dlq-{i}", last_error_timestamp=base + timedelta(hours=i)), publish=False)

        records = await store.list()
        assert [r.id for r in records] == ["dlq-2", "dlq-1", "dlq-0"]
        assert [r.id for r in await store.list(limit=1)] == ["dlq-2"]
        assert await store.count() == 3

    @pytest.mark.asyncio
    async def test_unreadable_record_skipped(self, store, in_memory_redis):
        """Test that a corrupt key does not break listing."""
        in_memory_redis.data["dlq:message:broken"] = "not json"
        await store.park(make_record(), publish=False)

        assert [r.id for r in await store.list()] == ["dlq-1"]
        assert await store.get("broken") is None

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        assert await store.get("nope") is None


@pytest.mark.unit
class TestRetry:
    @pytest.mark.asyncio
    async def test_retry_to_queue_deletes_record(self, store, mock_producer, in_memory_redis, today):
        """Test a confirmed republish via the default exchange."""
        await store.park(make_record(), publish=False)

        ok = await store.retry("dlq-1")

        assert ok is True
        queue, payload, options = mock_producer.send_to_queue.await_args.args
        assert queue == "relay.send.commands"
        assert payload == {"id": "m-1", "content": {"instanceId": "acme"}}
        assert options.headers["x-retry-attempt"] == 1
        assert options.headers["x-dlq-message-id"] == "dlq-1"
        assert await store.get("dlq-1") is None
        events = [orjson.loads(e)["event"] for e in in_memory_redis.lists[f"dlq:lineage:{today}"]]
        assert events == ["retried", "parked"]

    @pytest.mark.asyncio
    async def test_retry_to_exchange(self, store, mock_producer):
        """Test republishing onto the original exchange."""
        await store.park(
            make_record(original_exchange="relay.messages", original_routing_key="message.received"),
            publish=False,
        )

        assert await store.retry("dlq-1")

        exchange, routing_key, _, _ = mock_producer.publish.await_args.args
        assert (exchange, routing_key) == ("relay.messages", "message.received")

    @pytest.mark.asyncio
    async def test_failed_retry_keeps_bumped_record(self, store, mock_producer):
        """Test that an unconfirmed republish leaves the record with retry_count+1."""
        mock_producer.send_to_queue.return_value = False
        await store.park(make_record(retry_count=1), publish=False)

        ok = await store.retry("dlq-1")

        assert ok is False
        assert (await store.get("dlq-1")).retry_count == 2

    @pytest.mark.asyncio
    async def test_terminal_record_not_retried(self, store, mock_producer):
        """Test that an exhausted record is left for the sweep to archive."""
        await store.park(make_record(retry_count=3, max_retries=3), publish=False)

        assert await store.retry("dlq-1") is False
        mock_producer.send_to_queue.assert_not_awaited()
        assert (await store.get("dlq-1")).retry_count == 3

    @pytest.mark.asyncio
    async def test_retry_missing_record(self, store):
        assert await store.retry("missing") is False


@pytest.mark.unit
class TestArchiveAndStats:
    @pytest.mark.asyncio
    async def test_archive_moves_record(self, store, today):
        """Test the archive bucket entry and live key removal."""
        record = make_record()
        await store.park(record, publish=False)

        await store.archive(record, "max_retries_exceeded")

        assert await store.get("dlq-1") is None
        archived = await store.archived(today)
        assert archived[0]["messageId"] == "dlq-1"
        assert archived[0]["reason"] == "max_retries_exceeded"

    @pytest.mark.asyncio
    async def test_stats(self, store):
        """Test totals and the error-type breakdown."""
        await store.park(make_record(id="a"), publish=False)
        await store.park(make_record(id="b", error="TIMEOUT: slow", retry_count=3), publish=False)

        stats = await store.stats()

        assert stats["total"] == 2
        assert stats["terminal"] == 1
        assert stats["by_error_type"] == {"CONNECTION_RESET": 1, "TIMEOUT": 1}

    @pytest.mark.asyncio
    async def test_stats_of_empty_store(self, store):
        stats = await store.stats()

        assert stats["total"] == 0
        assert stats["oldest"] is None
