"""
Unit Tests for the In-Memory Persistent Store
"""

from datetime import UTC, datetime, timedelta

import pytest

from chat_relay.core.models import InboundMessageEvent
from chat_relay.infrastructure.storage.memory_store import InMemoryPersistentStore, record_id_for


@pytest.fixture
def store(fake_clock):
    return InMemoryPersistentStore(fake_clock)


def event_at(clock, hours_ago: float, **overrides) -> InboundMessageEvent:
    values = {
        "session_id": "acme",
        "message_id": f"wamid-{hours_ago}",
        "from_user": "5511999990000",
        "timestamp": datetime.fromtimestamp(clock.time(), UTC) - timedelta(hours=hours_ago),
        "content": "hello",
        **overrides,
    }
    return InboundMessageEvent(**values)


@pytest.mark.unit
class TestSave:
    @pytest.mark.asyncio
    async def test_save_and_get(self, store, sample_inbound_event):
        """Test the derived record id."""
        record = await store.save(sample_inbound_event)

        assert record.record_id == "acme:device-1_wamid-001_1765368000000"
        assert record.record_id == record_id_for(sample_inbound_event)
        assert record.processed
        assert await store.get(record.record_id) == record

    @pytest.mark.asyncio
    async def test_save_is_idempotent_on_event_id(self, store, sample_inbound_event):
        """Test that a replayed event returns the existing record."""
        first = await store.save(sample_inbound_event)
        replayed = sample_inbound_event.model_copy(update={"content": "changed"})

        second = await store.save(replayed)

        assert second is first
        assert (await store.statistics())["total_messages"] == 1

    @pytest.mark.asyncio
    async def test_save_is_idempotent_on_record_id(self, store, sample_inbound_event):
        """Test that the same message without an event id is not duplicated."""
        event = sample_inbound_event.model_copy(update={"event_id": None})

        await store.save(event)
        await store.save(event)

        assert (await store.statistics())["total_messages"] == 1


@pytest.mark.unit
class TestQueries:
    @pytest.mark.asyncio
    async def test_by_session_newest_first(self, store, fake_clock):
        """Test ordering and limit."""
        for hours in (3, 1, 2):
            await store.save(event_at(fake_clock, hours))
        await store.save(event_at(fake_clock, 0, session_id="other"))

        records = await store.get_by_session("acme")

        assert [r.message_id for r in records] == ["wamid-1", "wamid-2", "wamid-3"]
        assert len(await store.get_by_session("acme", limit=2)) == 2
        assert (await store.get_latest("acme")).message_id == "wamid-1"
        assert await store.get_latest("nobody") is None

    @pytest.mark.asyncio
    async def test_by_user_and_type(self, store, fake_clock):
        await store.save(event_at(fake_clock, 1, from_user="a", message_type="image"))
        await store.save(event_at(fake_clock, 2, from_user="b"))

        assert [r.from_user for r in await store.get_by_user("a")] == ["a"]
        assert [r.message_type for r in await store.get_by_type("image")] == ["image"]

    @pytest.mark.asyncio
    async def test_recent(self, store, fake_clock):
        """Test the time window filter."""
        await store.save(event_at(fake_clock, 1))
        await store.save(event_at(fake_clock, 30))

        assert [r.message_id for r in await store.recent(hours=24)] == ["wamid-1"]

    @pytest.mark.asyncio
    async def test_search(self, store, fake_clock):
        """Test case-insensitive search over content and sender."""
        await store.save(event_at(fake_clock, 1, content="Order SHIPPED"))
        await store.save(event_at(fake_clock, 2, content="hello", from_user="shipping-bot"))
        await store.save(event_at(fake_clock, 3, content="unrelated"))

        assert len(await store.search("ship")) == 2


@pytest.mark.unit
class TestMaintenance:
    @pytest.mark.asyncio
    async def test_statistics(self, store, fake_clock):
        await store.save(event_at(fake_clock, 1))
        await store.save(event_at(fake_clock, 48, message_type="image", session_id="beta"))

        stats = await store.statistics()

        assert stats["total_messages"] == 2
        assert stats["messages_by_type"] == {"text": 1, "image": 1}
        assert stats["messages_by_session"] == {"acme": 1, "beta": 1}
        assert stats["messages_last_24h"] == 1
        assert stats["messages_last_7d"] == 2

    @pytest.mark.asyncio
    async def test_mark_error(self, store, fake_clock):
        """Test flagging a stored message as failed."""
        record = await store.save(event_at(fake_clock, 1))

        assert await store.mark_error(record.record_id, "downstream rejected")
        assert not await store.mark_error("missing", "x")

        updated = await store.get(record.record_id)
        assert not updated.processed
        assert (await store.statistics())["processing_errors"] == 1

    @pytest.mark.asyncio
    async def test_delete_releases_event_id(self, store, sample_inbound_event):
        """Test that a deleted event can be stored again."""
        record = await store.save(sample_inbound_event)

        assert await store.delete(record.record_id)
        assert not await store.delete(record.record_id)

        again = await store.save(sample_inbound_event)
        assert again is not record

    @pytest.mark.asyncio
    async def test_clear_older_than(self, store, fake_clock):
        """Test the retention cleanup."""
        await store.save(event_at(fake_clock, 24 * 40))
        await store.save(event_at(fake_clock, 1))

        assert await store.clear_older_than(days=30) == 1
        assert (await store.statistics())["total_messages"] == 1
