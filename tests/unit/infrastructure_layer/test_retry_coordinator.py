"""
Unit Tests for the Dead-Letter Retry Coordinator

Tests the per-record sweep decision, manual retry, clearing and the
periodic schedule.
"""

import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from chat_relay.config.settings import DeadLetterSettings
from chat_relay.core.models import DeadLetterRecord
from chat_relay.core.resilience.error_classifier import CATEGORY_POLICIES
from chat_relay.core.resilience.scheduler import Scheduler
from chat_relay.infrastructure.dead_letter.coordinator import RecoveryPolicy, RetryCoordinator
from chat_relay.infrastructure.dead_letter.store import DeadLetterStore


def failed_ago(clock, seconds: float) -> datetime:
    return datetime.fromtimestamp(clock.time() - seconds, UTC)


@pytest.fixture
def settings():
    return DeadLetterSettings(_env_file=None)


@pytest.fixture
def store(fake_redis_client, mock_producer, settings, fake_clock):
    return DeadLetterStore(fake_redis_client, mock_producer, settings, fake_clock)


@pytest.fixture
def coordinator(store, settings, fake_clock, mock_metrics):
    return RetryCoordinator(store, Scheduler(fake_clock), settings, mock_metrics)


async def park(store, clock, record_id: str, seconds_ago: float = 600, **overrides) -> DeadLetterRecord:
    values = {
        "id": record_id,
        "original_routing_key": "relay.send.commands",
        "payload": {"id": record_id},
        "error": "CONNECTION_RESET: peer closed",
        "tenant_id": "acme",
        "last_error_timestamp": failed_ago(clock, seconds_ago),
        **overrides,
    }
    return await store.park(DeadLetterRecord(**values), publish=False)


@pytest.mark.unit
class TestRecoveryPolicy:
    @pytest.mark.parametrize(
        ("error", "recoverable"),
        [
            ("CONNECTION_RESET: peer closed", True),
            ("TIMEOUT: no reply", True),
            ("VALIDATION_ERROR: no recipient", False),
            ("INVALID_MESSAGE_FORMAT: bad json", False),
            ("MESSAGE_TOO_LARGE: frame exceeds limit", False),
            ("PRECONDITION_FAILED: inequivalent arg 'x-dead-letter-exchange'", False),
            ("ROUTING_ERROR: no route for tenant", False),
            ("DUPLICATE: message already delivered", False),
            ("PERMISSION_DENIED: vhost refused", False),
            ("AUTHENTICATION_ERROR: bad credentials", False),
            ("UNKNOWN: something odd", True),
            # deny-list wins over allow-list
            ("NOT_FOUND: queue vanished after TIMEOUT", False),
        ],
    )
    def test_is_recoverable(self, error, recoverable):
        """Test the deny-list-first recovery rule."""
        assert RecoveryPolicy().is_recoverable(error) is recoverable

    def test_deny_list_tracks_classifier(self):
        """Test that no category the classifier refuses to retry is swept back."""
        for category, policy in CATEGORY_POLICIES.items():
            if not policy.retryable:
                assert not RecoveryPolicy().is_recoverable(f"{category.value}: failed")


@pytest.mark.unit
class TestSweep:
    @pytest.mark.asyncio
    async def test_sweep_decisions(self, coordinator, store, fake_clock, mock_metrics, mock_producer):
        """Test archive / skip / retry across one sweep."""
        await park(store, fake_clock, "terminal", retry_count=3, max_retries=3)
        await park(store, fake_clock, "invalid", error="VALIDATION_ERROR: no recipient")
        await park(store, fake_clock, "cooling", seconds_ago=60)
        await park(store, fake_clock, "eligible")

        stats = await coordinator.process_failed_messages()

        assert stats.to_dict() == {"processed": 4, "retried": 1, "failed": 0, "discarded": 2}
        assert [r.id for r in await store.list()] == ["cooling"]
        mock_producer.send_to_queue.assert_awaited_once()
        mock_metrics.record_dlq_sweep.assert_called_once_with(1, 0, 2, 4)
        assert coordinator.last_sweep is stats

    @pytest.mark.asyncio
    async def test_oversized_message_discarded_not_retried(self, coordinator, store, fake_clock, mock_producer):
        """Test that a parked oversized message is archived instead of republished."""
        await park(store, fake_clock, "too-big", error="MESSAGE_TOO_LARGE: frame exceeds limit")

        stats = await coordinator.process_failed_messages()

        assert stats.to_dict() == {"processed": 1, "retried": 0, "failed": 0, "discarded": 1}
        assert await store.list() == []
        mock_producer.send_to_queue.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_archive_reasons(self, coordinator, store, fake_clock, fake_redis_client):
        """Test the archive reason per discarded record."""
        await park(store, fake_clock, "terminal", retry_count=3, max_retries=3)
        await park(store, fake_clock, "invalid", error="VALIDATION_ERROR: no recipient")
        today = datetime.fromtimestamp(fake_clock.time(), UTC).strftime("%Y-%m-%d")

        await coordinator.process_failed_messages()

        reasons = {e["messageId"]: e["reason"] for e in await store.archived(today)}
        assert reasons == {"terminal": "max_retries_exceeded", "invalid": "non_recoverable"}

    @pytest.mark.asyncio
    async def test_unconfirmed_retry_counts_failed(self, coordinator, store, fake_clock, mock_producer):
        """Test the failed counter and the bumped record."""
        mock_producer.send_to_queue.return_value = False
        await park(store, fake_clock, "eligible")

        stats = await coordinator.process_failed_messages()

        assert stats.failed == 1
        assert (await store.get("eligible")).retry_count == 1

    @pytest.mark.asyncio
    async def test_sweeps_never_overlap(self, coordinator, store, fake_clock):
        """Test that a sweep started during another one is skipped."""
        await park(store, fake_clock, "eligible")

        first, second = await asyncio.gather(
            coordinator.process_failed_messages(), coordinator.process_failed_messages()
        )

        assert first.processed == 1
        assert second.processed == 0

    def test_should_retry_respects_cooldown(self, coordinator, fake_clock):
        """Test the minimum delay since the last failure."""
        record = DeadLetterRecord(
            original_routing_key="q", payload={}, error="TIMEOUT: x", last_error_timestamp=failed_ago(fake_clock, 299)
        )
        assert not coordinator.should_retry(record)

        ready = record.model_copy(update={"last_error_timestamp": failed_ago(fake_clock, 301)})
        assert coordinator.should_retry(ready)


@pytest.mark.unit
class TestManualOperations:
    @pytest.mark.asyncio
    async def test_retry_all_ignores_cooldown(self, coordinator, store, fake_clock):
        """Test the manual retry of every non-terminal record."""
        await park(store, fake_clock, "fresh", seconds_ago=1)
        await park(store, fake_clock, "terminal", retry_count=3, max_retries=3)

        stats = await coordinator.retry_all()

        assert stats.processed == 2
        assert stats.retried == 1
        assert [r.id for r in await store.list()] == ["terminal"]

    @pytest.mark.asyncio
    async def test_clear_archives_and_purges(self, store, settings, fake_clock):
        """Test clearing the store and the broker dead-letter queue."""
        queue_manager = MagicMock()
        queue_manager.purge_queue = AsyncMock(return_value=5)
        coordinator = RetryCoordinator(store, Scheduler(fake_clock), settings, queue_manager=queue_manager)
        await park(store, fake_clock, "a")
        await park(store, fake_clock, "b")

        cleared = await coordinator.clear()

        assert cleared == 2
        assert await store.count() == 0
        queue_manager.purge_queue.assert_awaited_once_with("relay.dead.letter")

    @pytest.mark.asyncio
    async def test_detailed_stats(self, coordinator, store, fake_clock):
        """Test the per-tenant and per-error breakdown."""
        await park(store, fake_clock, "a")
        await park(store, fake_clock, "b", tenant_id=None, error="VALIDATION_ERROR: bad")
        await park(store, fake_clock, "c", retry_count=3, max_retries=3)

        stats = await coordinator.get_detailed_stats()

        assert stats["total"] == 3
        assert stats["retryable"] == 1
        assert stats["known_transient"] == 2
        assert stats["by_tenant"] == {"acme": 2, "unknown": 1}
        assert stats["by_error_type"] == {"CONNECTION_RESET": 2, "VALIDATION_ERROR": 1}
        assert stats["sweep_running"] is False
        assert stats["last_sweep"] is None


@pytest.mark.unit
class TestSchedule:
    @pytest.mark.asyncio
    async def test_start_sweeps_immediately_and_stop(self, store, settings, manual_clock):
        """Test run-now-then-every-interval scheduling."""
        coordinator = RetryCoordinator(store, Scheduler(manual_clock), settings)

        coordinator.start()
        await manual_clock.advance(0)

        assert coordinator.running
        assert coordinator.last_sweep is not None

        await coordinator.stop()
        assert not coordinator.running
