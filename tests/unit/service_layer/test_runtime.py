"""
Unit Tests for the Relay Runtime

The runtime is built with a mocked broker connection, the in-memory Redis
double and a manual clock, then started and stopped for real.
"""

import asyncio

import pytest

from chat_relay.runtime import RelayRuntime


@pytest.fixture
def build_runtime(test_settings, manual_clock, mock_metrics, fake_redis_client, mock_connection):
    def build(session_provider=None) -> RelayRuntime:
        return RelayRuntime(
            test_settings,
            session_provider=session_provider,
            clock=manual_clock,
            metrics=mock_metrics,
            redis_client=fake_redis_client,
            connection=mock_connection,
        )

    return build


@pytest.mark.unit
class TestConstruction:
    def test_without_provider_no_consumer(self, build_runtime):
        """Test that send commands are only consumed with a session provider."""
        runtime = build_runtime()

        assert runtime.consumer is None
        assert runtime.send_handler is None

    def test_with_provider(self, build_runtime, session_provider):
        runtime = build_runtime(session_provider)

        assert runtime.consumer is not None
        assert runtime.consumer.stats()["queues"] == ["relay.send.commands"]

    def test_shared_registries(self, build_runtime, manual_clock):
        """Test that components share one clock and one breaker registry."""
        runtime = build_runtime()

        assert runtime.clock is manual_clock
        assert runtime.scheduler.clock is manual_clock
        assert runtime.breakers.get("broker-consumer").threshold == 5
        assert runtime.breakers.get("session-send").threshold == 3


@pytest.mark.unit
class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, build_runtime, session_provider, mock_connection, mock_channel, fake_redis_client):
        """Test startup wiring and reverse-order shutdown."""
        runtime = build_runtime(session_provider)

        await runtime.start()
        await asyncio.sleep(0)

        assert runtime.running
        assert fake_redis_client.is_connected
        mock_connection.connect.assert_awaited_once()
        assert runtime.topology.declared
        assert runtime.stream_bridge.running
        assert runtime.consumer.running
        assert runtime.retry_coordinator.running
        assert runtime.inbound_pump.running
        mock_channel.queues["relay.send.commands"].consume.assert_awaited_once()
        mock_channel.queues["relay.messages.bridge"].consume.assert_awaited_once()

        await runtime.stop()

        assert not runtime.running
        assert not runtime.consumer.running
        assert not runtime.stream_bridge.running
        assert not runtime.retry_coordinator.running
        assert not runtime.inbound_pump.running
        assert runtime.scheduler.tasks == []
        mock_connection.close.assert_awaited_once()
        assert not fake_redis_client.is_connected

    @pytest.mark.asyncio
    async def test_start_without_provider(self, build_runtime, mock_channel):
        """Test that the bridge runs but nothing consumes send commands."""
        runtime = build_runtime()

        await runtime.start()

        assert runtime.stream_bridge.running
        assert not runtime.inbound_pump.running
        mock_channel.queues["relay.send.commands"].consume.assert_not_awaited()

        await runtime.stop()

    @pytest.mark.asyncio
    async def test_inbound_message_reaches_broker(self, build_runtime, session_provider, mock_channel, sample_inbound_event):
        """Test provider → pump → messages exchange."""
        runtime = build_runtime(session_provider)
        await runtime.start()

        await session_provider.emit(sample_inbound_event)
        for _ in range(50):
            if runtime.inbound_pump.published:
                break
            await asyncio.sleep(0)
        await runtime.stop()

        exchange = mock_channel.exchanges["relay.messages"]
        exchange.publish.assert_awaited_once()
        assert exchange.publish.await_args.kwargs["routing_key"] == "message.received"

    @pytest.mark.asyncio
    async def test_stats(self, build_runtime, session_provider):
        """Test the aggregated stats snapshot."""
        runtime = build_runtime(session_provider)
        await runtime.start()

        stats = await runtime.stats()
        await runtime.stop()

        assert stats["running"] is True
        assert stats["redis"]["status"] == "healthy"
        assert stats["consumer"]["name"] == "send-commands"
        assert stats["dead_letter"]["total"] == 0
        assert stats["stream_bridge"]["redis"]["groups"] == 1
        assert stats["inbound_pump"]["published"] == 0
        assert stats["queues"]["dlq_enabled"] is True
