"""
Pytest Configuration and Shared Test Fixtures

This module provides pytest configuration and reusable fixtures for all tests.
All fixtures defined here are automatically available to all test files.
"""

import os
import sys
from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest

# Add project root to sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from chat_relay.config.settings import Settings  # noqa: E402
from chat_relay.core.models import InboundMessageEvent, QueueMessage, SendCommand, SendPayload  # noqa: E402
from tests.test_fixtures import (  # noqa: E402
    BrokerTestFactory,
    FakeClock,
    FakeRedisClient,
    FakeSessionProvider,
    InMemoryRedis,
)


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def test_settings():
    """Settings built from defaults only (no .env, no process environment overrides)."""
    return Settings(_env_file=None)


# ============================================================================
# Time
# ============================================================================


@pytest.fixture
def fake_clock():
    """Virtual clock whose sleep() advances time instantly."""
    return FakeClock()


@pytest.fixture
def manual_clock():
    """Virtual clock whose sleep() blocks until the test calls advance()."""
    return FakeClock(auto_advance=False)


# ============================================================================
# Mock Infrastructure Fixtures
# ============================================================================


@pytest.fixture
def in_memory_redis():
    return InMemoryRedis()


@pytest.fixture
def fake_redis_client(in_memory_redis):
    """RedisClient double exposing the in-memory store as `.client`."""
    return FakeRedisClient(in_memory_redis)


@pytest.fixture
def mock_channel():
    return BrokerTestFactory.mock_channel()


@pytest.fixture
def mock_connection(mock_channel):
    return BrokerTestFactory.mock_connection(mock_channel)


@pytest.fixture
def mock_producer():
    return BrokerTestFactory.mock_producer()


@pytest.fixture
def mock_metrics():
    """MetricsCollector double; every record_* call is a MagicMock."""
    return MagicMock()


# ============================================================================
# Sample Data Fixtures
# ============================================================================


@pytest.fixture
def sample_inbound_event():
    return InboundMessageEvent(
        session_id="acme:device-1",
        message_id="wamid-001",
        from_user="5511999990000",
        timestamp=datetime(2025, 12, 10, 12, 0, tzinfo=UTC),
        message_type="text",
        content="Hello there",
        event_id="1765368000000-abc123xyz",
    )


@pytest.fixture
def sample_send_command():
    return SendCommand(
        instance_id="acme",
        payload=SendPayload(to="5511988887777", message="Your order has shipped"),
        event_id="1765368000000-send00001",
    )


@pytest.fixture
def sample_envelope(sample_send_command):
    """Send command wrapped the way the producer wraps it."""
    return QueueMessage(id=sample_send_command.event_id, content=sample_send_command.to_json_dict())


@pytest.fixture
def session_provider():
    """Provider with one active session for tenant "acme"."""
    return FakeSessionProvider(["acme:device-1", "globex:main"])
