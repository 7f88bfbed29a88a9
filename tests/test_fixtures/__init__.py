"""
Test Fixtures Package

Shared test doubles: virtual clock, in-memory Redis, fake broker objects and
a fake session provider.
"""

from .broker_factory import BrokerTestFactory, FakeIncomingMessage
from .clock import FakeClock
from .redis_factory import FakeRedisClient, InMemoryRedis
from .session_factory import FakeSessionProvider

__all__ = [
    "BrokerTestFactory",
    "FakeClock",
    "FakeIncomingMessage",
    "FakeRedisClient",
    "FakeSessionProvider",
    "InMemoryRedis",
]
