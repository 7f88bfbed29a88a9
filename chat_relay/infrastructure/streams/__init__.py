"""
Streams Module

Bridges the message-received queue into a Redis stream and from there into
the persistent store.
"""

from .stream_bridge import (
    BrokerToLogRelay,
    LogReader,
    MessageSerializer,
    StreamBridge,
    StreamManager,
    default_consumer_name,
)

__all__ = [
    "BrokerToLogRelay",
    "LogReader",
    "MessageSerializer",
    "StreamBridge",
    "StreamManager",
    "default_consumer_name",
]
