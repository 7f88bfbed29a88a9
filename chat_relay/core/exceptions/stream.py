"""
Replay Log Exceptions

All exceptions related to the Redis Streams replay log.

Author: System Architect
Date: 2025-12-08
"""

from chat_relay.core.exceptions.base import ErrorCategory, RelayBaseError


class StreamError(RelayBaseError):
    """Base exception for replay log errors."""

    category = ErrorCategory.NETWORK_ERROR


class StreamAppendError(StreamError):
    """Raised when an entry cannot be appended to the stream."""
    pass


class ConsumerGroupError(StreamError):
    """Raised when a consumer group cannot be created."""
    pass
