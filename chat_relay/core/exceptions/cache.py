"""
Key-Value Store Exceptions

All exceptions related to the Redis connection shared by the dead-letter
store and the replay log.

Author: System Architect
Date: 2025-12-08
"""

from chat_relay.core.exceptions.base import ErrorCategory, RelayBaseError


class CacheError(RelayBaseError):
    """Base exception for Redis errors."""

    category = ErrorCategory.TEMPORARY_FAILURE


class CacheConnectionError(CacheError):
    """
    Raised when unable to connect to Redis.

    Common causes:
    - Redis server is down
    - Network connectivity issues
    - Incorrect host/port configuration
    """

    category = ErrorCategory.CONNECTION_REFUSED
