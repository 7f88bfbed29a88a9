"""
Cache Module

Provides the pooled Redis client used by the dead-letter store and the replay log.
"""

from .redis_client import RedisClient

__all__ = [
    "RedisClient",
]
