"""
Dead-Letter Module

Redis-backed store for terminally failed deliveries and the periodic sweep
that retries or archives them.
"""

from .coordinator import RecoveryPolicy, RetryCoordinator, SweepStats
from .store import ARCHIVE_PREFIX, KEY_PREFIX, LINEAGE_PREFIX, DeadLetterStore

__all__ = [
    "ARCHIVE_PREFIX",
    "DeadLetterStore",
    "KEY_PREFIX",
    "LINEAGE_PREFIX",
    "RecoveryPolicy",
    "RetryCoordinator",
    "SweepStats",
]
