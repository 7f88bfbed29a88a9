"""
Rate Limit Exceptions

Raised by outbound admission control.

Author: System Architect
Date: 2025-12-08
"""

from chat_relay.core.exceptions.base import ErrorCategory, RelayBaseError


class RateLimitError(RelayBaseError):
    """
    Base exception for admission rejections.

    `time_remaining_ms` is carried in details so callers can surface
    retry-after guidance.
    """

    def __init__(self, message: str, key: str, time_remaining_ms: int, correlation_id: str | None = None):
        self.key = key
        self.time_remaining_ms = time_remaining_ms
        super().__init__(
            message,
            correlation_id=correlation_id,
            details={"key": key, "time_remaining_ms": time_remaining_ms},
        )


class RateLimitExceededError(RateLimitError):
    """Raised when a key already used its sends for the current window."""

    category = ErrorCategory.RATE_LIMITED


class DuplicateMessageError(RateLimitError):
    """Raised when identical content was already sent to the key within the window."""

    category = ErrorCategory.DUPLICATE
