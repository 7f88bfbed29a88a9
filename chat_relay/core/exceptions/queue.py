"""
Message Queue Exceptions

All exceptions related to queue management and message consumption.

Author: System Architect
Date: 2025-12-08
"""

from chat_relay.core.exceptions.base import ErrorCategory, RelayBaseError


class QueueError(RelayBaseError):
    """Base exception for message queue errors."""
    pass


class InvalidQueueNameError(QueueError):
    """Raised when a queue name is empty, too long, or has illegal characters."""

    category = ErrorCategory.VALIDATION


class MessageTooLargeError(QueueError):
    """Raised when a serialized message exceeds the size limit."""

    category = ErrorCategory.MESSAGE_TOO_LARGE


class RoutingError(QueueError):
    """
    Raised when a command's logical destination cannot be resolved.

    Zero or several active sessions for a tenant is a routing problem that
    retrying will not fix, so this error is terminal.
    """

    category = ErrorCategory.ROUTING
