"""
Validation Exceptions

Author: System Architect
Date: 2025-12-08
"""

from chat_relay.core.exceptions.base import ErrorCategory, RelayBaseError


class ValidationError(RelayBaseError):
    """Raised when a message is well-formed but semantically invalid (e.g. missing recipient)."""

    category = ErrorCategory.VALIDATION


class InvalidMessageFormatError(ValidationError):
    """Raised when a message body cannot be decoded into an envelope."""

    category = ErrorCategory.INVALID_MESSAGE_FORMAT
