"""
Session Provider Exceptions

Author: System Architect
Date: 2025-12-08
"""

from chat_relay.core.exceptions.base import ErrorCategory, RelayBaseError


class SessionProviderError(RelayBaseError):
    """Raised when the session provider fails a call in a way worth retrying."""

    category = ErrorCategory.TEMPORARY_FAILURE


class SessionUnavailableError(SessionProviderError):
    """Raised when the provider is reachable but the session is not connected."""

    category = ErrorCategory.SERVICE_UNAVAILABLE
