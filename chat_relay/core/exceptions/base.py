"""
Base Exception Class

This module contains the base exception class that all relay exceptions inherit
from, plus the error category enumeration the classifier keys on. Specialized
exceptions live in their themed modules.

Author: System Architect
Date: 2025-12-08
"""

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """
    Failure categories used for retry/dead-letter decisions.

    The string values double as the prefix of a dead-letter record's `error`
    field ("CONNECTION_RESET: peer closed"), which is what the reprocessing
    sweep and the statistics group on.
    """

    CONNECTION_REFUSED = "CONNECTION_REFUSED"
    CONNECTION_RESET = "CONNECTION_RESET"
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    TEMPORARY_FAILURE = "TEMPORARY_FAILURE"
    RESOURCE_LOCKED = "RESOURCE_LOCKED"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    RATE_LIMITED = "RATE_LIMIT"
    ACCESS_REFUSED = "PERMISSION_DENIED"
    AUTHENTICATION = "AUTHENTICATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    PRECONDITION_FAILED = "PRECONDITION_FAILED"
    MESSAGE_TOO_LARGE = "MESSAGE_TOO_LARGE"
    INVALID_MESSAGE_FORMAT = "INVALID_MESSAGE_FORMAT"
    VALIDATION = "VALIDATION_ERROR"
    ROUTING = "ROUTING_ERROR"
    DUPLICATE = "DUPLICATE"
    UNKNOWN = "UNKNOWN"


class RelayBaseError(Exception):
    """
    Base exception for all chat relay errors.

    All custom exceptions inherit from this class to enable:
    - Consistent error handling
    - Correlation ID propagation
    - Structured error logging
    - Deterministic classification (via `category`)

    Attributes:
        message: Error message
        correlation_id: Correlation ID of the delivery (if available)
        details: Additional error details (dict)

    Example:
        raise RoutingError(
            "No active session for tenant",
            correlation_id="1712345678901-k3j2",
            details={"tenant_id": "acme", "active_sessions": 0},
        )
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        correlation_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.correlation_id = correlation_id
        self.details = (details or {}).copy()
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to dictionary for logging/headers.

        Returns:
            Dict with error_type, category, message, correlation_id, and details
        """
        return {
            "error_type": self.__class__.__name__,
            "category": self.category.value,
            "message": self.message,
            "correlation_id": self.correlation_id,
            "details": self.details,
        }

    def with_context(self, **context) -> "RelayBaseError":
        """Add additional context to the error details (chainable)."""
        self.details.update(context)
        return self

    def __repr__(self) -> str:
        details_str = f", details={self.details}" if self.details else ""
        correlation_str = f", correlation_id='{self.correlation_id}'" if self.correlation_id else ""
        return f"{self.__class__.__name__}(message='{self.message}'{correlation_str}{details_str})"

    @classmethod
    def from_exception(
        cls,
        exc: Exception,
        message: str | None = None,
        correlation_id: str | None = None,
        **details,
    ) -> "RelayBaseError":
        """
        Create a relay error from another exception.

        Useful for wrapping broker client or Redis exceptions with context.

        Example:
            >>> try:
            ...     await connection.channel()
            ... except aiormq.exceptions.AMQPConnectionError as e:
            ...     raise BrokerConnectionError.from_exception(e, url=masked_url)
        """
        error_message = message or str(exc)
        error_details = {
            "original_error": exc.__class__.__name__,
            "original_message": str(exc),
            **details,
        }
        return cls(error_message, correlation_id=correlation_id, details=error_details)
