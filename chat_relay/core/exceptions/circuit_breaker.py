"""
Circuit Breaker Exceptions

All exceptions related to circuit breaker operations

Author: System Architect
Date: 2025-12-08
"""

import math

from chat_relay.core.exceptions.base import ErrorCategory, RelayBaseError


class CircuitBreakerError(RelayBaseError):
    """Base exception for circuit breaker errors."""
    pass


class CircuitBreakerOpenError(CircuitBreakerError):
    """
    Raised when a circuit breaker is open (fail fast).

    The protected action was NOT invoked. `remaining_seconds` tells the caller
    how long until a probe call will be let through; the consumer uses it as
    the retry delay hint.
    """

    category = ErrorCategory.CIRCUIT_OPEN

    def __init__(self, service_name: str, remaining_seconds: float, correlation_id: str | None = None):
        self.service_name = service_name
        self.remaining_seconds = max(0.0, remaining_seconds)
        super().__init__(
            f"Circuit breaker open for {service_name}. "
            f"Try again in {math.ceil(self.remaining_seconds)}s",
            correlation_id=correlation_id,
            details={
                "service_name": service_name,
                "remaining_seconds": math.ceil(self.remaining_seconds),
            },
        )
