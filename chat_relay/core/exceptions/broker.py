"""
Broker Exceptions

All exceptions related to RabbitMQ connectivity, topology and publishing.

Author: System Architect
Date: 2025-12-08
"""

from chat_relay.core.exceptions.base import ErrorCategory, RelayBaseError


class BrokerError(RelayBaseError):
    """Base exception for broker errors."""
    pass


class BrokerConnectionError(BrokerError):
    """
    Raised when no usable broker connection exists.

    Publishing raises this (instead of returning False) so the caller knows a
    reconnect has been scheduled and the publish did not happen.
    """

    category = ErrorCategory.CONNECTION_REFUSED


class TopologyError(BrokerError):
    """
    Raised when an exchange/queue declaration is rejected.

    Most commonly a PRECONDITION_FAILED: a queue already exists with
    different arguments (e.g. a missing x-dead-letter-exchange).
    """

    category = ErrorCategory.PRECONDITION_FAILED


class PublishError(BrokerError):
    """Raised when the broker does not confirm a publish."""

    category = ErrorCategory.TEMPORARY_FAILURE
