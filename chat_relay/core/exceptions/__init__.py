"""
Exception Module

Structured exception hierarchy for the chat relay. Exceptions are organized by
theme; each class declares an ErrorCategory that drives retry and dead-letter
decisions.

Module Structure:
-----------------
- **base.py**: RelayBaseError, ErrorCategory
- **broker.py**: Broker connectivity, topology and publish errors
- **cache.py**: Redis connection errors
- **queue.py**: Queue management, routing and size errors
- **validation.py**: Message validation errors
- **circuit_breaker.py**: Circuit breaker errors
- **rate_limit.py**: Admission control rejections
- **stream.py**: Replay log errors
- **session.py**: Session provider errors

Usage:
------
```python
from chat_relay.core.exceptions import CircuitBreakerOpenError, RoutingError
```

Author: System Architect
Date: 2025-12-08
"""

from chat_relay.core.exceptions.base import ErrorCategory, RelayBaseError
from chat_relay.core.exceptions.broker import (
    BrokerConnectionError,
    BrokerError,
    PublishError,
    TopologyError,
)
from chat_relay.core.exceptions.cache import CacheConnectionError, CacheError
from chat_relay.core.exceptions.circuit_breaker import (
    CircuitBreakerError,
    CircuitBreakerOpenError,
)
from chat_relay.core.exceptions.queue import (
    InvalidQueueNameError,
    MessageTooLargeError,
    QueueError,
    RoutingError,
)
from chat_relay.core.exceptions.rate_limit import (
    DuplicateMessageError,
    RateLimitError,
    RateLimitExceededError,
)
from chat_relay.core.exceptions.session import SessionProviderError, SessionUnavailableError
from chat_relay.core.exceptions.stream import ConsumerGroupError, StreamAppendError, StreamError
from chat_relay.core.exceptions.validation import InvalidMessageFormatError, ValidationError

__all__ = [
    "BrokerConnectionError",
    "BrokerError",
    "CacheConnectionError",
    "CacheError",
    "CircuitBreakerError",
    "CircuitBreakerOpenError",
    "ConsumerGroupError",
    "DuplicateMessageError",
    "ErrorCategory",
    "InvalidMessageFormatError",
    "InvalidQueueNameError",
    "MessageTooLargeError",
    "PublishError",
    "QueueError",
    "RateLimitError",
    "RateLimitExceededError",
    "RelayBaseError",
    "RoutingError",
    "SessionProviderError",
    "SessionUnavailableError",
    "StreamAppendError",
    "StreamError",
    "TopologyError",
    "ValidationError",
]
