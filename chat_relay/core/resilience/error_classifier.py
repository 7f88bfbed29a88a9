"""
Failure Classification

Turns an exception into a deterministic delivery decision.

Architecture:
    ErrorHandler (Public API)
        ├── ErrorClassifier (exception → ErrorInfo)
        │     1. relay exceptions (declared category)
        │     2. broker client exception types (aiormq)
        │     3. AMQP reply codes
        │     4. builtin network errors, decode errors
        │     5. message-pattern fallback (logged: unclassified error mode)
        └── BackoffPolicy (retry delay computation)

Outcomes:
    RETRY       republish with backoff
    RECONNECT   retry, but the broker connection is unusable: reconnect first
    DEAD_LETTER terminal or retries exhausted
    DISCARD     dead-lettering disabled (or impossible): log and drop

Terminal categories never trigger a reconnect and never consume retry budget.
"""

import asyncio
import re
from dataclasses import dataclass
from enum import Enum

import orjson
import pydantic
from aiormq.exceptions import (
    AMQPConnectionError,
    AuthenticationError,
    ChannelAccessRefused,
    ChannelLockedResource,
    ChannelNotFoundEntity,
    ChannelPreconditionFailed,
    DeliveryError,
    ProbableAuthenticationError,
)
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from chat_relay.core.exceptions import (
    CircuitBreakerOpenError,
    ErrorCategory,
    RateLimitError,
    RelayBaseError,
)
from chat_relay.core.logging.logger import get_logger

logger = get_logger(__name__)


# =============================================================================
# CATEGORY POLICY
# =============================================================================

@dataclass(frozen=True)
class CategoryPolicy:
    retryable: bool
    reconnect: bool = False
    fixed_delay_ms: int | None = None


CATEGORY_POLICIES: dict[ErrorCategory, CategoryPolicy] = {
    ErrorCategory.CONNECTION_REFUSED: CategoryPolicy(retryable=True, reconnect=True, fixed_delay_ms=2000),
    ErrorCategory.CONNECTION_RESET: CategoryPolicy(retryable=True),
    ErrorCategory.TIMEOUT: CategoryPolicy(retryable=True),
    ErrorCategory.NETWORK_ERROR: CategoryPolicy(retryable=True),
    ErrorCategory.SERVICE_UNAVAILABLE: CategoryPolicy(retryable=True),
    ErrorCategory.TEMPORARY_FAILURE: CategoryPolicy(retryable=True),
    ErrorCategory.RESOURCE_LOCKED: CategoryPolicy(retryable=True, fixed_delay_ms=5000),
    ErrorCategory.CIRCUIT_OPEN: CategoryPolicy(retryable=True),
    ErrorCategory.RATE_LIMITED: CategoryPolicy(retryable=True),
    ErrorCategory.ACCESS_REFUSED: CategoryPolicy(retryable=False),
    ErrorCategory.AUTHENTICATION: CategoryPolicy(retryable=False),
    ErrorCategory.NOT_FOUND: CategoryPolicy(retryable=False),
    ErrorCategory.PRECONDITION_FAILED: CategoryPolicy(retryable=False),
    ErrorCategory.MESSAGE_TOO_LARGE: CategoryPolicy(retryable=False),
    ErrorCategory.INVALID_MESSAGE_FORMAT: CategoryPolicy(retryable=False),
    ErrorCategory.VALIDATION: CategoryPolicy(retryable=False),
    ErrorCategory.ROUTING: CategoryPolicy(retryable=False),
    ErrorCategory.DUPLICATE: CategoryPolicy(retryable=False),
    ErrorCategory.UNKNOWN: CategoryPolicy(retryable=True),
}

# AMQP 0-9-1 reply codes
REPLY_CODE_CATEGORIES: dict[int, ErrorCategory] = {
    311: ErrorCategory.MESSAGE_TOO_LARGE,    # CONTENT_TOO_LARGE
    320: ErrorCategory.CONNECTION_REFUSED,   # CONNECTION_FORCED
    403: ErrorCategory.ACCESS_REFUSED,
    404: ErrorCategory.NOT_FOUND,
    405: ErrorCategory.RESOURCE_LOCKED,
    406: ErrorCategory.PRECONDITION_FAILED,
    503: ErrorCategory.CONNECTION_REFUSED,
}

# Fallback for opaque errors only; order matters (first match wins)
MESSAGE_PATTERNS: list[tuple[re.Pattern, ErrorCategory]] = [
    (re.compile(r"access[_ ]refused|permission denied", re.I), ErrorCategory.ACCESS_REFUSED),
    (re.compile(r"(no|not)[_ ]found.*(queue|exchange)|(queue|exchange).*not[_ ]found", re.I), ErrorCategory.NOT_FOUND),
    (re.compile(r"precondition[_ ]failed|invalid routing key", re.I), ErrorCategory.PRECONDITION_FAILED),
    (re.compile(r"resource[_ ]locked", re.I), ErrorCategory.RESOURCE_LOCKED),
    (re.compile(r"(message|content|frame) too large", re.I), ErrorCategory.MESSAGE_TOO_LARGE),
    (re.compile(r"econnrefused|connection refused", re.I), ErrorCategory.CONNECTION_REFUSED),
    (re.compile(r"econnreset|connection reset", re.I), ErrorCategory.CONNECTION_RESET),
    (re.compile(r"timed? ?out", re.I), ErrorCategory.TIMEOUT),
    (re.compile(r"validation", re.I), ErrorCategory.VALIDATION),
    (re.compile(r"service unavailable|\b503\b", re.I), ErrorCategory.SERVICE_UNAVAILABLE),
]


class MatchSource(str, Enum):
    TYPE = "type"
    CODE = "code"
    PATTERN = "pattern"
    DEFAULT = "default"


@dataclass
class ErrorInfo:
    """
    Classification of one failure.

    Attributes:
        category: Failure category
        retryable: Worth republishing
        reconnect: Broker connection must be re-established first
        delay_ms: Delay hint (fixed for the category or taken from the error)
        code: AMQP reply code when known
        message: Error text
        matched_by: Which rule produced the classification
    """

    category: ErrorCategory
    retryable: bool
    reconnect: bool
    delay_ms: int | None
    code: int | None
    message: str
    matched_by: MatchSource

    @property
    def terminal(self) -> bool:
        return not self.retryable

    def describe(self) -> str:
        """Error text in dead-letter form: "CATEGORY: message"."""
        return f"{self.category.value}: {self.message}"


class ActionType(str, Enum):
    RETRY = "retry"
    RECONNECT = "reconnect"
    DEAD_LETTER = "dead_letter"
    DISCARD = "discard"


@dataclass
class ErrorAction:
    action: ActionType
    delay_ms: int
    info: ErrorInfo


# =============================================================================
# LAYER 1: CLASSIFICATION
# =============================================================================

class ErrorClassifier:
    """Maps exceptions onto ErrorInfo."""

    def classify(self, error: BaseException) -> ErrorInfo:
        category, code, delay_hint, source = self._structured(error)
        if category is None:
            category, source = self._by_pattern(error)
        policy = CATEGORY_POLICIES[category]
        delay_ms = delay_hint if delay_hint is not None else policy.fixed_delay_ms
        return ErrorInfo(
            category=category,
            retryable=policy.retryable,
            reconnect=policy.reconnect,
            delay_ms=delay_ms,
            code=code,
            message=str(error) or type(error).__name__,
            matched_by=source,
        )

    def _structured(self, error: BaseException):
        """Return (category, code, delay_hint_ms, source) or (None, ...)."""
        if isinstance(error, RelayBaseError):
            delay_hint = None
            if isinstance(error, CircuitBreakerOpenError):
                delay_hint = int(error.remaining_seconds * 1000)
            elif isinstance(error, RateLimitError):
                delay_hint = error.time_remaining_ms
            return error.category, None, delay_hint, MatchSource.TYPE

        type_map = (
            (ChannelAccessRefused, ErrorCategory.ACCESS_REFUSED, 403),
            (ChannelNotFoundEntity, ErrorCategory.NOT_FOUND, 404),
            (ChannelLockedResource, ErrorCategory.RESOURCE_LOCKED, 405),
            (ChannelPreconditionFailed, ErrorCategory.PRECONDITION_FAILED, 406),
            (AuthenticationError, ErrorCategory.AUTHENTICATION, 403),
            (ProbableAuthenticationError, ErrorCategory.AUTHENTICATION, 403),
            (AMQPConnectionError, ErrorCategory.CONNECTION_REFUSED, None),
            (DeliveryError, ErrorCategory.TEMPORARY_FAILURE, None),
            (ConnectionRefusedError, ErrorCategory.CONNECTION_REFUSED, None),
            (ConnectionResetError, ErrorCategory.CONNECTION_RESET, None),
            (BrokenPipeError, ErrorCategory.CONNECTION_RESET, None),
            (ConnectionAbortedError, ErrorCategory.CONNECTION_RESET, None),
            (asyncio.TimeoutError, ErrorCategory.TIMEOUT, None),
            (TimeoutError, ErrorCategory.TIMEOUT, None),
            (RedisTimeoutError, ErrorCategory.TIMEOUT, None),
            (RedisConnectionError, ErrorCategory.NETWORK_ERROR, None),
            (pydantic.ValidationError, ErrorCategory.INVALID_MESSAGE_FORMAT, None),
            (orjson.JSONDecodeError, ErrorCategory.INVALID_MESSAGE_FORMAT, None),
        )
        for exc_type, category, code in type_map:
            if isinstance(error, exc_type):
                return category, code or self._reply_code(error), None, MatchSource.TYPE

        code = self._reply_code(error)
        if code in REPLY_CODE_CATEGORIES:
            return REPLY_CODE_CATEGORIES[code], code, None, MatchSource.CODE

        if isinstance(error, ConnectionError | OSError):
            return ErrorCategory.NETWORK_ERROR, None, None, MatchSource.TYPE

        return None, code, None, MatchSource.DEFAULT

    @staticmethod
    def _reply_code(error: BaseException) -> int | None:
        code = getattr(error, "code", None) or getattr(error, "reply_code", None)
        if isinstance(code, int):
            return code
        if error.args and isinstance(error.args[0], int):
            return error.args[0]
        return None

    @staticmethod
    def _by_pattern(error: BaseException) -> tuple[ErrorCategory, MatchSource]:
        text = str(error)
        for pattern, category in MESSAGE_PATTERNS:
            if pattern.search(text):
                logger.warning(
                    "Error classified by message pattern",
                    stage="ERR.FALLBACK",
                    error_type=type(error).__name__,
                    error=text,
                    category=category.value,
                )
                return category, MatchSource.PATTERN
        logger.warning(
            "Unclassified error, treating as retryable",
            stage="ERR.UNKNOWN",
            error_type=type(error).__name__,
            error=text,
        )
        return ErrorCategory.UNKNOWN, MatchSource.DEFAULT


# =============================================================================
# LAYER 2: BACKOFF
# =============================================================================

@dataclass
class BackoffPolicy:
    """
    Retry delay computation.

    Formula: delay = min(base_delay_ms * 2^retry_count, max_delay_ms)
    (constant base_delay_ms when exponential is False)
    """

    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    exponential: bool = True

    def delay_ms(self, retry_count: int, info: ErrorInfo | None = None) -> int:
        if info is not None and info.delay_ms is not None:
            return min(info.delay_ms, self.max_delay_ms)
        if not self.exponential:
            return self.base_delay_ms
        return min(self.base_delay_ms * (2 ** retry_count), self.max_delay_ms)


# =============================================================================
# LAYER 3: DECISION
# =============================================================================

class ErrorHandler:
    """
    Decides what to do with a failure.

    Args:
        max_retries: Retry budget per message
        backoff: Delay policy
        dlq_enabled: Dead-letter terminal failures (otherwise discard)
        classifier: ErrorClassifier instance
    """

    def __init__(
        self,
        max_retries: int = 3,
        backoff: BackoffPolicy | None = None,
        dlq_enabled: bool = True,
        classifier: ErrorClassifier | None = None,
    ):
        self.max_retries = max_retries
        self.backoff = backoff or BackoffPolicy()
        self.dlq_enabled = dlq_enabled
        self.classifier = classifier or ErrorClassifier()

    def classify(self, error: BaseException) -> ErrorInfo:
        return self.classifier.classify(error)

    def handle(
        self,
        error: BaseException,
        context: str,
        retry_count: int,
        max_retries: int | None = None,
    ) -> ErrorAction:
        """
        Decide the outcome for a failure.

        Args:
            error: The exception
            context: Where it happened (for logs), e.g. "consume", "connect"
            retry_count: Retries already spent on this message
            max_retries: Per-message override of the retry budget
        """
        info = self.classify(error)
        budget = self.max_retries if max_retries is None else max_retries

        if info.retryable and retry_count < budget:
            action = ActionType.RECONNECT if info.reconnect else ActionType.RETRY
        elif self.dlq_enabled:
            action = ActionType.DEAD_LETTER
        else:
            action = ActionType.DISCARD

        delay_ms = self.backoff.delay_ms(retry_count, info) if action in (
            ActionType.RETRY,
            ActionType.RECONNECT,
        ) else 0

        log = logger.error if info.terminal else logger.warning
        log(
            "Failure classified",
            stage="ERR.CLASSIFY",
            context=context,
            category=info.category.value,
            matched_by=info.matched_by.value,
            action=action.value,
            retry_count=retry_count,
            max_retries=budget,
            delay_ms=delay_ms,
            error=info.message,
        )
        return ErrorAction(action=action, delay_ms=delay_ms, info=info)
