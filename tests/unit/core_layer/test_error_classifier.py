"""
Unit Tests for Failure Classification

Tests exception → category mapping, backoff computation and the
retry / reconnect / dead-letter / discard decision.
"""

import asyncio

import orjson
import pytest
from aiormq.exceptions import AMQPConnectionError, ChannelAccessRefused, ChannelPreconditionFailed
from redis.exceptions import ConnectionError as RedisConnectionError

from chat_relay.core.exceptions import (
    CircuitBreakerOpenError,
    DuplicateMessageError,
    ErrorCategory,
    RateLimitExceededError,
    RoutingError,
    ValidationError,
)
from chat_relay.core.resilience.error_classifier import (
    ActionType,
    BackoffPolicy,
    ErrorClassifier,
    ErrorHandler,
    MatchSource,
)


@pytest.fixture
def classifier():
    return ErrorClassifier()


@pytest.mark.unit
class TestErrorClassifier:
    @pytest.mark.parametrize(
        ("error", "category", "retryable"),
        [
            (ConnectionRefusedError("refused"), ErrorCategory.CONNECTION_REFUSED, True),
            (ConnectionResetError("reset"), ErrorCategory.CONNECTION_RESET, True),
            (asyncio.TimeoutError(), ErrorCategory.TIMEOUT, True),
            (RedisConnectionError("down"), ErrorCategory.NETWORK_ERROR, True),
            (AMQPConnectionError("gone"), ErrorCategory.CONNECTION_REFUSED, True),
            (ChannelAccessRefused("ACCESS_REFUSED"), ErrorCategory.ACCESS_REFUSED, False),
            (ChannelPreconditionFailed("PRECONDITION_FAILED"), ErrorCategory.PRECONDITION_FAILED, False),
            (RoutingError("no active session"), ErrorCategory.ROUTING, False),
            (ValidationError("no recipient"), ErrorCategory.VALIDATION, False),
        ],
    )
    def test_structured_classification(self, classifier, error, category, retryable):
        """Test type-based classification and its retry policy."""
        info = classifier.classify(error)

        assert info.category == category
        assert info.retryable is retryable
        assert info.matched_by == MatchSource.TYPE

    def test_json_decode_error_is_terminal(self, classifier):
        """Test that an undecodable body is never retried."""
        try:
            orjson.loads(b"{not json")
        except orjson.JSONDecodeError as e:
            info = classifier.classify(e)

        assert info.category == ErrorCategory.INVALID_MESSAGE_FORMAT
        assert info.terminal

    def test_connection_refused_requests_reconnect(self, classifier):
        """Test the reconnect flag and fixed delay for refused connections."""
        info = classifier.classify(ConnectionRefusedError("refused"))

        assert info.reconnect
        assert info.delay_ms == 2000

    def test_circuit_open_uses_remaining_time_as_delay(self, classifier):
        """Test that the breaker's cooldown becomes the retry delay hint."""
        info = classifier.classify(CircuitBreakerOpenError("session-send", 7.5))

        assert info.category == ErrorCategory.CIRCUIT_OPEN
        assert info.retryable
        assert info.delay_ms == 7500

    def test_rate_limit_uses_window_remaining_as_delay(self, classifier):
        """Test that the admission window becomes the retry delay hint."""
        info = classifier.classify(RateLimitExceededError("limited", key="k", time_remaining_ms=1200))

        assert info.delay_ms == 1200

    def test_reply_code_classification(self, classifier):
        """Test classification from an AMQP reply code attribute."""
        error = Exception("channel closed")
        error.code = 405

        info = classifier.classify(error)

        assert info.category == ErrorCategory.RESOURCE_LOCKED
        assert info.matched_by == MatchSource.CODE

    def test_pattern_fallback(self, classifier):
        """Test the message-pattern fallback for opaque errors."""
        info = classifier.classify(RuntimeError("NOT_FOUND - no queue 'relay.x' in vhost '/'"))

        assert info.category == ErrorCategory.NOT_FOUND
        assert info.matched_by == MatchSource.PATTERN

    def test_unknown_error_is_retryable(self, classifier):
        """Test that unclassified errors default to retryable."""
        info = classifier.classify(RuntimeError("something odd"))

        assert info.category == ErrorCategory.UNKNOWN
        assert info.retryable
        assert info.matched_by == MatchSource.DEFAULT

    def test_describe(self, classifier):
        """Test the dead-letter error text format."""
        info = classifier.classify(ConnectionResetError("peer closed"))

        assert info.describe() == "CONNECTION_RESET: peer closed"


@pytest.mark.unit
class TestBackoffPolicy:
    def test_exponential_with_cap(self):
        """Test delay = min(base * 2^n, max)."""
        policy = BackoffPolicy(base_delay_ms=1000, max_delay_ms=30000)

        assert [policy.delay_ms(n) for n in range(6)] == [1000, 2000, 4000, 8000, 16000, 30000]

    def test_constant_when_not_exponential(self):
        """Test the constant-delay mode."""
        policy = BackoffPolicy(base_delay_ms=500, exponential=False)

        assert policy.delay_ms(4) == 500

    def test_error_hint_is_capped(self, classifier):
        """Test that a delay hint never exceeds the cap."""
        policy = BackoffPolicy(max_delay_ms=5000)
        info = classifier.classify(CircuitBreakerOpenError("x", 60))

        assert policy.delay_ms(0, info) == 5000


@pytest.mark.unit
class TestErrorHandler:
    def test_retryable_within_budget_retries(self):
        """Test RETRY for a transient error with budget left."""
        action = ErrorHandler(max_retries=3).handle(ConnectionResetError("reset"), "consume", retry_count=1)

        assert action.action == ActionType.RETRY
        assert action.delay_ms == 2000

    def test_reconnect_action(self):
        """Test RECONNECT for refused connections."""
        action = ErrorHandler().handle(ConnectionRefusedError("refused"), "consume", retry_count=0)

        assert action.action == ActionType.RECONNECT

    def test_exhausted_budget_dead_letters(self):
        """Test DEAD_LETTER once retry_count reaches the budget."""
        action = ErrorHandler(max_retries=3).handle(ConnectionResetError("reset"), "consume", retry_count=3)

        assert action.action == ActionType.DEAD_LETTER
        assert action.delay_ms == 0

    def test_terminal_error_dead_letters_immediately(self):
        """Test that terminal errors never consume retry budget."""
        action = ErrorHandler().handle(RoutingError("ambiguous"), "consume", retry_count=0)

        assert action.action == ActionType.DEAD_LETTER

    def test_discard_when_dead_lettering_disabled(self):
        """Test DISCARD when the DLQ is switched off."""
        action = ErrorHandler(dlq_enabled=False).handle(ValidationError("bad"), "consume", retry_count=0)

        assert action.action == ActionType.DISCARD

    def test_per_message_budget_override(self):
        """Test the envelope's own max_retries."""
        action = ErrorHandler(max_retries=3).handle(
            ConnectionResetError("reset"), "consume", retry_count=1, max_retries=1
        )

        assert action.action == ActionType.DEAD_LETTER

    def test_duplicate_is_terminal(self):
        """Test that a duplicate send is never retried."""
        error = DuplicateMessageError("dup", key="k", time_remaining_ms=10)

        action = ErrorHandler().handle(error, "consume", retry_count=0)

        assert action.info.category == ErrorCategory.DUPLICATE
        assert action.action == ActionType.DEAD_LETTER
