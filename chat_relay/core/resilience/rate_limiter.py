"""
Outbound Admission Control (rate limiting + duplicate suppression)

One sliding window per key (usually "{session}:{recipient}"). Within a window a
key may send at most `max_per_window` messages, and never the same content
twice in a row.

Algorithm (can_send):
    1. No entry                         → allow, create entry (count=1)
    2. now - last >= window             → reset entry, allow (count=1)
    3. same content as last send        → reject "duplicate"
    4. count >= max_per_window          → reject "rate-limited"
    5. otherwise                        → allow, count += 1, remember content

Content is remembered as a SHA-256 fingerprint, never in clear.

All methods are synchronous: state is only touched between awaits, so a
single event loop needs no lock.
"""

import functools
import hashlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from chat_relay.core.exceptions import DuplicateMessageError, RateLimitExceededError
from chat_relay.core.logging.logger import get_logger
from chat_relay.core.resilience.scheduler import Clock, SystemClock

logger = get_logger(__name__)

T = TypeVar("T")

REASON_DUPLICATE = "duplicate"
REASON_RATE_LIMITED = "rate-limited"


@dataclass
class RateLimitEntry:
    last_message_time: float
    message_count: int
    last_content_fingerprint: str | None


@dataclass
class AdmissionResult:
    """
    Outcome of an admission check.

    Attributes:
        allowed: Whether the send may proceed
        reason: "duplicate" or "rate-limited" when rejected
        time_remaining_ms: Milliseconds until the window for this key resets
    """

    allowed: bool
    reason: str | None = None
    time_remaining_ms: int | None = None


def fingerprint(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def recipient_key(session_id: str, recipient: str) -> str:
    return f"{session_id}:{recipient}"


class RateLimiterDedup:
    """
    Sliding-window limiter keyed by (session, recipient).

    Args:
        window_ms: Window length in milliseconds
        max_per_window: Sends allowed per key per window
        clock: Time source
        metrics: Optional MetricsCollector
    """

    def __init__(
        self,
        window_ms: int = 30000,
        max_per_window: int = 1,
        clock: Clock | None = None,
        metrics=None,
    ):
        self.window_ms = window_ms
        self.max_per_window = max_per_window
        self._clock = clock or SystemClock()
        self._metrics = metrics
        self._entries: dict[str, RateLimitEntry] = {}

        logger.info(
            "Admission control configured",
            stage="RL.INIT",
            window_ms=window_ms,
            max_per_window=max_per_window,
        )

    @property
    def _window_seconds(self) -> float:
        return self.window_ms / 1000.0

    def _remaining_ms(self, entry: RateLimitEntry, now: float) -> int:
        return max(0, int(round((self._window_seconds - (now - entry.last_message_time)) * 1000)))

    def can_send(self, key: str, content: str) -> AdmissionResult:
        """
        Check admission and record the send when allowed.

        Args:
            key: Window key (see recipient_key)
            content: Message content, compared against the previous send

        Returns:
            AdmissionResult
        """
        now = self._clock.time()
        content_fp = fingerprint(content)
        entry = self._entries.get(key)

        if entry is None or now - entry.last_message_time >= self._window_seconds:
            self._entries[key] = RateLimitEntry(
                last_message_time=now, message_count=1, last_content_fingerprint=content_fp
            )
            return AdmissionResult(allowed=True)

        if entry.last_content_fingerprint == content_fp:
            return self._reject(key, REASON_DUPLICATE, self._remaining_ms(entry, now))

        if entry.message_count >= self.max_per_window:
            return self._reject(key, REASON_RATE_LIMITED, self._remaining_ms(entry, now))

        entry.message_count += 1
        entry.last_message_time = now
        entry.last_content_fingerprint = content_fp
        return AdmissionResult(allowed=True)

    def _reject(self, key: str, reason: str, remaining_ms: int) -> AdmissionResult:
        logger.info(
            "Send rejected by admission control",
            stage="RL.REJECT",
            key=key,
            reason=reason,
            time_remaining_ms=remaining_ms,
        )
        if self._metrics:
            self._metrics.record_admission_rejected(reason)
        return AdmissionResult(allowed=False, reason=reason, time_remaining_ms=remaining_ms)

    def check(self, key: str, content: str) -> None:
        """
        Like can_send, but raises on rejection.

        Raises:
            DuplicateMessageError: Same content already sent within the window
            RateLimitExceededError: Window budget used up
        """
        result = self.can_send(key, content)
        if result.allowed:
            return
        if result.reason == REASON_DUPLICATE:
            raise DuplicateMessageError(
                f"Duplicate message for {key}", key=key, time_remaining_ms=result.time_remaining_ms
            )
        raise RateLimitExceededError(
            f"Rate limit reached for {key}", key=key, time_remaining_ms=result.time_remaining_ms
        )

    def release(self, key: str, content: str) -> None:
        """
        Undo an admission whose send then failed.

        Without this a retried send would be rejected as its own duplicate.
        Only applies when `content` is the last admitted content for `key`.
        """
        entry = self._entries.get(key)
        if entry is None or entry.last_content_fingerprint != fingerprint(content):
            return
        if entry.message_count <= 1:
            del self._entries[key]
        else:
            entry.message_count -= 1
            entry.last_content_fingerprint = None

    def cleanup(self) -> int:
        """
        Evict entries idle for more than twice the window.

        Returns:
            Number of entries evicted
        """
        now = self._clock.time()
        stale = [
            key
            for key, entry in self._entries.items()
            if now - entry.last_message_time > 2 * self._window_seconds
        ]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.info("Evicted idle admission entries", stage="RL.CLEANUP", evicted=len(stale))
        return len(stale)

    async def cleanup_async(self) -> None:
        """Scheduler-friendly wrapper around cleanup()."""
        self.cleanup()

    def reset_for_key(self, key: str) -> None:
        self._entries.pop(key, None)
        logger.info("Admission entry reset", stage="RL.RESET", key=key)

    def reset_for_recipient(self, session_id: str, recipient: str) -> None:
        self.reset_for_key(recipient_key(session_id, recipient))

    def reset_all(self) -> None:
        self._entries.clear()
        logger.info("All admission entries reset", stage="RL.RESET")

    def stats(self) -> dict[str, Any]:
        return {
            "active_entries": len(self._entries),
            "window_ms": self.window_ms,
            "max_per_window": self.max_per_window,
        }


def deduplicate(
    limiter: RateLimiterDedup,
    key_fn: Callable[..., str],
    content_fn: Callable[..., str],
):
    """
    Guard an async send function with admission control.

    The wrapped function only runs when admitted; if it raises, the admission
    is released so a retry is not mistaken for a duplicate.

    Usage:
        @deduplicate(limiter,
                     key_fn=lambda session_id, to, text: recipient_key(session_id, to),
                     content_fn=lambda session_id, to, text: text)
        async def send(session_id, to, text): ...
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            key = key_fn(*args, **kwargs)
            content = content_fn(*args, **kwargs)
            limiter.check(key, content)
            try:
                return await func(*args, **kwargs)
            except Exception:
                limiter.release(key, content)
                raise

        return wrapper

    return decorator
