"""
In-Process Circuit Breaker

Architecture:
    CircuitBreakerRegistry (Public API, injected)
        └── CircuitBreaker (one per dependency name)
                └── CircuitState (snapshot for stats/metrics)

States:
    CLOSED ──(failure_count >= threshold)──> OPEN
    OPEN ──(now >= next_try_time)──> calls let through as probes
    probe success ──> CLOSED (failure_count = 0)
    probe failure ──> OPEN again with a fresh cooldown

There is no stored HALF_OPEN flag: once the cooldown has elapsed the breaker
simply stops rejecting, and the outcome of the next call decides. Probing is
reported as "half_open" for observability only.

State is mutated synchronously between awaits, so no lock is needed on a
single event loop.
"""

import inspect
import math
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from typing import Any, TypeVar

from chat_relay.core.exceptions import CircuitBreakerOpenError
from chat_relay.core.logging.logger import get_logger
from chat_relay.core.resilience.scheduler import Clock, SystemClock

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class CircuitState:
    """Point-in-time view of a breaker (times are epoch seconds)."""

    failure_count: int
    is_open: bool
    next_try_time: float
    last_failure_time: float
    total_failures: int
    total_successes: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class CircuitBreaker:
    """
    Failure counter and short-circuit gate for one dependency.

    Usage:
        breaker = registry.get("session-send")
        result = await breaker.execute(provider.send, session_id, to, text)
    """

    def __init__(
        self,
        name: str,
        threshold: int = 3,
        cooldown_seconds: float = 30.0,
        clock: Clock | None = None,
        metrics=None,
    ):
        self.name = name
        self.threshold = threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock or SystemClock()
        self._metrics = metrics

        self._failure_count = 0
        self._is_open = False
        self._next_try_time = 0.0
        self._last_failure_time = 0.0
        self._total_failures = 0
        self._total_successes = 0

    # ------------------------------------------------------------------
    # Gate
    # ------------------------------------------------------------------

    def remaining_seconds(self) -> float:
        """Seconds until a probe is allowed (0 when closed or cooled down)."""
        if not self._is_open:
            return 0.0
        return max(0.0, self._next_try_time - self._clock.time())

    def _check_gate(self) -> None:
        if self._is_open and self._clock.time() < self._next_try_time:
            remaining = self.remaining_seconds()
            logger.warning(
                "Circuit open, rejecting call",
                stage="CB.REJECT",
                breaker=self.name,
                retry_in_seconds=math.ceil(remaining),
            )
            raise CircuitBreakerOpenError(self.name, remaining)

    @property
    def state_name(self) -> str:
        if not self._is_open:
            return "closed"
        return "open" if self.remaining_seconds() > 0 else "half_open"

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, action: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """
        Run an async action through the breaker.

        Raises:
            CircuitBreakerOpenError: Breaker open and cooldown not elapsed
                (the action is not invoked).
            Exception: Whatever the action raised (after being counted).
        """
        self._check_gate()
        try:
            result = await action(*args, **kwargs)
        except Exception as e:
            self._on_failure(e)
            raise
        self._on_success()
        return result

    def execute_sync(self, action: Callable[..., T], *args, **kwargs) -> T:
        """Synchronous counterpart of `execute`."""
        if inspect.iscoroutinefunction(action):
            raise TypeError("execute_sync() requires a synchronous callable; use execute()")
        self._check_gate()
        try:
            result = action(*args, **kwargs)
        except Exception as e:
            self._on_failure(e)
            raise
        self._on_success()
        return result

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _on_success(self) -> None:
        was_open = self._is_open
        self._failure_count = 0
        self._is_open = False
        self._total_successes += 1
        if was_open:
            logger.info("Circuit closed after successful probe", stage="CB.CLOSE", breaker=self.name)
        self._report_state()

    def _on_failure(self, error: Exception) -> None:
        self._failure_count += 1
        self._last_failure_time = self._clock.time()
        self._total_failures += 1

        logger.warning(
            "Protected call failed",
            stage="CB.FAIL",
            breaker=self.name,
            failure_count=self._failure_count,
            threshold=self.threshold,
            error=str(error),
            error_type=type(error).__name__,
        )
        if self._metrics:
            self._metrics.record_circuit_failure(self.name)

        if self._failure_count >= self.threshold:
            self._open()
        else:
            self._report_state()

    def _open(self) -> None:
        self._is_open = True
        self._next_try_time = self._clock.time() + self.cooldown_seconds
        logger.warning(
            "Circuit opened",
            stage="CB.OPEN",
            breaker=self.name,
            failure_count=self._failure_count,
            cooldown_seconds=self.cooldown_seconds,
        )
        self._report_state()

    def force_reset(self) -> None:
        """Operator escape hatch: close the breaker and clear the failure count."""
        self._failure_count = 0
        self._is_open = False
        self._next_try_time = 0.0
        logger.info("Circuit force-reset", stage="CB.RESET", breaker=self.name)
        self._report_state()

    def _report_state(self) -> None:
        if self._metrics:
            self._metrics.set_circuit_state(self.name, self.state_name)

    def get_state(self) -> CircuitState:
        return CircuitState(
            failure_count=self._failure_count,
            is_open=self._is_open,
            next_try_time=self._next_try_time,
            last_failure_time=self._last_failure_time,
            total_failures=self._total_failures,
            total_successes=self._total_successes,
        )


class CircuitBreakerRegistry:
    """
    One breaker per dependency name, created lazily.

    Constructed once by the runtime and handed to every component that calls
    out, so independent dependencies never share a failure budget.

    Args:
        clock: Time source shared by all breakers
        defaults: Callable name -> (threshold, cooldown_seconds); typically
            CircuitBreakerSettings.for_name
        metrics: Optional MetricsCollector
    """

    def __init__(
        self,
        clock: Clock | None = None,
        defaults: Callable[[str], tuple[int, float]] | None = None,
        metrics=None,
    ):
        self._clock = clock or SystemClock()
        self._defaults = defaults or (lambda name: (3, 30.0))
        self._metrics = metrics
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(
        self, name: str, threshold: int | None = None, cooldown_seconds: float | None = None
    ) -> CircuitBreaker:
        """Get the breaker for `name`, creating it on first use."""
        breaker = self._breakers.get(name)
        if breaker is None:
            default_threshold, default_cooldown = self._defaults(name)
            breaker = CircuitBreaker(
                name,
                threshold=threshold if threshold is not None else default_threshold,
                cooldown_seconds=cooldown_seconds if cooldown_seconds is not None else default_cooldown,
                clock=self._clock,
                metrics=self._metrics,
            )
            self._breakers[name] = breaker
            logger.info(
                "Circuit breaker created",
                stage="CB.INIT",
                breaker=name,
                threshold=breaker.threshold,
                cooldown_seconds=breaker.cooldown_seconds,
            )
        return breaker

    def names(self) -> list[str]:
        return list(self._breakers)

    def all_stats(self) -> dict[str, dict[str, Any]]:
        return {name: breaker.get_state().to_dict() for name, breaker in self._breakers.items()}

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.force_reset()
