"""
Scheduled Task Primitives

Timers in the relay (dead-letter sweep, limiter cleanup, broker reconnect,
retry backoff) all go through this module so they share one clock and one
cancellation mechanism.

Architecture:
    Scheduler (Public API)
        ├── Clock / SystemClock (time source + sleep, swappable in tests)
        ├── CancellationToken (explicit stop signal)
        ├── PeriodicTask (fixed-period loop, never overlapping itself)
        └── DelayedTask (one-shot action after a delay)

Tests inject a fake clock and advance virtual time instead of racing real
timers.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from chat_relay.core.logging.logger import get_logger

logger = get_logger(__name__)

Action = Callable[[], Awaitable[Any]]


class Clock(Protocol):
    """Time source used by every timer-driven component."""

    def time(self) -> float:
        """Current wall-clock time in seconds since the epoch."""
        ...

    async def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    """Real time: time.time() and asyncio.sleep()."""

    def time(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class CancellationToken:
    """
    One-way stop signal shared between a task and its owner.

    Once cancelled a token stays cancelled; tasks check it between iterations.
    """

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class ScheduledTask(ABC):
    """Common lifecycle for scheduled tasks."""

    def __init__(self, name: str, action: Action, clock: Clock):
        self.name = name
        self._action = action
        self._clock = clock
        self.token = CancellationToken()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "ScheduledTask":
        if self.running:
            return self
        self._task = asyncio.create_task(self._run(), name=self.name)
        return self

    async def stop(self) -> None:
        """Cancel the token and wait for the task to finish."""
        self.token.cancel()
        if self._task is None:
            return
        if not self._task.done():
            self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def join(self) -> None:
        """Wait for the task to finish on its own."""
        if self._task is not None:
            await self._task

    async def _invoke(self) -> None:
        try:
            await self._action()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Scheduled action failed",
                stage="SCHED.ERR",
                task=self.name,
                error=str(e),
                error_type=type(e).__name__,
            )

    @abstractmethod
    async def _run(self) -> None:
        """Body of the task; subclasses define when `action` fires."""


class PeriodicTask(ScheduledTask):
    """
    Runs `action` every `interval_seconds` until stopped.

    The next tick is only scheduled after the current action returns, so an
    action slower than the interval delays the next run instead of overlapping.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        action: Action,
        clock: Clock,
        run_immediately: bool = True,
    ):
        super().__init__(name, action, clock)
        self.interval_seconds = interval_seconds
        self.run_immediately = run_immediately
        self.runs = 0

    async def _run(self) -> None:
        if self.run_immediately and not self.token.cancelled:
            await self._invoke()
            self.runs += 1
        while not self.token.cancelled:
            await self._clock.sleep(self.interval_seconds)
            if self.token.cancelled:
                break
            await self._invoke()
            self.runs += 1


class DelayedTask(ScheduledTask):
    """Runs `action` once after `delay_seconds` unless cancelled first."""

    def __init__(self, name: str, delay_seconds: float, action: Action, clock: Clock):
        super().__init__(name, action, clock)
        self.delay_seconds = delay_seconds
        self.fired = False

    async def _run(self) -> None:
        await self._clock.sleep(self.delay_seconds)
        if not self.token.cancelled:
            self.fired = True
            await self._invoke()


class Scheduler:
    """
    Factory and owner of scheduled tasks.

    One Scheduler is built by the runtime and shared, so shutdown can stop
    every timer in one call.
    """

    def __init__(self, clock: Clock | None = None):
        self.clock: Clock = clock or SystemClock()
        self._tasks: list[ScheduledTask] = []

    @property
    def tasks(self) -> list[ScheduledTask]:
        """Tasks that have not finished yet."""
        return [t for t in self._tasks if t.running]

    def every(
        self, name: str, interval_seconds: float, action: Action, run_immediately: bool = True
    ) -> PeriodicTask:
        task = PeriodicTask(name, interval_seconds, action, self.clock, run_immediately)
        self._track(task)
        return task

    def after(self, name: str, delay_seconds: float, action: Action) -> DelayedTask:
        task = DelayedTask(name, delay_seconds, action, self.clock)
        self._track(task)
        return task

    def _track(self, task: ScheduledTask) -> None:
        self._tasks = [t for t in self._tasks if t.running]
        self._tasks.append(task)
        task.start()
        logger.debug("Task scheduled", stage="SCHED.1", task=task.name)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            await task.stop()
        self._tasks.clear()
        logger.info("Scheduler stopped", stage="SCHED.2")
