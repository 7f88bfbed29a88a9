"""
Virtual Clock

Drop-in replacement for SystemClock. Time only moves when a test says so,
so backoff delays, cool-downs and periodic timers run without real waiting.
"""

import asyncio


class FakeClock:
    """
    Two modes:
    - auto_advance=True: sleep() moves time forward by the requested amount
      and returns after one loop turn (good for code that just waits).
    - auto_advance=False: sleep() blocks until advance() passes its deadline
      (good for driving periodic tasks step by step).
    """

    def __init__(self, start: float = 1_765_000_000.0, auto_advance: bool = True):
        self.now = start
        self.auto_advance = auto_advance
        self.sleeps: list[float] = []
        self._waiters: list[tuple[float, asyncio.Future]] = []

    def time(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if self.auto_advance:
            self.now += max(0.0, seconds)
            await asyncio.sleep(0)
            return
        future = asyncio.get_running_loop().create_future()
        self._waiters.append((self.now + max(0.0, seconds), future))
        await future

    async def advance(self, seconds: float) -> None:
        """Move time forward and let every task whose deadline passed run."""
        self.now += seconds
        due = [(d, f) for d, f in self._waiters if d <= self.now]
        self._waiters = [(d, f) for d, f in self._waiters if d > self.now]
        for _, future in due:
            if not future.done():
                future.set_result(None)
        for _ in range(10):
            await asyncio.sleep(0)

    @property
    def pending_sleepers(self) -> int:
        return len([f for _, f in self._waiters if not f.done()])
