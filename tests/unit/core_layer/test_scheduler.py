"""
Unit Tests for Scheduled Task Primitives

Periodic and delayed tasks driven step by step with a manual FakeClock.
"""

from unittest.mock import AsyncMock

import pytest

from chat_relay.core.resilience.scheduler import CancellationToken, ScheduledTask, Scheduler


@pytest.mark.unit
class TestPeriodicTask:
    @pytest.mark.asyncio
    async def test_runs_immediately_then_every_interval(self, manual_clock):
        """Test the run-now-then-every-N behaviour."""
        scheduler = Scheduler(manual_clock)
        action = AsyncMock()

        task = scheduler.every("sweep", 300, action)
        await manual_clock.advance(0)
        assert action.await_count == 1

        await manual_clock.advance(299)
        assert action.await_count == 1

        await manual_clock.advance(1)
        assert action.await_count == 2
        assert task.runs == 2

        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_run_immediately_false_waits_first(self, manual_clock):
        """Test that the first run waits one interval."""
        scheduler = Scheduler(manual_clock)
        action = AsyncMock()

        scheduler.every("cleanup", 60, action, run_immediately=False)
        await manual_clock.advance(0)
        assert action.await_count == 0

        await manual_clock.advance(60)
        assert action.await_count == 1

        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_failing_action_keeps_schedule(self, manual_clock):
        """Test that an exception in one run does not kill the task."""
        scheduler = Scheduler(manual_clock)
        action = AsyncMock(side_effect=[RuntimeError("boom"), None])

        task = scheduler.every("sweep", 10, action)
        await manual_clock.advance(0)
        await manual_clock.advance(10)

        assert action.await_count == 2
        assert task.running

        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_sleep(self, manual_clock):
        """Test that stop() returns while the task is waiting for its next tick."""
        scheduler = Scheduler(manual_clock)
        task = scheduler.every("sweep", 300, AsyncMock())
        await manual_clock.advance(0)

        await task.stop()

        assert not task.running
        assert task.token.cancelled


@pytest.mark.unit
class TestDelayedTask:
    @pytest.mark.asyncio
    async def test_fires_once_after_delay(self, manual_clock):
        """Test the one-shot delay."""
        scheduler = Scheduler(manual_clock)
        action = AsyncMock()

        task = scheduler.after("reconnect", 5, action)
        await manual_clock.advance(0)
        await manual_clock.advance(4)
        assert not task.fired

        await manual_clock.advance(1)
        assert task.fired
        action.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cancelled_before_delay_never_fires(self, manual_clock):
        """Test cancelling a pending one-shot."""
        scheduler = Scheduler(manual_clock)
        action = AsyncMock()

        task = scheduler.after("reconnect", 5, action)
        await manual_clock.advance(0)
        await task.stop()
        await manual_clock.advance(10)

        action.assert_not_awaited()


@pytest.mark.unit
class TestScheduler:
    @pytest.mark.asyncio
    async def test_shutdown_stops_all_tasks(self, manual_clock):
        """Test that one shutdown call stops every timer."""
        scheduler = Scheduler(manual_clock)
        periodic = scheduler.every("a", 10, AsyncMock())
        delayed = scheduler.after("b", 10, AsyncMock())
        await manual_clock.advance(0)

        await scheduler.shutdown()

        assert not periodic.running
        assert not delayed.running

    def test_base_task_is_abstract(self, manual_clock):
        """Test that only concrete task kinds can be built."""
        with pytest.raises(TypeError):
            ScheduledTask("bare", AsyncMock(), manual_clock)

    @pytest.mark.asyncio
    async def test_cancellation_token(self):
        """Test the one-way stop signal."""
        token = CancellationToken()
        assert not token.cancelled

        token.cancel()
        await token.wait()

        assert token.cancelled
