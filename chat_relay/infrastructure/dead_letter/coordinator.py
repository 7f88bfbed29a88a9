"""
Dead-Letter Retry Coordinator

Periodic sweep over the dead-letter store.

Architecture:
    RetryCoordinator (Public API)
        ├── RecoveryPolicy (which error categories may be retried)
        ├── SweepStats (per-sweep counters)
        └── sweep loop (Scheduler.every, never overlapping itself)

Per-record Decision:
    terminal (retry_count >= max) or not recoverable  → archive + delete (discarded)
    last failure more recent than min_retry_delay     → skip (processed only)
    otherwise                                         → store.retry(id)

Author: Senior Solution Architect
Date: 2025-12-05
"""

from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any

from redis.exceptions import RedisError

from chat_relay.config.settings import DeadLetterSettings
from chat_relay.core.logging import get_logger
from chat_relay.core.models import DeadLetterRecord
from chat_relay.core.resilience.error_classifier import CATEGORY_POLICIES
from chat_relay.core.resilience.scheduler import PeriodicTask, Scheduler
from chat_relay.infrastructure.dead_letter.store import DeadLetterStore

logger = get_logger(__name__)


# =============================================================================
# LAYER 1: RECOVERY POLICY
# =============================================================================


class RecoveryPolicy:
    """
    Error categories a retry can fix.

    The deny-list is every category the classifier marks non-retryable and is
    checked first; anything on neither list is treated as recoverable.
    """

    NON_RECOVERABLE = tuple(
        category.value for category, policy in CATEGORY_POLICIES.items() if not policy.retryable
    )
    RECOVERABLE = (
        "CONNECTION_RESET",
        "TIMEOUT",
        "NETWORK_ERROR",
        "TEMPORARY_FAILURE",
        "RATE_LIMIT",
        "SERVICE_UNAVAILABLE",
    )

    def is_recoverable(self, error: str) -> bool:
        if any(marker in error for marker in self.NON_RECOVERABLE):
            return False
        # Allow-listed, or on neither list
        return True

    def is_known_transient(self, error: str) -> bool:
        return any(marker in error for marker in self.RECOVERABLE)


@dataclass
class SweepStats:
    processed: int = 0
    retried: int = 0
    failed: int = 0
    discarded: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


# =============================================================================
# LAYER 2: PUBLIC API
# =============================================================================


class RetryCoordinator:
    """
    Usage:
        coordinator = RetryCoordinator(store, scheduler, settings.dead_letter)
        coordinator.start()            # sweeps now, then every 5 minutes
        stats = await coordinator.process_failed_messages()
        await coordinator.stop()
    """

    def __init__(
        self,
        store: DeadLetterStore,
        scheduler: Scheduler,
        settings: DeadLetterSettings | None = None,
        metrics=None,
        queue_manager=None,
        policy: RecoveryPolicy | None = None,
        dead_letter_queue: str = "relay.dead.letter",
    ):
        self._store = store
        self._scheduler = scheduler
        self._clock = scheduler.clock
        self._settings = settings or DeadLetterSettings()
        self._metrics = metrics
        self._queue_manager = queue_manager
        self._policy = policy or RecoveryPolicy()
        self._dead_letter_queue = dead_letter_queue
        self._task: PeriodicTask | None = None
        self._in_progress = False
        self.last_sweep: SweepStats | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and self._task.running

    def start(self, interval_seconds: float | None = None) -> None:
        """
        STAGE-DLQ.SWEEP.0: Start periodic sweep
        """
        if self.running:
            return
        interval = interval_seconds or self._settings.DLQ_SWEEP_INTERVAL_SECONDS
        self._task = self._scheduler.every("dlq-sweep", interval, self._sweep, run_immediately=True)
        logger.info("Dead-letter sweep started", stage="DLQ.SWEEP.0", interval_seconds=interval)

    async def stop(self) -> None:
        if self._task is not None:
            await self._task.stop()
            self._task = None
        logger.info("Dead-letter sweep stopped", stage="DLQ.SWEEP.0")

    async def _sweep(self) -> None:
        await self.process_failed_messages()

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def is_recoverable(self, error: str) -> bool:
        return self._policy.is_recoverable(error)

    def should_retry(self, record: DeadLetterRecord) -> bool:
        if record.is_terminal:
            return False
        elapsed = self._clock.time() - record.last_error_timestamp.timestamp()
        if elapsed < self._settings.DLQ_MIN_RETRY_DELAY_SECONDS:
            return False
        return self.is_recoverable(record.error)

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def process_failed_messages(self) -> SweepStats:
        """
        One pass over up to DLQ_SWEEP_BATCH_SIZE records.

        STAGE-DLQ.SWEEP.1: Sweep
        """
        stats = SweepStats()
        if self._in_progress:
            logger.info("Sweep already in progress, skipping", stage="DLQ.SWEEP.1")
            return stats

        self._in_progress = True
        try:
            records = await self._store.list(limit=self._settings.DLQ_SWEEP_BATCH_SIZE)
            for record in records:
                stats.processed += 1
                await self._process_record(record, stats)
                await self._clock.sleep(self._settings.DLQ_SWEEP_PAUSE_MS / 1000.0)
        except RedisError as e:
            logger.error("Sweep aborted", stage="DLQ.SWEEP.ERR", error=str(e))
        finally:
            self._in_progress = False

        self.last_sweep = stats
        if self._metrics:
            self._metrics.record_dlq_sweep(stats.retried, stats.failed, stats.discarded, stats.processed)
        logger.info("Sweep finished", stage="DLQ.SWEEP.1", **stats.to_dict())
        return stats

    async def _process_record(self, record: DeadLetterRecord, stats: SweepStats) -> None:
        if record.is_terminal or not self.is_recoverable(record.error):
            reason = "max_retries_exceeded" if record.is_terminal else "non_recoverable"
            await self._store.archive(record, reason)
            stats.discarded += 1
            return

        if not self.should_retry(record):
            # Cool-down not elapsed yet
            return

        if await self._store.retry(record.id):
            stats.retried += 1
        else:
            stats.failed += 1

    async def retry_all(self, limit: int = 1000) -> SweepStats:
        """
        Retry every non-terminal record now, ignoring the cool-down.

        STAGE-DLQ.SWEEP.2: Manual retry
        """
        stats = SweepStats()
        for record in await self._store.list(limit=limit):
            stats.processed += 1
            if record.is_terminal:
                continue
            if await self._store.retry(record.id):
                stats.retried += 1
            else:
                stats.failed += 1
        logger.info("Manual retry finished", stage="DLQ.SWEEP.2", **stats.to_dict())
        return stats

    async def clear(self) -> int:
        """
        Archive and delete every parked record, then purge the broker DLQ.

        Returns:
            Number of records cleared from the store
        """
        cleared = 0
        for record in await self._store.list(limit=None):
            await self._store.archive(record, "cleared")
            cleared += 1

        purged = 0
        if self._queue_manager is not None:
            purged = await self._queue_manager.purge_queue(self._dead_letter_queue)

        logger.warning("Dead-letter store cleared", stage="DLQ.CLEAR", cleared=cleared, purged=purged)
        return cleared

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def get_detailed_stats(self) -> dict[str, Any]:
        records = await self._store.list(limit=None)

        by_tenant: dict[str, int] = {}
        by_error_type: dict[str, int] = {}
        timeline: dict[str, int] = {}
        for record in records:
            tenant = record.tenant_id or "unknown"
            by_tenant[tenant] = by_tenant.get(tenant, 0) + 1
            by_error_type[record.error_type] = by_error_type.get(record.error_type, 0) + 1
            day = record.timestamp.astimezone(UTC).strftime("%Y-%m-%d")
            timeline[day] = timeline.get(day, 0) + 1

        return {
            "total": len(records),
            "retryable": sum(1 for r in records if not r.is_terminal and self.is_recoverable(r.error)),
            "known_transient": sum(1 for r in records if self._policy.is_known_transient(r.error)),
            "by_tenant": by_tenant,
            "by_error_type": by_error_type,
            "timeline": dict(sorted(timeline.items())),
            "sweep_running": self.running,
            "last_sweep": self.last_sweep.to_dict() if self.last_sweep else None,
            "generated_at": datetime.fromtimestamp(self._clock.time(), UTC).isoformat(),
        }
