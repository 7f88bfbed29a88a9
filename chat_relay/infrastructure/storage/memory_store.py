"""
In-Memory Persistent Store

Dict-backed PersistentStore used by the relay when no durable store is
configured, and by tests.

Record ids are derived from the message itself (session, message id and
timestamp), and every event id seen is indexed, so saving the same event
again (stream replay, republished delivery) returns the existing record.
"""

from datetime import UTC, datetime, timedelta
from typing import Any

from chat_relay.core.interfaces.persistent_store import PersistentStore
from chat_relay.core.logging import get_logger
from chat_relay.core.models import InboundMessageEvent, MessageRecord
from chat_relay.core.resilience.scheduler import Clock, SystemClock

logger = get_logger(__name__)


def record_id_for(event: InboundMessageEvent) -> str:
    timestamp_ms = int(event.timestamp.timestamp() * 1000)
    return f"{event.session_id}_{event.message_id}_{timestamp_ms}"


class InMemoryPersistentStore(PersistentStore):
    """
    Usage:
        store = InMemoryPersistentStore()
        record = await store.save(event)
        latest = await store.get_by_session("tenant-a", limit=10)
    """

    def __init__(self, clock: Clock | None = None):
        self._clock = clock or SystemClock()
        self._records: dict[str, MessageRecord] = {}
        self._by_event_id: dict[str, str] = {}
        self._initialized = False

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock.time(), UTC)

    async def initialize(self) -> None:
        if not self._initialized:
            self._initialized = True
            logger.info("In-memory store ready", stage="STORE.INIT")

    async def save(self, event: InboundMessageEvent) -> MessageRecord:
        """
        STAGE-STORE.1: Save message
        """
        record_id = record_id_for(event)
        existing_id = self._by_event_id.get(event.event_id) if event.event_id else None
        existing = self._records.get(existing_id or record_id)
        if existing is not None:
            logger.info(
                "Message already stored",
                stage="STORE.1",
                record_id=existing.record_id,
                event_id=event.event_id,
            )
            return existing

        record = MessageRecord(
            **event.model_dump(),
            record_id=record_id,
            saved_at=self._now(),
        )
        self._records[record_id] = record
        if event.event_id:
            self._by_event_id[event.event_id] = record_id

        logger.info(
            "Message stored",
            stage="STORE.1",
            record_id=record_id,
            session_id=record.session_id,
            message_type=record.message_type,
        )
        return record

    async def get(self, record_id: str) -> MessageRecord | None:
        return self._records.get(record_id)

    def _newest_first(self, records) -> list[MessageRecord]:
        return sorted(records, key=lambda r: r.timestamp, reverse=True)

    async def get_by_session(self, session_id: str, limit: int = 500) -> list[MessageRecord]:
        matches = (r for r in self._records.values() if r.session_id == session_id)
        return self._newest_first(matches)[:limit]

    async def get_latest(self, session_id: str) -> MessageRecord | None:
        latest = await self.get_by_session(session_id, limit=1)
        return latest[0] if latest else None

    async def get_by_user(self, from_user: str, limit: int = 500) -> list[MessageRecord]:
        matches = (r for r in self._records.values() if r.from_user == from_user)
        return self._newest_first(matches)[:limit]

    async def get_by_type(self, message_type: str, limit: int = 500) -> list[MessageRecord]:
        matches = (r for r in self._records.values() if r.message_type == message_type)
        return self._newest_first(matches)[:limit]

    async def recent(self, hours: int = 24) -> list[MessageRecord]:
        cutoff = self._now() - timedelta(hours=hours)
        return self._newest_first(r for r in self._records.values() if r.timestamp > cutoff)

    async def search(self, query: str, limit: int = 50) -> list[MessageRecord]:
        """Case-insensitive substring match over content, sender, session and type."""
        needle = query.lower()

        def matches(record: MessageRecord) -> bool:
            haystack = (record.content or "", record.from_user, record.session_id, record.message_type)
            return any(needle in field.lower() for field in haystack)

        return self._newest_first(r for r in self._records.values() if matches(r))[:limit]

    async def statistics(self) -> dict[str, Any]:
        now = self._now()
        last_24h = now - timedelta(hours=24)
        last_7d = now - timedelta(days=7)

        stats: dict[str, Any] = {
            "total_messages": len(self._records),
            "messages_by_type": {},
            "messages_by_session": {},
            "messages_last_24h": 0,
            "messages_last_7d": 0,
            "processing_errors": 0,
        }
        for record in self._records.values():
            by_type = stats["messages_by_type"]
            by_type[record.message_type] = by_type.get(record.message_type, 0) + 1
            by_session = stats["messages_by_session"]
            by_session[record.session_id] = by_session.get(record.session_id, 0) + 1
            if record.timestamp > last_24h:
                stats["messages_last_24h"] += 1
            if record.timestamp > last_7d:
                stats["messages_last_7d"] += 1
            if record.error:
                stats["processing_errors"] += 1
        return stats

    async def mark_error(self, record_id: str, error: str) -> bool:
        record = self._records.get(record_id)
        if record is None:
            return False
        self._records[record_id] = record.model_copy(update={"processed": False, "error": error})
        logger.error("Message marked as failed", stage="STORE.ERR", record_id=record_id, error=error)
        return True

    async def delete(self, record_id: str) -> bool:
        record = self._records.pop(record_id, None)
        if record is None:
            return False
        if record.event_id:
            self._by_event_id.pop(record.event_id, None)
        logger.info("Message deleted", stage="STORE.DEL", record_id=record_id)
        return True

    async def clear_older_than(self, days: int = 30) -> int:
        cutoff = self._now() - timedelta(days=days)
        expired = [rid for rid, record in self._records.items() if record.timestamp < cutoff]
        for record_id in expired:
            await self.delete(record_id)
        if expired:
            logger.info("Old messages cleared", stage="STORE.CLEAN", removed=len(expired), days=days)
        return len(expired)
