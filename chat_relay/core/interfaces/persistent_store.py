from abc import ABC, abstractmethod
from typing import Any

from chat_relay.core.models import InboundMessageEvent, MessageRecord


class PersistentStore(ABC):
    """
    Durable, queryable record of delivered messages.

    `save` must be idempotent on the event id: the replay log delivers
    at-least-once, so the same event may be saved more than once after a
    reader crash. Saving a known event returns the existing record.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare the store (open files, connections)."""
        pass

    @abstractmethod
    async def save(self, event: InboundMessageEvent) -> MessageRecord:
        """
        Persist an inbound message.

        Args:
            event: Message to store.

        Returns:
            MessageRecord: The stored (or previously stored) record.
        """
        pass

    @abstractmethod
    async def get(self, record_id: str) -> MessageRecord | None:
        pass

    @abstractmethod
    async def get_by_session(self, session_id: str, limit: int = 500) -> list[MessageRecord]:
        pass

    @abstractmethod
    async def get_by_user(self, from_user: str, limit: int = 500) -> list[MessageRecord]:
        pass

    @abstractmethod
    async def get_by_type(self, message_type: str, limit: int = 500) -> list[MessageRecord]:
        pass

    @abstractmethod
    async def recent(self, hours: int = 24) -> list[MessageRecord]:
        """Messages saved within the last `hours`, newest first."""
        pass

    @abstractmethod
    async def search(self, query: str, limit: int = 50) -> list[MessageRecord]:
        pass

    @abstractmethod
    async def statistics(self) -> dict[str, Any]:
        """
        Aggregate counters.

        Returns:
            Dict with total_messages, messages_by_type, messages_by_session
            and processing_errors.
        """
        pass

    @abstractmethod
    async def mark_error(self, record_id: str, error: str) -> bool:
        """Flag a stored message as failed downstream."""
        pass

    @abstractmethod
    async def delete(self, record_id: str) -> bool:
        pass

    @abstractmethod
    async def clear_older_than(self, days: int) -> int:
        """
        Drop messages saved more than `days` ago.

        Returns:
            Number of messages removed.
        """
        pass
