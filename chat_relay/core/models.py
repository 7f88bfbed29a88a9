"""
Relay Data Model

Pydantic models for everything that crosses a process boundary: domain events,
queue envelopes, dead-letter records and stored messages.

Wire format is camelCase JSON (the broker envelope is shared with non-Python
services); Python code uses snake_case attributes. Serialization goes through
orjson like the rest of the code base.
"""

import random
import string
import time
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import orjson
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

_BASE36 = string.digits + string.ascii_lowercase


def generate_event_id(prefix: str = "") -> str:
    """
    Generate a time-ordered event id: "{epoch_ms}-{9 base36 chars}".

    Ids sort by creation time, which keeps dead-letter listings and logs readable.
    """
    suffix = "".join(random.choices(_BASE36, k=9))
    return f"{prefix}{int(time.time() * 1000)}-{suffix}"


def utc_now() -> datetime:
    return datetime.now(UTC)


class WireModel(BaseModel):
    """Base for models serialized onto the broker or into Redis."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_bytes(self) -> bytes:
        return orjson.dumps(self.to_json_dict())

    @classmethod
    def from_bytes(cls, raw: bytes | str):
        return cls.model_validate(orjson.loads(raw))


class EventKind(str, Enum):
    MESSAGE_RECEIVED = "message-received"
    SEND_COMMAND = "send-command"


class MessagePriority(str, Enum):
    """
    Outbound message priority.

    Maps onto AMQP message priority (see `broker_priority`).
    """
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def broker_priority(self) -> int:
        return {"high": 3, "medium": 2, "low": 1}[self.value]


class DomainEvent(WireModel):
    """
    An event entering the relay (inbound chat message or outbound send command).

    Immutable once published.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(default_factory=generate_event_id)
    kind: EventKind
    payload: dict[str, Any]
    routing_key: str
    origin_timestamp: datetime = Field(default_factory=utc_now)
    tenant_id: str


class MessageMetadata(WireModel):
    sender: str = "system"
    priority: MessagePriority = MessagePriority.MEDIUM
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    original_queue: str | None = None


class QueueMessage(WireModel):
    """
    Envelope for everything placed on an application queue.

    The only mutation ever applied is `with_retry()` on republish.
    """

    id: str = Field(default_factory=generate_event_id)
    content: Any = None
    timestamp: str = Field(default_factory=lambda: utc_now().isoformat())
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)

    @classmethod
    def from_event(
        cls,
        event: DomainEvent,
        sender: str = "system",
        priority: MessagePriority = MessagePriority.MEDIUM,
        max_retries: int = 3,
        original_queue: str | None = None,
    ) -> "QueueMessage":
        return cls(
            id=event.id,
            content=event.to_json_dict(),
            metadata=MessageMetadata(
                sender=sender,
                priority=priority,
                max_retries=max_retries,
                original_queue=original_queue,
            ),
        )

    @property
    def retries_exhausted(self) -> bool:
        return self.metadata.retry_count >= self.metadata.max_retries

    def with_retry(self) -> "QueueMessage":
        """Return a copy with retry_count incremented by one."""
        metadata = self.metadata.model_copy(update={"retry_count": self.metadata.retry_count + 1})
        return self.model_copy(update={"metadata": metadata})


class SendPayload(WireModel):
    to: str
    message: str
    type: str = "text"


class SendCommand(WireModel):
    """Outbound send request for a tenant's active session."""

    command: str = "send_message"
    instance_id: str
    payload: SendPayload
    timestamp: datetime = Field(default_factory=utc_now)
    event_id: str = Field(default_factory=generate_event_id)
    metadata: dict[str, Any] = Field(default_factory=dict)


class InboundMessageEvent(WireModel):
    """A chat message received by a session, as published on `message.received`."""

    session_id: str
    message_id: str
    from_user: str
    to_user: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)
    message_type: str = "text"
    content: str | None = None
    media_info: dict[str, Any] | None = None
    original_message: dict[str, Any] | None = None
    event_timestamp: str | None = None
    event_id: str | None = None


class MessageRecord(InboundMessageEvent):
    """A stored message (PersistentStore row)."""

    record_id: str
    saved_at: datetime = Field(default_factory=utc_now)
    processed: bool = True
    error: str | None = None


class DeadLetterRecord(WireModel):
    """
    A terminally-failed delivery parked for inspection and retry.

    Invariant: retry_count <= max_retries. A record with retry_count ==
    max_retries is terminal; only the reprocessing sweep may archive it.
    """

    id: str = Field(default_factory=lambda: generate_event_id("dlq-"))
    original_routing_key: str
    original_exchange: str = ""
    original_queue: str | None = None
    payload: Any
    error: str
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    timestamp: datetime = Field(default_factory=utc_now)
    last_error_timestamp: datetime = Field(default_factory=utc_now)
    tenant_id: str | None = None

    @model_validator(mode="after")
    def check_retry_bound(self):
        if self.retry_count > self.max_retries:
            raise ValueError(
                f"retry_count ({self.retry_count}) exceeds max_retries ({self.max_retries})"
            )
        return self

    @property
    def is_terminal(self) -> bool:
        return self.retry_count >= self.max_retries

    @property
    def error_type(self) -> str:
        """Category prefix of `error` ("CONNECTION_RESET: ..." → "CONNECTION_RESET")."""
        return self.error.split(":", 1)[0].strip() or "UNKNOWN"


class QueueStatus(WireModel):
    name: str
    message_count: int = 0
    consumer_count: int = 0
    exists: bool = False
    last_activity: datetime | None = None
