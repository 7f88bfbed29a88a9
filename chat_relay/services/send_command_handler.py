"""
Send Command Handler
====================

Business handler the ReliableConsumer runs for every delivery on the
send-commands queue. It turns a queued SendCommand into one provider send.

Every command goes through these stages:

┌─────────────────────────────────────────────────────────────────┐
│ STAGE 1: VALIDATION                                             │
│ - Decode the SendCommand from the envelope content              │
│ - Missing recipient or text → ValidationError (terminal)        │
└─────────────────────────────────────────────────────────────────┘
                            ↓
┌─────────────────────────────────────────────────────────────────┐
│ STAGE 2: ROUTING                                                │
│ - Resolve the tenant (instanceId) to exactly one active session │
│ - None or several → RoutingError (terminal)                     │
└─────────────────────────────────────────────────────────────────┘
                            ↓
┌─────────────────────────────────────────────────────────────────┐
│ STAGE 3: ADMISSION                                              │
│ - Rate limit + duplicate check per (session, recipient)         │
└─────────────────────────────────────────────────────────────────┘
                            ↓
┌─────────────────────────────────────────────────────────────────┐
│ STAGE 4: SEND                                                   │
│ - provider.send through the "session-send" circuit breaker      │
│ - On failure the admission is released so a retry is allowed   │
└─────────────────────────────────────────────────────────────────┘

The handler never acks or nacks: it returns on success and raises on failure,
and the consumer's error handler decides between retry and dead-letter.
"""

from typing import Any

from aio_pika.abc import AbstractIncomingMessage
from pydantic import ValidationError as PydanticValidationError

from chat_relay.core.exceptions import RoutingError, ValidationError
from chat_relay.core.interfaces.session_provider import SessionProvider
from chat_relay.core.logging import get_logger
from chat_relay.core.models import QueueMessage, SendCommand
from chat_relay.core.resilience.circuit_breaker import CircuitBreakerRegistry
from chat_relay.core.resilience.rate_limiter import RateLimiterDedup, recipient_key

logger = get_logger(__name__)

SESSION_SEND_BREAKER = "session-send"


def session_matches(session_id: str, tenant_id: str) -> bool:
    """A session belongs to a tenant when it is named after it ("t" or "t:<suffix>")."""
    return session_id == tenant_id or session_id.startswith(f"{tenant_id}:")


class SendCommandHandler:
    """
    Usage:
        handler = SendCommandHandler(provider, breakers, limiter)
        consumer = ReliableConsumer(producer, {"relay.send.commands": handler})
    """

    def __init__(
        self,
        session_provider: SessionProvider,
        breakers: CircuitBreakerRegistry,
        rate_limiter: RateLimiterDedup,
        breaker_name: str = SESSION_SEND_BREAKER,
    ):
        self._provider = session_provider
        self._breakers = breakers
        self._limiter = rate_limiter
        self._breaker_name = breaker_name
        self.sent = 0

    async def __call__(
        self, envelope: QueueMessage, message: AbstractIncomingMessage | None = None
    ) -> dict[str, Any]:
        command = self.parse(envelope)
        session_id = await self.resolve_session(command.instance_id)
        return await self.send(session_id, command)

    # ===== STAGE 1: VALIDATION =====

    @staticmethod
    def parse(envelope: QueueMessage) -> SendCommand:
        """
        Raises:
            ValidationError: Content is not a SendCommand, or has no recipient or text
        """
        content = envelope.content
        if not isinstance(content, dict):
            raise ValidationError(
                "Send command content must be an object", details={"message_id": envelope.id}
            )
        try:
            command = SendCommand.model_validate(content)
        except PydanticValidationError as e:
            fields = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
            raise ValidationError(
                f"Invalid send command: {', '.join(fields)}",
                details={"message_id": envelope.id, "fields": fields},
            ) from e

        if not command.payload.to.strip():
            raise ValidationError("Send command has no recipient", details={"message_id": envelope.id})
        if not command.payload.message:
            raise ValidationError("Send command has no text", details={"message_id": envelope.id})
        return command

    # ===== STAGE 2: ROUTING =====

    async def resolve_session(self, tenant_id: str) -> str:
        """
        Raises:
            RoutingError: Zero or more than one active session for the tenant
        """
        active = await self._provider.list_active_sessions()
        matches = [sid for sid in active if session_matches(sid, tenant_id)]
        if len(matches) != 1:
            reason = "no active session" if not matches else "ambiguous destination"
            logger.warning(
                "Send command not routable",
                stage="SEND.2",
                tenant_id=tenant_id,
                reason=reason,
                candidates=matches,
            )
            raise RoutingError(
                f"{reason} for tenant {tenant_id}",
                details={"tenant_id": tenant_id, "candidates": matches},
            )
        return matches[0]

    # ===== STAGES 3-4: ADMISSION + SEND =====

    async def send(self, session_id: str, command: SendCommand) -> dict[str, Any]:
        """
        Raises:
            DuplicateMessageError / RateLimitExceededError: Rejected by admission control
            CircuitBreakerOpenError: Provider breaker is open
        """
        payload = command.payload
        key = recipient_key(session_id, payload.to)
        self._limiter.check(key, payload.message)

        breaker = self._breakers.get(self._breaker_name)
        try:
            result = await breaker.execute(self._provider.send, session_id, payload.to, payload.message)
        except Exception:
            self._limiter.release(key, payload.message)
            raise

        self.sent += 1
        logger.info(
            "Message sent",
            stage="SEND.4",
            session_id=session_id,
            event_id=command.event_id,
            provider_message_id=(result or {}).get("id"),
            message_type=payload.type,
        )
        return result
