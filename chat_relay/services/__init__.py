"""
Services Module

Business handlers wired into the relay's consumers and providers.
"""

from .inbound_pump import InboundEventPump
from .send_command_handler import SESSION_SEND_BREAKER, SendCommandHandler, session_matches

__all__ = ["InboundEventPump", "SESSION_SEND_BREAKER", "SendCommandHandler", "session_matches"]
