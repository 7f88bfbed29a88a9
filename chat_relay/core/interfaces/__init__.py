from chat_relay.core.interfaces.persistent_store import PersistentStore
from chat_relay.core.interfaces.session_provider import InboundCallback, SessionProvider

__all__ = ["InboundCallback", "PersistentStore", "SessionProvider"]
