from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from chat_relay.core.models import InboundMessageEvent

InboundCallback = Callable[[InboundMessageEvent], Awaitable[None]]


class SessionProvider(Protocol):
    """
    Connection to the external chat network.

    The relay never talks to the network directly; it resolves a tenant to an
    active session and asks the provider to send on its behalf.
    """

    async def list_active_sessions(self) -> list[str]:
        """Ids of sessions currently connected."""
        ...

    async def send(self, session_id: str, recipient: str, content: str) -> dict[str, Any]:
        """
        Send a message through a session.

        Returns:
            Provider response, at least {"id": <provider message id>}

        Raises:
            SessionUnavailableError: The session dropped between lookup and send
            SessionProviderError: Any other provider failure worth retrying
        """
        ...

    def on_inbound(self, callback: InboundCallback) -> None:
        """Register the callback invoked for every inbound message."""
        ...
