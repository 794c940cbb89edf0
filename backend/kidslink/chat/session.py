"""Per-connection session state passed explicitly to every event handler."""
import uuid
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket

from kidslink.auth import Identity


class ChatSession:
    """One admitted WebSocket connection.

    Attributes:
        connection_id: Server-assigned handle for this connection.
        websocket: The underlying transport.
        identity: Claims decoded from the handshake token.
        groups: Broadcast groups this connection is subscribed to.
    """

    def __init__(
        self,
        websocket: WebSocket,
        identity: Identity,
        connection_id: Optional[str] = None,
    ) -> None:
        self.connection_id = connection_id or str(uuid.uuid4())
        self.websocket = websocket
        self.identity = identity
        self.groups: Set[str] = set()

    @property
    def user_id(self) -> str:
        return self.identity.id

    async def send(self, event: str, data: Dict[str, Any]) -> None:
        """Send one ``{"event", "data"}`` frame to this connection."""
        await self.websocket.send_json({"event": event, "data": data})

    def __repr__(self) -> str:
        return f"ChatSession(connection_id={self.connection_id!r}, user_id={self.user_id!r})"
