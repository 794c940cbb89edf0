"""WebSocket connection manager for real-time messaging.

This module owns the live-connection state of the process:
    - ConnectionRegistry: user_id <-> connection_id
    - BroadcastGroups: conversation and per-user fan-out groups
    - the ChatSession object of every admitted connection

Key features:
    - Multiple live connections per user
    - Concurrent fan-out with asyncio.gather()
    - Automatic dead connection cleanup on failed sends
    - Idempotent teardown

Thread Safety:
    Registry and groups take their own locks; the session map is guarded by
    ``self._lock``. Broadcasts work on snapshots, so a connection that leaves
    mid-broadcast is simply skipped or fails its send.

Lifecycle:
    One instance is created by the application lifespan and stored on
    ``app.state.manager``; there is no module-level singleton.
"""
import asyncio
import logging
import threading
from typing import Any, Dict, List, Optional

from .groups import BroadcastGroups, conversation_group, user_group
from .registry import ConnectionRegistry
from .session import ChatSession

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Tracks admitted sessions and fans events out to broadcast groups."""

    def __init__(
        self,
        registry: Optional[ConnectionRegistry] = None,
        groups: Optional[BroadcastGroups] = None,
    ) -> None:
        self.registry = registry or ConnectionRegistry()
        self.groups = groups or BroadcastGroups()
        self._lock = threading.RLock()
        # connection_id -> ChatSession
        self._sessions: Dict[str, ChatSession] = {}

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def connect(self, session: ChatSession) -> None:
        """Register an authenticated session and join its private group."""
        with self._lock:
            self._sessions[session.connection_id] = session
        self.registry.register(session.user_id, session.connection_id)
        self.groups.join(user_group(session.user_id), session)
        logger.info(
            f"[Manager] Connection {session.connection_id} admitted for user {session.user_id} "
            f"({len(self.registry.lookup(session.user_id))} live)"
        )

    def disconnect(self, session: ChatSession) -> bool:
        """Remove a session from groups and the registry.

        Safe to call more than once for the same session.

        Returns:
            True if the session was still registered.
        """
        with self._lock:
            removed = self._sessions.pop(session.connection_id, None) is not None
        self.groups.leave_all(session)
        user_id = self.registry.unregister(session.connection_id)
        if removed or user_id is not None:
            logger.info(
                f"[Manager] Connection {session.connection_id} of user {session.user_id} removed; "
                f"online={self.registry.is_online(session.user_id)}"
            )
        return removed

    def get_session(self, connection_id: str) -> Optional[ChatSession]:
        with self._lock:
            return self._sessions.get(connection_id)

    def sessions_for_user(self, user_id: str) -> List[ChatSession]:
        """Live sessions of a user."""
        with self._lock:
            return [
                self._sessions[cid]
                for cid in self.registry.lookup(user_id)
                if cid in self._sessions
            ]

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def subscribe(self, session: ChatSession, conversation_id: str) -> bool:
        return self.groups.join(conversation_group(conversation_id), session)

    def unsubscribe(self, session: ChatSession, conversation_id: str) -> bool:
        return self.groups.leave(conversation_group(conversation_id), session)

    def subscribe_user(self, user_id: str, conversation_id: str) -> int:
        """Subscribe every live connection of *user_id* to a conversation.

        Returns:
            Number of connections newly subscribed.
        """
        added = 0
        for session in self.sessions_for_user(user_id):
            if self.subscribe(session, conversation_id):
                added += 1
        if added:
            logger.info(f"[Manager] Subscribed {added} connection(s) of {user_id} to {conversation_id}")
        return added

    # =========================================================================
    # Fan-out
    # =========================================================================

    async def broadcast(
        self,
        group: str,
        event: str,
        data: Dict[str, Any],
        exclude: Optional[str] = None,
    ) -> int:
        """Send an event to every connection of a group concurrently.

        Connections whose send fails are dropped from the manager.

        Args:
            group: Group name (see ``conversation_group`` / ``user_group``).
            event: Outbound event name.
            data: JSON-serializable payload.
            exclude: Optional connection ID that must not receive the event.

        Returns:
            Number of connections the event was delivered to.
        """
        with self._lock:
            sessions = [
                self._sessions[cid]
                for cid in self.groups.members(group)
                if cid != exclude and cid in self._sessions
            ]
        if not sessions:
            return 0

        message = {"event": event, "data": data}
        results = await asyncio.gather(
            *[self._safe_send(session, message) for session in sessions],
            return_exceptions=True
        )

        failed = [
            session for session, success in zip(sessions, results)
            if success is not True
        ]
        self._cleanup_connections(failed)
        return len(sessions) - len(failed)

    async def send_to_user(self, user_id: str, event: str, data: Dict[str, Any]) -> int:
        """Send an event to the private group of one user."""
        return await self.broadcast(user_group(user_id), event, data)

    async def _safe_send(self, session: ChatSession, message: dict) -> bool:
        """Send a frame to one session.

        Returns:
            True if successful, False if the connection failed.
        """
        try:
            await session.websocket.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"[Manager] Failed to send to {session.connection_id}: {e}")
            return False

    def _cleanup_connections(self, failed: List[ChatSession]) -> None:
        for session in failed:
            if self.disconnect(session):
                logger.debug(f"[Manager] Removed dead connection {session.connection_id}")

    # =========================================================================
    # Introspection
    # =========================================================================

    def connection_count(self) -> int:
        with self._lock:
            return len(self._sessions)
