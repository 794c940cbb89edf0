"""In-process registry of live WebSocket connections.

Maps each user to the set of connection IDs they currently hold (a user
may be connected from several devices at once) plus the inverse map from
connection ID back to user.

Thread Safety:
    Every method takes ``self._lock``; handlers may run on different event
    loops (e.g. one per TestClient session) and the store runs in the
    thread pool, so the registry never relies on cooperative scheduling.
"""
import logging
import threading
from typing import Dict, Optional, Set

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """user_id <-> connection_id bookkeeping for live connections."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        # user_id -> set of connection IDs
        self._connections: Dict[str, Set[str]] = {}
        # connection_id -> user_id
        self._owners: Dict[str, str] = {}

    def register(self, user_id: str, connection_id: str) -> None:
        """Add *connection_id* to the user's set, creating it if absent."""
        with self._lock:
            previous = self._owners.get(connection_id)
            if previous is not None and previous != user_id:
                self._discard(previous, connection_id)
            self._connections.setdefault(user_id, set()).add(connection_id)
            self._owners[connection_id] = user_id

    def unregister(self, connection_id: str) -> Optional[str]:
        """Remove a connection; prunes the user entry when it was the last one.

        Unknown connection IDs are ignored, so teardown may run twice.

        Returns:
            The owning user ID, or None if the connection was not registered.
        """
        with self._lock:
            user_id = self._owners.pop(connection_id, None)
            if user_id is None:
                return None
            self._discard(user_id, connection_id)
            return user_id

    def _discard(self, user_id: str, connection_id: str) -> None:
        connections = self._connections.get(user_id)
        if connections is None:
            return
        connections.discard(connection_id)
        if not connections:
            del self._connections[user_id]
            logger.debug(f"[Registry] User {user_id} has no live connections")

    def lookup(self, user_id: str) -> Set[str]:
        """Snapshot of the user's live connection IDs (empty if offline)."""
        with self._lock:
            return set(self._connections.get(user_id, ()))

    def user_for(self, connection_id: str) -> Optional[str]:
        with self._lock:
            return self._owners.get(connection_id)

    def is_online(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._connections

    def user_count(self) -> int:
        with self._lock:
            return len(self._connections)

    def connection_count(self) -> int:
        with self._lock:
            return len(self._owners)
