"""Named broadcast groups.

A group is a set of connection IDs that receive the same fan-out event.
Two kinds exist:
    - ``conversation:<id>``: every subscribed connection of a conversation
    - ``user:<id>``: every connection of one user (private notifications)

The groups a connection belongs to are mirrored on its ChatSession so the
session can be torn down without scanning every group.
"""
import threading
from typing import Dict, Set

from .session import ChatSession

CONVERSATION_PREFIX = "conversation:"
USER_PREFIX = "user:"


def conversation_group(conversation_id: str) -> str:
    return f"{CONVERSATION_PREFIX}{conversation_id}"


def user_group(user_id: str) -> str:
    return f"{USER_PREFIX}{user_id}"


class BroadcastGroups:
    """group name -> connection IDs, guarded by a lock."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._members: Dict[str, Set[str]] = {}

    def join(self, group: str, session: ChatSession) -> bool:
        """Subscribe a session to a group.

        Returns:
            True if the session was not a member before.
        """
        with self._lock:
            members = self._members.setdefault(group, set())
            added = session.connection_id not in members
            members.add(session.connection_id)
            session.groups.add(group)
            return added

    def leave(self, group: str, session: ChatSession) -> bool:
        """Unsubscribe a session; leaving a group one never joined is a no-op."""
        with self._lock:
            session.groups.discard(group)
            members = self._members.get(group)
            if not members or session.connection_id not in members:
                return False
            members.discard(session.connection_id)
            if not members:
                del self._members[group]
            return True

    def leave_all(self, session: ChatSession) -> None:
        with self._lock:
            for group in list(session.groups):
                self.leave(group, session)

    def members(self, group: str) -> Set[str]:
        """Snapshot of the connection IDs subscribed to *group*."""
        with self._lock:
            return set(self._members.get(group, ()))

    def group_count(self) -> int:
        with self._lock:
            return len(self._members)
