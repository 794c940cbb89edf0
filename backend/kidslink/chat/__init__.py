"""Real-time messaging over WebSocket.

Components:
    - ConnectionRegistry: user -> live connections
    - BroadcastGroups: conversation and per-user fan-out groups
    - ConnectionManager: admitted sessions and concurrent fan-out
    - ChatService: message ingest, read receipts, typing, join/leave
    - router: the /ws/chat endpoint
"""
from .groups import BroadcastGroups, conversation_group, user_group
from .manager import ConnectionManager
from .registry import ConnectionRegistry
from .service import ChatService
from .session import ChatSession

__all__ = [
    "BroadcastGroups",
    "ChatService",
    "ChatSession",
    "ConnectionManager",
    "ConnectionRegistry",
    "conversation_group",
    "user_group",
]
