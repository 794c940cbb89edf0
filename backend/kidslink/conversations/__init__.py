"""Conversations, participants and messages.

Services:
    - MessagingStore: DuckDB persistence shared by REST and WebSocket layers.
    - router: the /api/messaging REST endpoints.
"""
from .service import MessagingStore

__all__ = ["MessagingStore"]
