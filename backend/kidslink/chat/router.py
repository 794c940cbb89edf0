"""WebSocket endpoint for real-time messaging.

Protocol:
    Every frame in both directions is a JSON object
    ``{"event": <name>, "data": {...}}``.

Protocol Flow:
    1. Client connects to /ws/chat with ``Authorization: Bearer <token>`` or
       ``?token=<token>``
       → invalid or missing token: connection closed with code 1008
       → Server sends: {event: "connected", data: {user_id, conversation_ids}}
    2. Client sends: {event: "send_message", data: {conversation_id, content?, image_base64?, tempId}}
       → Conversation group receives: new_message
       → Other participants receive: new_message_notification
       → Sender receives: message_sent
    3. Client sends: {event: "mark_as_read", data: {conversation_id}}
       → Conversation group receives: messages_read; sender receives: marked_as_read
    4. Client sends: {event: "typing", data: {conversation_id, is_typing?}}
       → Other connections in the conversation receive: user_typing
    5. Client sends: {event: "join_conversation" | "leave_conversation", data: {conversation_id}}
       → Sender receives: joined_conversation | left_conversation
    6. Any failure → sender receives: {event: "error", data: {message, details?, tempId?}}
"""
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from kidslink.auth import extract_bearer_token
from kidslink.errors import AuthenticationError, MessagingError

from .service import ChatService
from .session import ChatSession

logger = logging.getLogger(__name__)

router = APIRouter()

# WebSocket close code for a rejected handshake (policy violation)
POLICY_VIOLATION = 1008


def _conversation_id(data: Dict[str, Any]) -> Optional[str]:
    value = data.get("conversation_id")
    if value is None or value == "":
        return None
    return str(value)


async def _on_send_message(service: ChatService, session: ChatSession, data: Dict[str, Any]) -> None:
    content = data.get("content")
    await service.send_message(
        session.identity,
        _conversation_id(data),
        content=content if isinstance(content, str) else None,
        image_base64=data.get("image_base64") or None,
        temp_id=data.get("tempId"),
        session=session,
    )


async def _on_mark_as_read(service: ChatService, session: ChatSession, data: Dict[str, Any]) -> None:
    await service.mark_as_read(session.identity, _conversation_id(data), session=session)


async def _on_typing(service: ChatService, session: ChatSession, data: Dict[str, Any]) -> None:
    # Only an explicit false stops the indicator
    await service.typing(session, _conversation_id(data), data.get("is_typing") is not False)


async def _on_join(service: ChatService, session: ChatSession, data: Dict[str, Any]) -> None:
    await service.join_conversation(session, _conversation_id(data))


async def _on_leave(service: ChatService, session: ChatSession, data: Dict[str, Any]) -> None:
    await service.leave_conversation(session, _conversation_id(data))


EventHandler = Callable[[ChatService, ChatSession, Dict[str, Any]], Awaitable[None]]

EVENT_HANDLERS: Dict[str, EventHandler] = {
    "send_message": _on_send_message,
    "mark_as_read": _on_mark_as_read,
    "typing": _on_typing,
    "join_conversation": _on_join,
    "leave_conversation": _on_leave,
}


async def dispatch(service: ChatService, session: ChatSession, frame: Any) -> None:
    """Route one inbound frame to its handler.

    Errors are reported to the originating connection only and never end
    the receive loop.
    """
    if not isinstance(frame, dict) or not isinstance(frame.get("data") or {}, dict):
        await session.send("error", {"message": "Invalid frame"})
        return

    event = frame.get("event")
    data = frame.get("data") or {}
    handler = EVENT_HANDLERS.get(event)
    if handler is None:
        await session.send("error", {"message": f"Unknown event: {event}"})
        return

    logger.debug("[WS] %s received: event=%s", session.connection_id, event)
    try:
        await handler(service, session, data)
    except MessagingError as e:
        logger.info(f"[WS] {event} from {session.user_id} failed: {e.message}")
        await session.send("error", e.to_payload())
    except WebSocketDisconnect:
        raise
    except Exception as e:
        logger.exception(f"[WS] Unexpected error handling {event} from {session.user_id}")
        payload = {"message": "Internal server error", "details": str(e)}
        if data.get("tempId") is not None:
            payload["tempId"] = data["tempId"]
        await session.send("error", payload)


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for real-time messaging.

    The bearer token is verified before the handshake completes; a rejected
    connection is closed with code 1008 and the error message as reason.
    """
    state = websocket.app.state
    token = extract_bearer_token(
        websocket.headers, websocket.query_params, state.config.auth.token_query_param
    )
    try:
        identity = state.token_service.decode(token)
    except AuthenticationError as e:
        logger.warning(f"[WS] Handshake rejected: {e.message}")
        await websocket.close(code=POLICY_VIOLATION, reason=e.message)
        return

    await websocket.accept()
    service: ChatService = state.chat_service
    session = ChatSession(websocket, identity)
    logger.info(f"[WS] Connection {session.connection_id} accepted for user {identity.id} ({identity.role})")

    try:
        conversation_ids = await service.admit(session)
        await session.send("connected", {
            "user_id": identity.id,
            "conversation_ids": conversation_ids,
        })

        # Main event loop; events of one connection are handled in order
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))

            # Binary frames carry no event
            text = message.get("text")
            if text is None:
                await session.send("error", {"message": "Invalid frame"})
                continue
            try:
                frame = json.loads(text)
            except json.JSONDecodeError:
                await session.send("error", {"message": "Invalid frame"})
                continue
            await dispatch(service, session, frame)

    except WebSocketDisconnect:
        logger.info(f"[WS] Connection {session.connection_id} of user {identity.id} closed")
    finally:
        service.manager.disconnect(session)
