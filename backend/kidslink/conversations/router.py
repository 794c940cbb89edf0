"""Messaging REST API endpoints.

All endpoints require a bearer token (see ``kidslink.auth.dependencies``).

Endpoints:
    POST /api/messaging/conversations: Create a conversation
    GET  /api/messaging/conversations: List the caller's conversations
    GET  /api/messaging/conversations/{id}: Conversation detail
    POST /api/messaging/conversations/{id}/participants: Add a participant
    GET  /api/messaging/conversations/{id}/messages: Paginated history
    POST /api/messaging/messages: Send a message (WebSocket fallback)
    PUT  /api/messaging/conversations/{id}/read: Mark messages as read
    GET  /api/messaging/unread-count: Unread totals per conversation

Send and mark-read go through the same ChatService as the WebSocket
events, so live clients still receive the fan-out.
"""
import logging
from typing import Optional

import duckdb
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.concurrency import run_in_threadpool

from kidslink.auth import Identity
from kidslink.auth.dependencies import get_current_identity
from kidslink.chat.service import ChatService
from kidslink.errors import (
    AuthorizationError,
    MessagingError,
    NotFoundError,
    UpstreamError,
)

from .schemas import (
    ConversationCreate,
    ConversationCreateResponse,
    ConversationDetailResponse,
    ConversationListResponse,
    MarkReadResponse,
    Message,
    MessageCreate,
    MessageListResponse,
    Pagination,
    Participant,
    ParticipantCreate,
    UnreadByConversation,
    UnreadCountResponse,
    page_count,
)
from .service import MessagingStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/messaging", tags=["messaging"])


# =============================================================================
# Dependencies
# =============================================================================


def get_store(request: Request) -> MessagingStore:
    return request.app.state.store


def get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat_service


async def get_caller(
    identity: Identity = Depends(get_current_identity),
    service: ChatService = Depends(get_chat_service),
) -> Identity:
    """Authenticated caller, with a user row created from the token claims."""
    if not service.is_system_identity(identity):
        await run_in_threadpool(service.store.ensure_user, identity.id, identity.username, identity.role)
    return identity


def _http_error(error: MessagingError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail=error.to_payload())


async def _require_participant(store: MessagingStore, conversation_id: str, user_id: str) -> None:
    conversation = await run_in_threadpool(store.get_conversation, conversation_id)
    if conversation is None:
        raise _http_error(NotFoundError("Conversation not found"))
    if not await run_in_threadpool(store.is_participant, conversation_id, user_id):
        raise _http_error(AuthorizationError("You are not a participant of this conversation"))


def _page_limit(request: Request, limit: Optional[int], default_attr: str) -> int:
    chat = request.app.state.config.chat
    if limit is None:
        return getattr(chat, default_attr)
    return min(limit, chat.max_page_size)


# =============================================================================
# Conversations
# =============================================================================


@router.post("/conversations", response_model=ConversationCreateResponse, status_code=201)
async def create_conversation(
    body: ConversationCreate,
    response: Response,
    caller: Identity = Depends(get_caller),
    store: MessagingStore = Depends(get_store),
    service: ChatService = Depends(get_chat_service),
) -> ConversationCreateResponse:
    """Create a conversation; the caller is always its first participant.

    A class keeps a single class group and a pair of users a single direct
    conversation per class: those requests return the existing conversation
    with status 200 (joining a class group adds the caller).

    Live connections of every member are subscribed right away.

    Raises:
        HTTPException 404: A listed participant has no user record.
    """
    participant_ids = list(dict.fromkeys([caller.id, *body.participant_ids]))
    for user_id in participant_ids[1:]:
        if await run_in_threadpool(store.get_user, user_id) is None:
            raise _http_error(NotFoundError("User not found", details=user_id))

    conversation, created = await run_in_threadpool(
        store.provision_conversation,
        body.title,
        body.class_id,
        body.is_class_group,
        participant_ids,
        caller.id,
    )
    if created:
        members = participant_ids
    else:
        response.status_code = 200
        members = await run_in_threadpool(store.list_participant_ids, conversation.id)
        logger.info(f"[API] {caller.id} reused conversation {conversation.id} (class={body.class_id})")

    for user_id in members:
        service.manager.subscribe_user(user_id, conversation.id)

    return ConversationCreateResponse(conversation=conversation, participants=members)


@router.get("/conversations", response_model=ConversationListResponse)
async def list_conversations(
    request: Request,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    caller: Identity = Depends(get_caller),
    store: MessagingStore = Depends(get_store),
) -> ConversationListResponse:
    """The caller's conversations, most recently active first."""
    limit = _page_limit(request, limit, "conversation_page_size")
    total = await run_in_threadpool(store.count_conversations_for_user, caller.id)
    conversations = await run_in_threadpool(store.list_conversations_for_user, caller.id, page, limit)
    return ConversationListResponse(
        conversations=conversations,
        pagination=Pagination(page=page, limit=limit, total=total, pages=page_count(total, limit)),
    )


@router.get("/conversations/{conversation_id}", response_model=ConversationDetailResponse)
async def get_conversation(
    conversation_id: str,
    caller: Identity = Depends(get_caller),
    store: MessagingStore = Depends(get_store),
) -> ConversationDetailResponse:
    await _require_participant(store, conversation_id, caller.id)
    conversation = await run_in_threadpool(store.get_conversation, conversation_id)
    participants = await run_in_threadpool(store.list_participants, conversation_id)
    return ConversationDetailResponse(conversation=conversation, participants=participants)


@router.post(
    "/conversations/{conversation_id}/participants",
    response_model=Participant,
    status_code=201,
)
async def add_participant(
    conversation_id: str,
    body: ParticipantCreate,
    caller: Identity = Depends(get_caller),
    store: MessagingStore = Depends(get_store),
    service: ChatService = Depends(get_chat_service),
) -> Participant:
    """Add a user to a conversation the caller participates in.

    Raises:
        HTTPException 404: Conversation or user not found.
        HTTPException 403: Caller is not a participant.
        HTTPException 409: User already participates.
    """
    await _require_participant(store, conversation_id, caller.id)
    if await run_in_threadpool(store.get_user, body.user_id) is None:
        raise _http_error(NotFoundError("User not found"))

    try:
        participant = await run_in_threadpool(store.add_participant, conversation_id, body.user_id)
    except MessagingError as e:
        raise _http_error(e)

    service.manager.subscribe_user(body.user_id, conversation_id)
    logger.info(f"[API] {caller.id} added {body.user_id} to {conversation_id}")
    return participant


# =============================================================================
# Messages
# =============================================================================


@router.get("/conversations/{conversation_id}/messages", response_model=MessageListResponse)
async def get_messages(
    request: Request,
    conversation_id: str,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    caller: Identity = Depends(get_caller),
    store: MessagingStore = Depends(get_store),
) -> MessageListResponse:
    """A page of history; page 1 is the newest, oldest first inside a page."""
    await _require_participant(store, conversation_id, caller.id)
    limit = _page_limit(request, limit, "default_page_size")
    total = await run_in_threadpool(store.count_messages, conversation_id)
    messages = await run_in_threadpool(store.get_messages, conversation_id, page, limit)
    return MessageListResponse(
        messages=messages,
        pagination=Pagination(page=page, limit=limit, total=total, pages=page_count(total, limit)),
    )


@router.post("/messages", response_model=Message, status_code=201)
async def send_message(
    body: MessageCreate,
    caller: Identity = Depends(get_caller),
    service: ChatService = Depends(get_chat_service),
) -> Message:
    try:
        return await service.send_message(
            caller,
            body.conversation_id,
            content=body.content,
            image_base64=body.image_base64,
        )
    except MessagingError as e:
        raise _http_error(e)


@router.put("/conversations/{conversation_id}/read", response_model=MarkReadResponse)
async def mark_as_read(
    conversation_id: str,
    caller: Identity = Depends(get_caller),
    service: ChatService = Depends(get_chat_service),
) -> MarkReadResponse:
    try:
        count = await service.mark_as_read(caller, conversation_id)
    except MessagingError as e:
        raise _http_error(e)
    return MarkReadResponse(conversation_id=conversation_id, count=count)


@router.get("/unread-count", response_model=UnreadCountResponse)
async def unread_count(
    caller: Identity = Depends(get_caller),
    store: MessagingStore = Depends(get_store),
) -> UnreadCountResponse:
    try:
        total, by_conversation = await run_in_threadpool(store.unread_counts, caller.id)
    except duckdb.Error as e:
        raise _http_error(UpstreamError("Could not count unread messages", details=str(e)))
    return UnreadCountResponse(
        total=total,
        by_conversation=[
            UnreadByConversation(conversation_id=cid, count=count)
            for cid, count in by_conversation
        ],
    )
