"""Pydantic schemas for conversations, participants and messages.

These schemas are used by:
    - MessagingStore: DuckDB storage layer (row -> model)
    - ChatService: WebSocket event payloads
    - conversations router: REST request/response bodies
"""
from datetime import datetime
from enum import IntEnum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class ReadStatus(IntEnum):
    """Read flag stored on every message."""
    UNREAD = 0
    READ = 1


class UserInfo(BaseModel):
    """Display fields of a user, attached to outgoing messages.

    Attributes:
        id: User identifier.
        username: Login name.
        full_name: Display name shown in the UI.
        avatar_url: Optional avatar image.
        role: parent, teacher, school_admin, ...
    """
    id: str
    username: str = ""
    full_name: str = ""
    avatar_url: Optional[str] = None
    role: str = ""


class Conversation(BaseModel):
    """A named channel tied to a class.

    Attributes:
        id: Conversation identifier.
        title: Display title.
        create_at: Creation time (UTC).
        last_message_at: Send time of the latest message (UTC).
        class_id: Owning class reference.
        is_class_group: True for the class-wide group, False for direct chats.
    """
    id: str
    title: str
    create_at: datetime
    last_message_at: datetime
    class_id: str
    is_class_group: bool = False


class Participant(BaseModel):
    """Membership row: a user appears at most once per conversation."""
    user_id: str
    conversation_id: str
    joined_at: datetime


class Message(BaseModel):
    """A persisted chat message.

    At least one of ``content`` and ``image_url`` is always present.
    """
    id: str
    conversation_id: str
    sender_id: str
    content: Optional[str] = None
    image_url: Optional[str] = None
    image_public_id: Optional[str] = None
    send_at: datetime
    read_status: ReadStatus = ReadStatus.UNREAD
    seq: int = 0
    sender: Optional[UserInfo] = None

    @model_validator(mode="after")
    def _content_or_image(self) -> "Message":
        if not self.content and not self.image_url:
            raise ValueError("a message needs content or an image")
        return self


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class ConversationSummary(Conversation):
    """Conversation list entry with its latest message and participants."""
    last_message: Optional[Message] = None
    participants_count: int = 0
    participants: List[UserInfo] = Field(default_factory=list)


class ConversationListResponse(BaseModel):
    conversations: List[ConversationSummary]
    pagination: Pagination


class ConversationDetailResponse(BaseModel):
    conversation: Conversation
    participants: List[UserInfo]


class MessageListResponse(BaseModel):
    messages: List[Message]
    pagination: Pagination


class ConversationCreate(BaseModel):
    """Request body for creating a conversation.

    The caller is always added as a participant; ``participant_ids`` lists
    additional members.
    """
    class_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    is_class_group: bool = False
    participant_ids: List[str] = Field(default_factory=list)


class ConversationCreateResponse(BaseModel):
    conversation: Conversation
    participants: List[str]


class ParticipantCreate(BaseModel):
    user_id: str = Field(..., min_length=1)


class MessageCreate(BaseModel):
    """REST send-message fallback body (mirrors the ``send_message`` event)."""
    conversation_id: Optional[str] = None
    content: Optional[str] = None
    image_base64: Optional[str] = None


class MarkReadResponse(BaseModel):
    conversation_id: str
    count: int


class UnreadByConversation(BaseModel):
    conversation_id: str
    count: int


class UnreadCountResponse(BaseModel):
    total: int
    by_conversation: List[UnreadByConversation]


def page_count(total: int, limit: int) -> int:
    """Number of pages needed for *total* rows at *limit* per page."""
    return (total + limit - 1) // limit if limit else 0
