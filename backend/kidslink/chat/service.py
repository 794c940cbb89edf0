"""Message ingest, fan-out, read receipts and typing indicators.

ChatService implements every inbound chat operation on top of the
MessagingStore (persistence), the ImageStore (attachments) and the
ConnectionManager (fan-out). The WebSocket router calls it with the
originating ChatSession; the REST fallback endpoints call it with
``session=None``, which skips the steps that address the originating
connection.

Every store call and the image upload run through ``run_in_threadpool``
and are suspension points: events of other connections may interleave
between them.

send_message fan-out order:
    a. ensure the originating connection is subscribed to the conversation
    b. ``new_message`` to the conversation group (sender's connections too)
    c. ``new_message_notification`` to every other participant's user group
    d. ``message_sent`` acknowledgment to the originating connection
"""
import asyncio
import logging
from typing import Iterable, List, Optional, Tuple

import duckdb
from fastapi.concurrency import run_in_threadpool

from kidslink.auth import Identity
from kidslink.conversations.schemas import Message
from kidslink.conversations.service import MessagingStore
from kidslink.errors import (
    AuthorizationError,
    ImageUploadError,
    UpstreamError,
    ValidationError,
)
from kidslink.images.service import ImageStore

from .groups import conversation_group, user_group
from .manager import ConnectionManager
from .session import ChatSession

logger = logging.getLogger(__name__)

NOT_PARTICIPANT = "You are not a participant of this conversation"


class ChatService:
    """Chat operations shared by the WebSocket and REST layers."""

    def __init__(
        self,
        store: MessagingStore,
        image_store: ImageStore,
        manager: ConnectionManager,
        system_user_ids: Iterable[str] = ("admin",),
    ) -> None:
        self.store = store
        self.image_store = image_store
        self.manager = manager
        self.system_user_ids = frozenset(system_user_ids)

    def is_system_identity(self, identity: Identity) -> bool:
        """System identities are valid token subjects with no stored user row."""
        return identity.id in self.system_user_ids

    # =========================================================================
    # Admission
    # =========================================================================

    async def admit(self, session: ChatSession) -> List[str]:
        """Register a session and subscribe it to its groups.

        Store failures are logged and never abort admission; the connection
        then has no conversation subscriptions until it joins explicitly.

        Returns:
            Conversation IDs the session was subscribed to.
        """
        self.manager.connect(session)
        if self.is_system_identity(session.identity):
            logger.info(f"[Chat] System identity {session.user_id} admitted without memberships")
            return []

        identity = session.identity
        try:
            await run_in_threadpool(
                self.store.ensure_user, identity.id, identity.username, identity.role
            )
            conversation_ids = await run_in_threadpool(
                self.store.list_conversation_ids_for_user, identity.id
            )
        except duckdb.Error as e:
            logger.error(f"[Chat] Could not load memberships for {identity.id}: {e}")
            return []

        for conversation_id in conversation_ids:
            self.manager.subscribe(session, conversation_id)
        logger.info(f"[Chat] User {identity.id} subscribed to {len(conversation_ids)} conversation(s)")
        return conversation_ids

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _require_participant(
        self, conversation_id: str, user_id: str, temp_id: Optional[str] = None
    ) -> None:
        try:
            is_member = await run_in_threadpool(self.store.is_participant, conversation_id, user_id)
        except duckdb.Error as e:
            raise UpstreamError("Could not verify membership", details=str(e), temp_id=temp_id)
        if not is_member:
            raise AuthorizationError(NOT_PARTICIPANT, temp_id=temp_id)

    def _persist(
        self,
        conversation_id: str,
        sender_id: str,
        content: Optional[str],
        image_url: Optional[str],
        image_public_id: Optional[str],
    ) -> Tuple[Message, List[str]]:
        """Store the message, advance last_message_at and list the recipients."""
        message = self.store.create_message(
            conversation_id, sender_id, content, image_url, image_public_id
        )
        self.store.touch_conversation(conversation_id, message.send_at)
        recipients = self.store.list_participant_ids(conversation_id, exclude_user_id=sender_id)
        return message, recipients

    # =========================================================================
    # Operations
    # =========================================================================

    async def send_message(
        self,
        identity: Identity,
        conversation_id: Optional[str],
        content: Optional[str] = None,
        image_base64: Optional[str] = None,
        temp_id: Optional[str] = None,
        session: Optional[ChatSession] = None,
    ) -> Message:
        """Validate, persist and fan out one message.

        Validation runs before any side effect: conversation id, then
        content or image, then membership. An image is uploaded before the
        message is persisted.

        Raises:
            ValidationError: Missing conversation id, non-string image or empty message.
            AuthorizationError: Sender is not a participant.
            UpstreamError: Image upload or store failure.
        """
        if not conversation_id:
            raise ValidationError("conversation_id is required", temp_id=temp_id)
        if image_base64 is not None and not isinstance(image_base64, str):
            raise ValidationError("image_base64 must be a base64 string", temp_id=temp_id)

        text = content.strip() if isinstance(content, str) else ""
        if not text and not image_base64:
            raise ValidationError("Message content or image is required", temp_id=temp_id)

        await self._require_participant(conversation_id, identity.id, temp_id)

        image_url = image_public_id = None
        if image_base64:
            try:
                uploaded = await self.image_store.upload_base64(image_base64)
            except ImageUploadError as e:
                logger.warning(f"[Chat] Image upload failed for {identity.id}: {e}")
                raise UpstreamError("Image upload failed", details=str(e), temp_id=temp_id)
            image_url, image_public_id = uploaded.url, uploaded.public_id

        try:
            message, recipients = await run_in_threadpool(
                self._persist, conversation_id, identity.id, text or None, image_url, image_public_id
            )
        except duckdb.Error as e:
            logger.error(f"[Chat] Could not save message in {conversation_id}: {e}")
            raise UpstreamError("Could not save message", details=str(e), temp_id=temp_id)

        logger.info(
            f"[Chat] Message {message.id} from {identity.id} in {conversation_id} "
            f"(image={image_url is not None}, recipients={len(recipients)})"
        )

        payload = message.model_dump(mode="json")

        if session is not None:
            self.manager.subscribe(session, conversation_id)

        await self.manager.broadcast(
            conversation_group(conversation_id),
            "new_message",
            {"message": payload, "tempId": temp_id},
        )

        notification = {"conversation_id": conversation_id, "message": payload}
        await asyncio.gather(*[
            self.manager.broadcast(user_group(user_id), "new_message_notification", notification)
            for user_id in recipients
        ])

        if session is not None:
            await session.send("message_sent", {
                "message_id": message.id,
                "conversation_id": conversation_id,
                "tempId": temp_id,
            })

        return message

    async def mark_as_read(
        self,
        identity: Identity,
        conversation_id: Optional[str],
        session: Optional[ChatSession] = None,
    ) -> int:
        """Flip every unread message not authored by the caller to read.

        Returns:
            Number of messages that changed state (0 on a repeated call).
        """
        if not conversation_id:
            raise ValidationError("conversation_id is required")

        await self._require_participant(conversation_id, identity.id)

        try:
            count = await run_in_threadpool(
                self.store.mark_conversation_read, conversation_id, identity.id
            )
        except duckdb.Error as e:
            raise UpstreamError("Could not mark messages as read", details=str(e))

        logger.info(f"[Chat] {identity.id} read {count} message(s) in {conversation_id}")

        await self.manager.broadcast(
            conversation_group(conversation_id),
            "messages_read",
            {"conversation_id": conversation_id, "read_by": identity.id, "count": count},
        )
        if session is not None:
            await session.send("marked_as_read", {"conversation_id": conversation_id, "count": count})
        return count

    async def typing(
        self, session: ChatSession, conversation_id: Optional[str], is_typing: bool = True
    ) -> None:
        """Relay a typing indicator to the other connections of a conversation.

        Non-participants and store failures are silently ignored.
        """
        if not conversation_id:
            return
        try:
            is_member = await run_in_threadpool(
                self.store.is_participant, conversation_id, session.user_id
            )
        except duckdb.Error as e:
            logger.warning(f"[Chat] Typing membership check failed for {session.user_id}: {e}")
            return
        if not is_member:
            logger.debug(f"[Chat] Ignoring typing from non-participant {session.user_id}")
            return

        await self.manager.broadcast(
            conversation_group(conversation_id),
            "user_typing",
            {"conversation_id": conversation_id, "user_id": session.user_id, "is_typing": is_typing},
            exclude=session.connection_id,
        )

    async def join_conversation(self, session: ChatSession, conversation_id: Optional[str]) -> None:
        if not conversation_id:
            raise ValidationError("conversation_id is required")
        await self._require_participant(conversation_id, session.user_id)
        self.manager.subscribe(session, conversation_id)
        await session.send("joined_conversation", {"conversation_id": conversation_id})

    async def leave_conversation(self, session: ChatSession, conversation_id: Optional[str]) -> None:
        if not conversation_id:
            return
        self.manager.unsubscribe(session, conversation_id)
        await session.send("left_conversation", {"conversation_id": conversation_id})
