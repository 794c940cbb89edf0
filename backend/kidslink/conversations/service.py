"""DuckDB-based storage for conversations, participants and messages.

Database Schema:
    users table:
        - id, username, full_name, avatar_url, role
    conversations table:
        - id, title, create_at, last_message_at, class_id, is_class_group
    conversation_participants table:
        - (user_id, conversation_id) primary key, joined_at
    messages table:
        - id, seq (from messages_seq), conversation_id, sender_id,
          content, image_url, image_public_id, send_at, read_status

Thread Safety:
    The DuckDB connection is NOT thread-safe. Handlers call the store from
    the thread pool, so every public method takes ``self._lock``.

Usage:
    store = MessagingStore(db_path=":memory:")
    conversation = store.create_conversation("Lop La 1", class_id="c1")
    store.add_participant(conversation.id, "u1")
"""
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple

import duckdb

from kidslink.errors import ConflictError, ValidationError

from .schemas import (
    Conversation,
    ConversationSummary,
    Message,
    Participant,
    ReadStatus,
    UserInfo,
)

logger = logging.getLogger(__name__)

MESSAGE_COLUMNS = """
    m.id, m.conversation_id, m.sender_id, m.content, m.image_url,
    m.image_public_id, m.send_at, m.read_status, m.seq,
    u.id, u.username, u.full_name, u.avatar_url, u.role
"""

CONVERSATION_COLUMNS = "c.id, c.title, c.create_at, c.last_message_at, c.class_id, c.is_class_group"


def utcnow() -> datetime:
    """Naive UTC timestamp, the format stored in TIMESTAMP columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _row_to_conversation(row) -> Conversation:
    return Conversation(
        id=row[0],
        title=row[1],
        create_at=row[2],
        last_message_at=row[3],
        class_id=row[4],
        is_class_group=bool(row[5]),
    )


def _row_to_user(row) -> UserInfo:
    return UserInfo(
        id=row[0],
        username=row[1] or "",
        full_name=row[2] or "",
        avatar_url=row[3],
        role=row[4] or "",
    )


def _row_to_message(row) -> Message:
    sender = _row_to_user(row[9:14]) if row[9] else UserInfo(id=row[2])
    return Message(
        id=row[0],
        conversation_id=row[1],
        sender_id=row[2],
        content=row[3],
        image_url=row[4],
        image_public_id=row[5],
        send_at=row[6],
        read_status=ReadStatus(row[7]),
        seq=row[8],
        sender=sender,
    )


class MessagingStore:
    """Persistent store for the messaging subsystem.

    One instance is created per process by the application lifespan and
    shared by the WebSocket handlers and the REST routers.
    """

    def __init__(self, db_path: str = "kidslink.duckdb") -> None:
        """Open (or create) the database and ensure the schema exists.

        Args:
            db_path: Path to the DuckDB file, or ":memory:".
        """
        self._db_path = db_path
        self._lock = threading.RLock()
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create tables and the message sequence (idempotent)."""
        with self._lock:
            conn = self._get_connection()
            conn.execute("CREATE SEQUENCE IF NOT EXISTS messages_seq START 1")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id VARCHAR PRIMARY KEY,
                    username VARCHAR NOT NULL DEFAULT '',
                    full_name VARCHAR NOT NULL DEFAULT '',
                    avatar_url VARCHAR,
                    role VARCHAR NOT NULL DEFAULT ''
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS conversations (
                    id VARCHAR PRIMARY KEY,
                    title VARCHAR NOT NULL,
                    create_at TIMESTAMP NOT NULL,
                    last_message_at TIMESTAMP NOT NULL,
                    class_id VARCHAR NOT NULL,
                    is_class_group BOOLEAN NOT NULL DEFAULT FALSE
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS conversation_participants (
                    user_id VARCHAR NOT NULL,
                    conversation_id VARCHAR NOT NULL,
                    joined_at TIMESTAMP NOT NULL,
                    PRIMARY KEY (user_id, conversation_id)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    id VARCHAR PRIMARY KEY,
                    seq BIGINT NOT NULL DEFAULT nextval('messages_seq'),
                    conversation_id VARCHAR NOT NULL,
                    sender_id VARCHAR NOT NULL,
                    content VARCHAR,
                    image_url VARCHAR,
                    image_public_id VARCHAR,
                    send_at TIMESTAMP NOT NULL,
                    read_status INTEGER NOT NULL DEFAULT 0,
                    CHECK (content IS NOT NULL OR image_url IS NOT NULL)
                )
            """)

    # =========================================================================
    # Users
    # =========================================================================

    def upsert_user(self, user: UserInfo) -> UserInfo:
        """Insert or fully replace a user's display fields."""
        with self._lock:
            self._get_connection().execute(
                """
                INSERT INTO users (id, username, full_name, avatar_url, role)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    username = excluded.username,
                    full_name = excluded.full_name,
                    avatar_url = excluded.avatar_url,
                    role = excluded.role
                """,
                [user.id, user.username, user.full_name, user.avatar_url, user.role],
            )
        return user

    def ensure_user(self, user_id: str, username: str = "", role: str = "") -> None:
        """Create a minimal user row from token claims if none exists yet."""
        with self._lock:
            self._get_connection().execute(
                """
                INSERT INTO users (id, username, full_name, role)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (id) DO NOTHING
                """,
                [user_id, username, username, role],
            )

    def get_user(self, user_id: str) -> Optional[UserInfo]:
        with self._lock:
            row = self._get_connection().execute(
                "SELECT id, username, full_name, avatar_url, role FROM users WHERE id = ?",
                [user_id],
            ).fetchone()
        return _row_to_user(row) if row else None

    # =========================================================================
    # Conversations & participants
    # =========================================================================

    def create_conversation(
        self,
        title: str,
        class_id: str,
        is_class_group: bool = False,
        participant_ids: Iterable[str] = (),
    ) -> Conversation:
        """Create a conversation and its initial participants atomically."""
        now = utcnow()
        conversation = Conversation(
            id=str(uuid.uuid4()),
            title=title.strip(),
            create_at=now,
            last_message_at=now,
            class_id=class_id,
            is_class_group=is_class_group,
        )
        # dict preserves order while dropping duplicates
        members = list(dict.fromkeys(participant_ids))

        with self._lock:
            conn = self._get_connection()
            conn.begin()
            try:
                conn.execute(
                    """
                    INSERT INTO conversations
                    (id, title, create_at, last_message_at, class_id, is_class_group)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [
                        conversation.id,
                        conversation.title,
                        conversation.create_at,
                        conversation.last_message_at,
                        conversation.class_id,
                        conversation.is_class_group,
                    ],
                )
                for user_id in members:
                    conn.execute(
                        """
                        INSERT INTO conversation_participants (user_id, conversation_id, joined_at)
                        VALUES (?, ?, ?)
                        """,
                        [user_id, conversation.id, now],
                    )
                conn.commit()
            except Exception:
                conn.rollback()
                raise

        logger.info(
            "Created conversation %s (class=%s, group=%s, %d participants)",
            conversation.id, class_id, is_class_group, len(members),
        )
        return conversation

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            row = self._get_connection().execute(
                f"SELECT {CONVERSATION_COLUMNS} FROM conversations c WHERE c.id = ?",
                [conversation_id],
            ).fetchone()
        return _row_to_conversation(row) if row else None

    def find_class_group(self, class_id: str) -> Optional[Conversation]:
        """The oldest class-group conversation of *class_id*, if any."""
        with self._lock:
            row = self._get_connection().execute(
                f"""
                SELECT {CONVERSATION_COLUMNS} FROM conversations c
                WHERE c.class_id = ? AND c.is_class_group
                ORDER BY c.create_at ASC, c.id
                LIMIT 1
                """,
                [class_id],
            ).fetchone()
        return _row_to_conversation(row) if row else None

    def find_direct_conversation(
        self, class_id: str, user_id: str, other_user_id: str
    ) -> Optional[Conversation]:
        """A non-group conversation of *class_id* whose members are exactly the pair."""
        with self._lock:
            row = self._get_connection().execute(
                f"""
                SELECT {CONVERSATION_COLUMNS} FROM conversations c
                WHERE c.class_id = ? AND NOT c.is_class_group
                  AND (SELECT count(*) FROM conversation_participants p
                       WHERE p.conversation_id = c.id) = 2
                  AND (SELECT count(*) FROM conversation_participants p
                       WHERE p.conversation_id = c.id AND p.user_id IN (?, ?)) = 2
                ORDER BY c.create_at ASC, c.id
                LIMIT 1
                """,
                [class_id, user_id, other_user_id],
            ).fetchone()
        return _row_to_conversation(row) if row else None

    def provision_conversation(
        self,
        title: str,
        class_id: str,
        is_class_group: bool,
        participant_ids: Iterable[str],
        requester_id: str,
    ) -> Tuple[Conversation, bool]:
        """Return the existing conversation for this class or pair, or create one.

        A class has at most one class group; joining an existing one only adds
        the requester. A two-member direct conversation is reused for the same
        pair in the same class.

        Returns:
            (conversation, created)
        """
        members = list(dict.fromkeys(participant_ids))
        with self._lock:
            if is_class_group:
                existing = self.find_class_group(class_id)
                if existing is not None:
                    if not self.is_participant(existing.id, requester_id):
                        self.add_participant(existing.id, requester_id)
                    return existing, False
            elif len(members) == 2:
                existing = self.find_direct_conversation(class_id, members[0], members[1])
                if existing is not None:
                    return existing, False

            return self.create_conversation(title, class_id, is_class_group, members), True

    def add_participant(self, conversation_id: str, user_id: str) -> Participant:
        """Add *user_id* to a conversation.

        Raises:
            ConflictError: If the user already participates.
        """
        joined_at = utcnow()
        with self._lock:
            try:
                self._get_connection().execute(
                    """
                    INSERT INTO conversation_participants (user_id, conversation_id, joined_at)
                    VALUES (?, ?, ?)
                    """,
                    [user_id, conversation_id, joined_at],
                )
            except duckdb.ConstraintException:
                raise ConflictError("User already participates in this conversation")
        return Participant(user_id=user_id, conversation_id=conversation_id, joined_at=joined_at)

    def is_participant(self, conversation_id: str, user_id: str) -> bool:
        with self._lock:
            row = self._get_connection().execute(
                """
                SELECT 1 FROM conversation_participants
                WHERE conversation_id = ? AND user_id = ?
                """,
                [conversation_id, user_id],
            ).fetchone()
        return row is not None

    def list_conversation_ids_for_user(self, user_id: str) -> List[str]:
        with self._lock:
            rows = self._get_connection().execute(
                """
                SELECT conversation_id FROM conversation_participants
                WHERE user_id = ?
                ORDER BY joined_at ASC, rowid ASC
                """,
                [user_id],
            ).fetchall()
        return [r[0] for r in rows]

    def list_participant_ids(
        self, conversation_id: str, exclude_user_id: Optional[str] = None
    ) -> List[str]:
        with self._lock:
            rows = self._get_connection().execute(
                """
                SELECT user_id FROM conversation_participants
                WHERE conversation_id = ?
                ORDER BY joined_at ASC, rowid ASC
                """,
                [conversation_id],
            ).fetchall()
        return [r[0] for r in rows if r[0] != exclude_user_id]

    def list_participants(self, conversation_id: str) -> List[UserInfo]:
        """Participants with display fields; unknown users get bare entries."""
        with self._lock:
            rows = self._get_connection().execute(
                """
                SELECT p.user_id, u.username, u.full_name, u.avatar_url, u.role
                FROM conversation_participants p
                LEFT JOIN users u ON u.id = p.user_id
                WHERE p.conversation_id = ?
                ORDER BY p.joined_at ASC, p.rowid ASC
                """,
                [conversation_id],
            ).fetchall()
        return [_row_to_user(r) for r in rows]

    def count_conversations_for_user(self, user_id: str) -> int:
        with self._lock:
            row = self._get_connection().execute(
                "SELECT count(*) FROM conversation_participants WHERE user_id = ?",
                [user_id],
            ).fetchone()
        return row[0]

    def list_conversations_for_user(
        self, user_id: str, page: int = 1, limit: int = 20
    ) -> List[ConversationSummary]:
        """A page of the user's conversations, most recently active first."""
        offset = (max(page, 1) - 1) * limit
        with self._lock:
            rows = self._get_connection().execute(
                f"""
                SELECT {CONVERSATION_COLUMNS}
                FROM conversations c
                JOIN conversation_participants p ON p.conversation_id = c.id
                WHERE p.user_id = ?
                ORDER BY c.last_message_at DESC, c.create_at DESC, c.id
                LIMIT ? OFFSET ?
                """,
                [user_id, limit, offset],
            ).fetchall()

            summaries = []
            for row in rows:
                conversation = _row_to_conversation(row)
                participants = self.list_participants(conversation.id)
                summaries.append(ConversationSummary(
                    **conversation.model_dump(),
                    last_message=self.get_last_message(conversation.id),
                    participants_count=len(participants),
                    participants=participants,
                ))
        return summaries

    # =========================================================================
    # Messages
    # =========================================================================

    def create_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: Optional[str] = None,
        image_url: Optional[str] = None,
        image_public_id: Optional[str] = None,
    ) -> Message:
        """Persist a new unread message with a server-assigned send time.

        Raises:
            ValidationError: If neither content nor an image is given.
        """
        content = content.strip() if content else None
        if not content and not image_url:
            raise ValidationError("Message requires content or an image")

        message_id = str(uuid.uuid4())
        send_at = utcnow()
        with self._lock:
            conn = self._get_connection()
            conn.execute(
                """
                INSERT INTO messages
                (id, conversation_id, sender_id, content, image_url, image_public_id,
                 send_at, read_status)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    message_id,
                    conversation_id,
                    sender_id,
                    content or None,
                    image_url,
                    image_public_id,
                    send_at,
                    int(ReadStatus.UNREAD),
                ],
            )
            return self.get_message(message_id)

    def touch_conversation(self, conversation_id: str, at: datetime) -> None:
        """Advance last_message_at; never moves it backwards."""
        with self._lock:
            self._get_connection().execute(
                """
                UPDATE conversations
                SET last_message_at = GREATEST(last_message_at, ?)
                WHERE id = ?
                """,
                [at, conversation_id],
            )

    def get_message(self, message_id: str) -> Optional[Message]:
        with self._lock:
            row = self._get_connection().execute(
                f"""
                SELECT {MESSAGE_COLUMNS}
                FROM messages m LEFT JOIN users u ON u.id = m.sender_id
                WHERE m.id = ?
                """,
                [message_id],
            ).fetchone()
        return _row_to_message(row) if row else None

    def get_last_message(self, conversation_id: str) -> Optional[Message]:
        with self._lock:
            row = self._get_connection().execute(
                f"""
                SELECT {MESSAGE_COLUMNS}
                FROM messages m LEFT JOIN users u ON u.id = m.sender_id
                WHERE m.conversation_id = ?
                ORDER BY m.seq DESC
                LIMIT 1
                """,
                [conversation_id],
            ).fetchone()
        return _row_to_message(row) if row else None

    def get_messages(
        self, conversation_id: str, page: int = 1, limit: int = 50
    ) -> List[Message]:
        """Get a page of history; page 1 holds the newest messages.

        Messages inside the page are returned oldest first.
        """
        offset = (max(page, 1) - 1) * limit
        with self._lock:
            rows = self._get_connection().execute(
                f"""
                SELECT {MESSAGE_COLUMNS}
                FROM messages m LEFT JOIN users u ON u.id = m.sender_id
                WHERE m.conversation_id = ?
                ORDER BY m.seq DESC
                LIMIT ? OFFSET ?
                """,
                [conversation_id, limit, offset],
            ).fetchall()
        messages = [_row_to_message(r) for r in rows]
        messages.reverse()
        return messages

    def count_messages(self, conversation_id: str) -> int:
        with self._lock:
            row = self._get_connection().execute(
                "SELECT count(*) FROM messages WHERE conversation_id = ?",
                [conversation_id],
            ).fetchone()
        return row[0]

    def mark_conversation_read(self, conversation_id: str, reader_id: str) -> int:
        """Flip every unread message not authored by *reader_id* to read.

        A single UPDATE statement, so concurrent calls converge: the second
        one reports 0.

        Returns:
            Number of messages that changed state.
        """
        with self._lock:
            row = self._get_connection().execute(
                """
                UPDATE messages
                SET read_status = ?
                WHERE conversation_id = ? AND sender_id <> ? AND read_status = ?
                """,
                [int(ReadStatus.READ), conversation_id, reader_id, int(ReadStatus.UNREAD)],
            ).fetchone()
        return int(row[0]) if row else 0

    def unread_counts(self, user_id: str) -> Tuple[int, List[Tuple[str, int]]]:
        """Unread messages addressed to *user_id*, in total and per conversation."""
        with self._lock:
            rows = self._get_connection().execute(
                """
                SELECT m.conversation_id, count(*)
                FROM messages m
                JOIN conversation_participants p
                  ON p.conversation_id = m.conversation_id AND p.user_id = ?
                WHERE m.sender_id <> ? AND m.read_status = ?
                GROUP BY m.conversation_id
                ORDER BY m.conversation_id
                """,
                [user_id, user_id, int(ReadStatus.UNREAD)],
            ).fetchall()
        by_conversation = [(r[0], int(r[1])) for r in rows]
        return sum(count for _, count in by_conversation), by_conversation

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
