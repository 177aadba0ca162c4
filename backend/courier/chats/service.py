"""DuckDB-backed chat membership directory.

Maps a chat identifier to its participant set. Participant sets are fixed at
creation and looked up by exact match before a new chat is created, so the
same set of users always shares one chat.
"""
import logging
import time
import uuid
from typing import List, Optional, Sequence, Tuple

from courier.store.database import Database

from .schemas import Chat

logger = logging.getLogger(__name__)

_CREATE_CHATS = """
CREATE TABLE IF NOT EXISTS chats (
    id               VARCHAR PRIMARY KEY,
    participant_key  VARCHAR NOT NULL,
    latest_message_id VARCHAR,
    created_at       DOUBLE NOT NULL,
    updated_at       DOUBLE NOT NULL
)
"""

_CREATE_PARTICIPANTS = """
CREATE TABLE IF NOT EXISTS chat_participants (
    chat_id  VARCHAR NOT NULL,
    user_id  VARCHAR NOT NULL,
    PRIMARY KEY (chat_id, user_id)
)
"""

_INDEX_KEY = "CREATE INDEX IF NOT EXISTS idx_chats_key ON chats(participant_key)"
_INDEX_USER = "CREATE INDEX IF NOT EXISTS idx_participants_user ON chat_participants(user_id)"


def participant_key(user_ids: Sequence[str]) -> str:
    """Canonical key of a participant set (sorted, comma-joined)."""
    return ",".join(sorted(set(user_ids)))


class ChatDirectory:
    """Chat lookup, creation and the denormalized latest-message pointer."""

    def __init__(self, database: Database) -> None:
        self._db = database
        self._db.execute_script(_CREATE_CHATS, _CREATE_PARTICIPANTS, _INDEX_KEY, _INDEX_USER)

    # -----------------------------------------------------------------------
    # Lookup
    # -----------------------------------------------------------------------

    def get_chat(self, chat_id: str) -> Optional[Chat]:
        rows = self._db.execute(
            """
            SELECT id, latest_message_id, created_at, updated_at
            FROM chats WHERE id = ?
            """,
            [chat_id],
        )
        if not rows:
            return None
        return self._build(rows[0])

    def is_participant(self, chat_id: str, user_id: str) -> bool:
        rows = self._db.execute(
            "SELECT 1 FROM chat_participants WHERE chat_id = ? AND user_id = ?",
            [chat_id, user_id],
        )
        return bool(rows)

    def find_by_participants(self, user_ids: Sequence[str]) -> Optional[Chat]:
        rows = self._db.execute(
            """
            SELECT id, latest_message_id, created_at, updated_at
            FROM chats WHERE participant_key = ?
            ORDER BY created_at ASC
            LIMIT 1
            """,
            [participant_key(user_ids)],
        )
        return self._build(rows[0]) if rows else None

    def list_for_user(self, user_id: str) -> List[Chat]:
        """Chats the user participates in, most recently active first."""
        rows = self._db.execute(
            """
            SELECT c.id, c.latest_message_id, c.created_at, c.updated_at
            FROM chats c
            JOIN chat_participants p ON p.chat_id = c.id
            WHERE p.user_id = ?
            ORDER BY c.updated_at DESC
            """,
            [user_id],
        )
        return [self._build(row) for row in rows]

    # -----------------------------------------------------------------------
    # Mutations
    # -----------------------------------------------------------------------

    def get_or_create(self, user_ids: Sequence[str]) -> Tuple[Chat, bool]:
        """Return the chat with exactly this participant set, creating it if absent.

        Returns:
            Tuple of (chat, created).
        """
        members = sorted(set(user_ids))
        if len(members) < 2:
            raise ValueError("a chat needs at least two participants")

        with self._db.transaction():
            existing = self.find_by_participants(members)
            if existing:
                return existing, False

            chat_id = str(uuid.uuid4())
            now = time.time()
            self._db.execute(
                """
                INSERT INTO chats (id, participant_key, latest_message_id, created_at, updated_at)
                VALUES (?, ?, NULL, ?, ?)
                """,
                [chat_id, participant_key(members), now, now],
            )
            for user_id in members:
                self._db.execute(
                    "INSERT INTO chat_participants (chat_id, user_id) VALUES (?, ?)",
                    [chat_id, user_id],
                )

        logger.info(f"[Chats] Created chat {chat_id} for {len(members)} participants")
        return Chat(
            id=chat_id,
            participants=members,
            createdAt=now,
            updatedAt=now,
        ), True

    def set_latest_message(self, chat_id: str, message_id: Optional[str]) -> None:
        """Point the chat at its latest visible message (None if none remain)."""
        self._db.execute(
            "UPDATE chats SET latest_message_id = ?, updated_at = ? WHERE id = ?",
            [message_id, time.time(), chat_id],
        )

    def touch(self, chat_id: str) -> None:
        """Bump the chat's update timestamp."""
        self._db.execute(
            "UPDATE chats SET updated_at = ? WHERE id = ?",
            [time.time(), chat_id],
        )

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    def _participants(self, chat_id: str) -> List[str]:
        rows = self._db.execute(
            "SELECT user_id FROM chat_participants WHERE chat_id = ? ORDER BY user_id",
            [chat_id],
        )
        return [row[0] for row in rows]

    def _build(self, row: tuple) -> Chat:
        chat_id, latest_message_id, created_at, updated_at = row
        return Chat(
            id=chat_id,
            participants=self._participants(chat_id),
            latestMessageId=latest_message_id,
            createdAt=created_at,
            updatedAt=updated_at,
        )
