"""DuckDB-backed durable message log.

Messages are append-only per chat and never physically removed. Every
mutation touches exactly one message row (edit, soft delete) or appends
receipt rows, and each of those is a single atomic statement, so concurrent
edits and deletes of the same message are linearized by the store.

Database Schema:
    messages table:
        - seq: Insertion sequence; defines per-chat order
        - id: Server-assigned UUID
        - chat_id, sender_id
        - text / image_url: exactly one is set
        - temp_id: Client correlation token (deduplicates retried sends)
        - created_at / updated_at: Unix timestamps
        - edited / deleted: flags
    message_receipts table:
        - (message_id, user_id, kind) primary key, kind in {delivered, read}
        - recorded_at: Unix timestamp

Usage:
    store = MessageStore(Database("courier.duckdb"))
    message, created = store.create_message(chat_id, sender_id, text="hi")
    messages = store.list_messages(chat_id)
"""
import logging
import time
import uuid
from typing import Dict, Iterable, List, Optional, Tuple

from .database import Database
from .schemas import Message, ReceiptKind

logger = logging.getLogger(__name__)

_CREATE_SEQUENCE = "CREATE SEQUENCE IF NOT EXISTS messages_seq START 1"

_CREATE_MESSAGES = """
CREATE TABLE IF NOT EXISTS messages (
    seq         BIGINT DEFAULT nextval('messages_seq'),
    id          VARCHAR PRIMARY KEY,
    chat_id     VARCHAR NOT NULL,
    sender_id   VARCHAR NOT NULL,
    text        VARCHAR,
    image_url   VARCHAR,
    temp_id     VARCHAR,
    created_at  DOUBLE NOT NULL,
    updated_at  DOUBLE NOT NULL,
    edited      BOOLEAN NOT NULL DEFAULT FALSE,
    deleted     BOOLEAN NOT NULL DEFAULT FALSE
)
"""

_CREATE_RECEIPTS = """
CREATE TABLE IF NOT EXISTS message_receipts (
    message_id  VARCHAR NOT NULL,
    user_id     VARCHAR NOT NULL,
    kind        VARCHAR NOT NULL,
    recorded_at DOUBLE NOT NULL,
    PRIMARY KEY (message_id, user_id, kind)
)
"""

_INDEX = "CREATE INDEX IF NOT EXISTS idx_messages_chat ON messages(chat_id)"

_COLUMNS = (
    "id, chat_id, sender_id, text, image_url, temp_id, "
    "created_at, updated_at, edited, deleted"
)


class MessageStore:
    """Append-only message log with ordered per-chat queries."""

    def __init__(self, database: Database) -> None:
        self._db = database
        self._db.execute_script(_CREATE_SEQUENCE, _CREATE_MESSAGES, _CREATE_RECEIPTS, _INDEX)

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def create_message(
        self,
        chat_id: str,
        sender_id: str,
        text: Optional[str] = None,
        image_url: Optional[str] = None,
        temp_id: Optional[str] = None,
    ) -> Tuple[Message, bool]:
        """Append a message and record the sender's own read receipt.

        If *temp_id* is given and a message with the same (chat, sender,
        temp_id) already exists, that message is returned instead.

        Returns:
            Tuple of (message, created) where created is False for a replay.
        """
        with self._db.transaction():
            if temp_id:
                existing = self._db.execute(
                    f"""
                    SELECT {_COLUMNS} FROM messages
                    WHERE chat_id = ? AND sender_id = ? AND temp_id = ?
                    """,
                    [chat_id, sender_id, temp_id],
                )
                if existing:
                    logger.info(
                        f"[Store] Replayed send for tempId={temp_id} in chat {chat_id}"
                    )
                    return self._hydrate(existing)[0], False

            message_id = str(uuid.uuid4())
            now = time.time()
            self._db.execute(
                f"""
                INSERT INTO messages ({_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, FALSE, FALSE)
                """,
                [message_id, chat_id, sender_id, text, image_url, temp_id, now, now],
            )
            self._db.execute(
                "INSERT INTO message_receipts (message_id, user_id, kind, recorded_at) VALUES (?, ?, ?, ?)",
                [message_id, sender_id, ReceiptKind.READ.value, now],
            )

        message = Message(
            id=message_id,
            chatId=chat_id,
            senderId=sender_id,
            text=text,
            imageUrl=image_url,
            createdAt=now,
            updatedAt=now,
            readBy=[sender_id],
            tempId=temp_id,
        )
        return message, True

    def update_text(self, message_id: str, text: str) -> Optional[Message]:
        """Replace the text of a live text message and set the edited flag.

        Returns:
            The updated message, or None if it is missing, deleted or an image.
        """
        rows = self._db.execute(
            """
            UPDATE messages SET text = ?, edited = TRUE, updated_at = ?
            WHERE id = ? AND deleted = FALSE AND image_url IS NULL
            RETURNING id
            """,
            [text, time.time(), message_id],
        )
        if not rows:
            return None
        return self.get_message(message_id)

    def soft_delete(self, message_id: str) -> Optional[Message]:
        """Set the deleted flag, leaving content, receipts and timestamps intact.

        Returns:
            The updated message, or None if it was missing or already deleted.
        """
        rows = self._db.execute(
            """
            UPDATE messages SET deleted = TRUE, updated_at = ?
            WHERE id = ? AND deleted = FALSE
            RETURNING id
            """,
            [time.time(), message_id],
        )
        if not rows:
            return None
        return self.get_message(message_id)

    def mark_read(self, chat_id: str, user_id: str) -> List[str]:
        """Add *user_id* to readBy of every message in the chat lacking it.

        Returns:
            IDs of the messages that changed, in chat order.
        """
        return self._add_receipts(chat_id, user_id, ReceiptKind.READ, exclude_own=False)

    def mark_delivered(self, chat_id: str, user_id: str) -> List[str]:
        """Record delivery to *user_id* for every message they did not send."""
        return self._add_receipts(chat_id, user_id, ReceiptKind.DELIVERED, exclude_own=True)

    def record_delivery(self, message_id: str, user_ids: Iterable[str]) -> List[str]:
        """Record delivery of one message to several users.

        Returns:
            The users for whom a new receipt was written.
        """
        now = time.time()
        delivered = []
        with self._db.transaction():
            for user_id in user_ids:
                rows = self._db.execute(
                    """
                    INSERT INTO message_receipts (message_id, user_id, kind, recorded_at)
                    SELECT ?, ?, ?, ?
                    WHERE NOT EXISTS (
                        SELECT 1 FROM message_receipts
                        WHERE message_id = ? AND user_id = ? AND kind = ?
                    )
                    RETURNING user_id
                    """,
                    [
                        message_id, user_id, ReceiptKind.DELIVERED.value, now,
                        message_id, user_id, ReceiptKind.DELIVERED.value,
                    ],
                )
                if rows:
                    delivered.append(user_id)
        return delivered

    def _add_receipts(
        self, chat_id: str, user_id: str, kind: ReceiptKind, exclude_own: bool
    ) -> List[str]:
        sender_clause = "AND m.sender_id <> ?" if exclude_own else ""
        params = [user_id, kind.value, time.time(), chat_id]
        if exclude_own:
            params.append(user_id)
        params.extend([user_id, kind.value])

        rows = self._db.execute(
            f"""
            INSERT INTO message_receipts (message_id, user_id, kind, recorded_at)
            SELECT m.id, ?, ?, ? FROM messages m
            WHERE m.chat_id = ? {sender_clause}
              AND NOT EXISTS (
                SELECT 1 FROM message_receipts r
                WHERE r.message_id = m.id AND r.user_id = ? AND r.kind = ?
              )
            RETURNING message_id
            """,
            params,
        )
        changed = {row[0] for row in rows}
        if not changed:
            return []
        # RETURNING order is unspecified; report in chat order
        return [m.id for m in self.get_messages(list(changed))]

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def get_message(self, message_id: str) -> Optional[Message]:
        rows = self._db.execute(
            f"SELECT {_COLUMNS} FROM messages WHERE id = ?", [message_id]
        )
        messages = self._hydrate(rows)
        return messages[0] if messages else None

    def get_messages(self, message_ids: List[str]) -> List[Message]:
        """Fetch several messages by ID, ordered by insertion."""
        if not message_ids:
            return []
        placeholders = ", ".join("?" for _ in message_ids)
        rows = self._db.execute(
            f"SELECT {_COLUMNS} FROM messages WHERE id IN ({placeholders}) ORDER BY seq ASC",
            list(message_ids),
        )
        return self._hydrate(rows)

    def list_messages(self, chat_id: str) -> List[Message]:
        """All messages of a chat in ascending insertion order."""
        rows = self._db.execute(
            f"SELECT {_COLUMNS} FROM messages WHERE chat_id = ? ORDER BY seq ASC",
            [chat_id],
        )
        return self._hydrate(rows)

    def latest_visible_message_id(self, chat_id: str) -> Optional[str]:
        """Most recent non-deleted message of a chat, or None."""
        rows = self._db.execute(
            """
            SELECT id FROM messages
            WHERE chat_id = ? AND deleted = FALSE
            ORDER BY seq DESC
            LIMIT 1
            """,
            [chat_id],
        )
        return rows[0][0] if rows else None

    def count_messages(self, chat_id: str) -> int:
        rows = self._db.execute("SELECT COUNT(*) FROM messages WHERE chat_id = ?", [chat_id])
        return rows[0][0]

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    def _receipts_for(self, message_ids: List[str]) -> Dict[str, Dict[str, List[str]]]:
        if not message_ids:
            return {}
        placeholders = ", ".join("?" for _ in message_ids)
        rows = self._db.execute(
            f"""
            SELECT message_id, user_id, kind FROM message_receipts
            WHERE message_id IN ({placeholders})
            ORDER BY recorded_at ASC, user_id ASC
            """,
            list(message_ids),
        )
        receipts: Dict[str, Dict[str, List[str]]] = {}
        for message_id, user_id, kind in rows:
            receipts.setdefault(message_id, {}).setdefault(kind, []).append(user_id)
        return receipts

    def _hydrate(self, rows: List[tuple]) -> List[Message]:
        receipts = self._receipts_for([row[0] for row in rows])
        messages = []
        for (message_id, chat_id, sender_id, text, image_url, temp_id,
             created_at, updated_at, edited, deleted) in rows:
            by_kind = receipts.get(message_id, {})
            read_by = by_kind.get(ReceiptKind.READ.value, [])
            # Sender always leads readBy
            if sender_id in read_by:
                read_by = [sender_id] + [u for u in read_by if u != sender_id]
            messages.append(Message(
                id=message_id,
                chatId=chat_id,
                senderId=sender_id,
                text=text,
                imageUrl=image_url,
                createdAt=created_at,
                updatedAt=updated_at,
                edited=edited,
                deleted=deleted,
                readBy=read_by,
                deliveredTo=by_kind.get(ReceiptKind.DELIVERED.value, []),
                tempId=temp_id,
            ))
        return messages
