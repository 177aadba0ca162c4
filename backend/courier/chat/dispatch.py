"""Message dispatch engine.

The single path for every message mutation and its fan-out. Each operation
validates its input and the caller's authorization before touching any
store, then applies the change in this order:

    1. durable store (single-message atomic write)
    2. chat directory (latest-message pointer / update time)
    3. recent-message cache (append or read-modify-write patch)
    4. broadcast to the chat group

Failed operations never broadcast. Durable store failures propagate as
``TransientStoreError``; cache failures are logged and the chat's cache entry
is invalidated so the next fetch repopulates it from the store.

Concurrency:
    Operations hold no lock across I/O. Two concurrent patches of different
    messages in the same chat may race in the cache (last writer wins); the
    entry's TTL bounds how long such a snapshot survives.
"""
import logging
from typing import List, Optional, Sequence, Tuple

from courier.chats.schemas import Chat, ChatSummary
from courier.chats.service import ChatDirectory
from courier.errors import Forbidden, NotFound, TransientStoreError, ValidationError, require_id
from courier.store.schemas import Message
from courier.store.service import MessageStore

from . import events
from .cache import MessageCache
from .manager import ConnectionManager, Session
from .presence import PresenceSet
from .typing_throttle import TypingThrottle

logger = logging.getLogger(__name__)

# Longest accepted client correlation token
MAX_TEMP_ID_LENGTH = 128


def _require_temp_id(temp_id) -> Optional[str]:
    if temp_id is None or temp_id == "":
        return None
    if not isinstance(temp_id, str) or len(temp_id) > MAX_TEMP_ID_LENGTH:
        raise ValidationError("Invalid tempId")
    return temp_id


class DispatchEngine:
    """Validates, persists, caches and fans out chat messages."""

    def __init__(
        self,
        store: MessageStore,
        chats: ChatDirectory,
        cache: MessageCache,
        presence: PresenceSet,
        manager: ConnectionManager,
        throttle: TypingThrottle,
    ) -> None:
        self._store = store
        self._chats = chats
        self._cache = cache
        self._presence = presence
        self._manager = manager
        self._throttle = throttle

    # =========================================================================
    # Authorization
    # =========================================================================

    def require_participant(self, chat_id, user_id: str) -> Chat:
        """Return the chat if *user_id* participates in it.

        Raises:
            ValidationError: If chat_id is malformed.
            NotFound: If the chat does not exist.
            Forbidden: If the user is not a participant.
        """
        require_id(chat_id, "chatId")
        chat = self._chats.get_chat(chat_id)
        if chat is None:
            raise NotFound("Chat not found")
        if not chat.has_participant(user_id):
            raise Forbidden("You are not a participant of this chat")
        return chat

    def _require_own_message(self, message_id, requester_id: str) -> Message:
        require_id(message_id, "messageId")
        message = self._store.get_message(message_id)
        if message is None:
            raise NotFound("Message not found")
        if message.senderId != requester_id:
            raise Forbidden("Only the sender can change this message")
        return message

    # =========================================================================
    # Sending
    # =========================================================================

    async def send(
        self, chat_id, sender_id: str, content, temp_id: Optional[str] = None
    ) -> Message:
        """Persist a text message and fan it out.

        A replay of an already-persisted (chat, sender, tempId) returns the
        stored message without persisting or broadcasting again.

        Returns:
            The persisted message, including its server-assigned ID.
        """
        require_id(chat_id, "chatId")
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Message content is required")
        temp_id = _require_temp_id(temp_id)
        chat = self.require_participant(chat_id, sender_id)
        return await self._send(chat, sender_id, temp_id, text=content)

    async def send_image(
        self, chat_id, sender_id: str, media_ref, temp_id: Optional[str] = None
    ) -> Message:
        """Same contract as ``send`` with an already-stored image reference."""
        require_id(chat_id, "chatId")
        if not isinstance(media_ref, str) or not media_ref.strip():
            raise ValidationError("Image reference is required")
        temp_id = _require_temp_id(temp_id)
        chat = self.require_participant(chat_id, sender_id)
        return await self._send(chat, sender_id, temp_id, image_url=media_ref)

    async def _send(
        self,
        chat: Chat,
        sender_id: str,
        temp_id: Optional[str],
        text: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> Message:
        message, created = self._store.create_message(
            chat.id, sender_id, text=text, image_url=image_url, temp_id=temp_id
        )
        if not created:
            return message

        self._chats.set_latest_message(chat.id, message.id)
        snapshot = message.to_client()
        await self._cache_append(chat.id, snapshot)

        logger.info(
            f"[Dispatch] {sender_id} sent {message.id} to chat {chat.id} "
            f"(tempId={temp_id}, group size {self._manager.get_group_size(chat.id)})"
        )
        await self._manager.broadcast(chat.id, events.MESSAGE_RECEIVED, snapshot)

        recipients = [
            user_id for user_id in chat.participants
            if user_id != sender_id and self._presence.is_online(user_id)
        ]
        if recipients:
            message = await self._deliver_to(chat.id, message, recipients)
        return message

    async def _deliver_to(self, chat_id: str, message: Message, recipients: List[str]) -> Message:
        try:
            delivered = self._store.record_delivery(message.id, recipients)
            if not delivered:
                return message
            updated = self._store.get_message(message.id) or message
        except TransientStoreError as e:
            # The message itself is persisted; only the receipt is missing
            logger.warning(f"[Dispatch] Could not record delivery of {message.id}: {e}")
            return message

        await self._cache_patch(chat_id, [updated])
        await self._manager.broadcast(
            chat_id,
            events.MESSAGE_DELIVERED,
            {"messageId": updated.id, "deliveredTo": updated.deliveredTo},
        )
        return updated

    # =========================================================================
    # Reading
    # =========================================================================

    async def fetch_messages(self, chat_id, requester_id: str) -> List[dict]:
        """Return the chat's messages in insertion order.

        A cache hit is returned verbatim. On a miss the list is read from the
        durable store, cached, and every unread message is marked read by the
        requester before returning.
        """
        self.require_participant(chat_id, requester_id)

        try:
            cached = await self._cache.get(chat_id)
        except TransientStoreError as e:
            logger.warning(f"[Cache] Read failed for chat {chat_id}, using store: {e}")
            cached = None
        if cached:
            logger.debug(f"[Cache] Hit for chat {chat_id} ({len(cached)} messages)")
            return cached

        snapshots = [m.to_client() for m in self._store.list_messages(chat_id)]
        try:
            await self._cache.set(chat_id, snapshots)
        except TransientStoreError as e:
            logger.warning(f"[Cache] Could not populate chat {chat_id}: {e}")

        updated = {m.id: m.to_client() for m in await self._mark_read(chat_id, requester_id)}
        return [updated.get(s["id"], s) for s in snapshots]

    async def mark_read(self, chat_id, requester_id: str) -> List[str]:
        """Add the requester to readBy of every message lacking it.

        Returns:
            IDs of the messages that changed; empty when already read.
        """
        self.require_participant(chat_id, requester_id)
        return [m.id for m in await self._mark_read(chat_id, requester_id)]

    async def _mark_read(self, chat_id: str, user_id: str) -> List[Message]:
        changed = self._store.mark_read(chat_id, user_id)
        if not changed:
            return []
        updated = self._store.get_messages(changed)
        await self._cache_patch(chat_id, updated)
        for message in updated:
            await self._manager.broadcast(
                chat_id, events.MESSAGE_READ, {"messageId": message.id, "readBy": user_id}
            )
        logger.info(f"[Dispatch] {user_id} read {len(updated)} messages in chat {chat_id}")
        return updated

    async def mark_delivered(self, chat_id, user_id: str) -> List[str]:
        """Record delivery to *user_id* of every message they did not send."""
        self.require_participant(chat_id, user_id)
        return [m.id for m in await self._mark_delivered(chat_id, user_id)]

    async def _mark_delivered(self, chat_id: str, user_id: str) -> List[Message]:
        changed = self._store.mark_delivered(chat_id, user_id)
        if not changed:
            return []
        updated = self._store.get_messages(changed)
        await self._cache_patch(chat_id, updated)
        for message in updated:
            await self._manager.broadcast(
                chat_id,
                events.MESSAGE_DELIVERED,
                {"messageId": message.id, "deliveredTo": message.deliveredTo},
            )
        return updated

    # =========================================================================
    # Edit / delete
    # =========================================================================

    async def edit_message(self, message_id, requester_id: str, new_text) -> Message:
        """Replace the text of the requester's own text message.

        Raises:
            NotFound: If the message does not exist.
            Forbidden: If the requester is not the sender.
            ValidationError: If the message is deleted or an image, or the
                new text is empty.
        """
        message = self._require_own_message(message_id, requester_id)
        if message.deleted:
            raise ValidationError("Cannot edit a deleted message")
        if message.is_image:
            raise ValidationError("Cannot edit an image message")
        if not isinstance(new_text, str) or not new_text.strip():
            raise ValidationError("Message text is required")

        updated = self._store.update_text(message.id, new_text)
        if updated is None:
            # Deleted between the read and the write
            raise ValidationError("Cannot edit a deleted message")

        await self._cache_patch(updated.chatId, [updated])
        self._chats.touch(updated.chatId)
        await self._manager.broadcast(updated.chatId, events.MESSAGE_EDITED, updated.to_client())
        logger.info(f"[Dispatch] {requester_id} edited {updated.id}")
        return updated

    async def delete_message(self, message_id, requester_id: str) -> Message:
        """Soft-delete the requester's own message.

        Deleting an already-deleted message succeeds without any effect.
        """
        message = self._require_own_message(message_id, requester_id)
        if message.deleted:
            return message

        deleted = self._store.soft_delete(message.id)
        if deleted is None:
            return self._store.get_message(message.id) or message

        chat = self._chats.get_chat(deleted.chatId)
        if chat is not None and chat.latestMessageId == deleted.id:
            self._chats.set_latest_message(
                chat.id, self._store.latest_visible_message_id(chat.id)
            )

        await self._cache_patch(deleted.chatId, [deleted])
        await self._manager.broadcast(
            deleted.chatId, events.MESSAGE_DELETED, {"messageId": deleted.id}
        )
        logger.info(f"[Dispatch] {requester_id} deleted {deleted.id}")
        return deleted

    # =========================================================================
    # Chats
    # =========================================================================

    def get_or_create_chat(self, requester_id: str, user_ids) -> Tuple[Chat, bool]:
        """Find the chat with exactly these participants or create it.

        Returns:
            Tuple of (chat, created).
        """
        if not isinstance(user_ids, (list, tuple)):
            raise ValidationError("userIds must be a list")
        participants = sorted({require_id(user_id, "userIds") for user_id in user_ids})
        if len(participants) < 2:
            raise ValidationError("A chat needs at least two distinct participants")
        if requester_id not in participants:
            raise Forbidden("You must be a participant of the chat")
        chat, created = self._chats.get_or_create(participants)
        if created:
            logger.info(f"[Dispatch] Created chat {chat.id} for {len(participants)} users")
        return chat, created

    def list_chats(self, requester_id: str) -> List[ChatSummary]:
        """The requester's chats, most recently updated first."""
        summaries = []
        for chat in self._chats.list_for_user(requester_id):
            latest = None
            if chat.latestMessageId:
                message = self._store.get_message(chat.latestMessageId)
                latest = message.to_client() if message else None
            summaries.append(ChatSummary(chat=chat, latestMessage=latest))
        return summaries

    # =========================================================================
    # Presence / sessions
    # =========================================================================

    def online_users(self) -> List[str]:
        return self._presence.snapshot()

    async def join(self, session: Session, chat_id) -> None:
        """Subscribe a session to a chat group and reconcile its receipts."""
        chat = self.require_participant(chat_id, session.user_id)
        self._manager.join(session, chat.id)
        await self._manager.send(session, events.JOINED, {"chatId": chat.id})
        logger.info(f"[Dispatch] {session.user_id} joined chat {chat.id}")

        await self._mark_delivered(chat.id, session.user_id)
        await self._mark_read(chat.id, session.user_id)

    async def leave(self, session: Session, chat_id) -> None:
        require_id(chat_id, "chatId")
        self._manager.leave(session, chat_id)
        await self._manager.send(session, events.LEFT, {"chatId": chat_id})

    async def typing(
        self, chat_id, user_id: str, exclude_connection: Optional[str] = None
    ) -> bool:
        """Broadcast a typing indicator, at most once per throttle window.

        Returns:
            True if the indicator was emitted.
        """
        chat = self.require_participant(chat_id, user_id)
        if not await self._throttle.allow(chat.id, user_id):
            return False
        await self._manager.broadcast(
            chat.id,
            events.TYPING,
            {"chatId": chat.id, "userId": user_id},
            exclude_connection=exclude_connection,
        )
        return True

    # =========================================================================
    # Cache maintenance
    # =========================================================================

    async def _cache_append(self, chat_id: str, snapshot: dict) -> None:
        try:
            await self._cache.append(chat_id, snapshot)
        except TransientStoreError as e:
            logger.warning(f"[Cache] Append failed for chat {chat_id}: {e}")
            await self._cache_invalidate(chat_id)

    async def _cache_patch(self, chat_id: str, messages: Sequence[Message]) -> None:
        try:
            await self._cache.patch(chat_id, [m.to_client() for m in messages])
        except TransientStoreError as e:
            logger.warning(f"[Cache] Patch failed for chat {chat_id}: {e}")
            await self._cache_invalidate(chat_id)

    async def _cache_invalidate(self, chat_id: str) -> None:
        try:
            await self._cache.invalidate(chat_id)
        except TransientStoreError as e:
            logger.error(f"[Cache] Could not invalidate chat {chat_id}; entry may be stale: {e}")
