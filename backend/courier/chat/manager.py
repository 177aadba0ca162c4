"""WebSocket connection manager for chat broadcast groups.

Tracks the authenticated sessions attached to this process and which chats
each of them has joined, and fans events out to those groups.

Key features:
    - One Session per WebSocket, identified by a server-assigned connection ID
    - Chat broadcast groups (a session may join many chats)
    - Broadcasts relayed through the event bridge so sessions on every
      process receive them
    - Concurrent delivery with asyncio.gather()
    - FIFO delivery per chat (a per-chat lock serializes broadcasts)
    - Automatic dead connection cleanup
    - Presence snapshot re-broadcast on every presence change

Thread Safety:
    This implementation is designed for async/await usage with a single event loop.
    It is NOT thread-safe for concurrent access from multiple threads.
"""
import asyncio
import logging
import uuid
from typing import Dict, Iterable, List, Optional, Set

from fastapi import WebSocket

from . import events
from .presence import PresenceSet
from .pubsub import EventBridge

logger = logging.getLogger(__name__)


# =============================================================================
# Session
# =============================================================================


class Session:
    """One authenticated WebSocket connection.

    Attributes:
        websocket: The underlying connection.
        user_id: Verified identity of the connected user.
        connection_id: Server-assigned identifier, unique per connection.
        chats: Chats this session has joined.
    """

    def __init__(self, websocket: WebSocket, user_id: str) -> None:
        self.websocket = websocket
        self.user_id = user_id
        self.connection_id = str(uuid.uuid4())
        self.chats: Set[str] = set()

    def __repr__(self) -> str:
        return f"Session(user_id={self.user_id!r}, connection_id={self.connection_id!r})"


# =============================================================================
# Connection Manager
# =============================================================================


class ConnectionManager:
    """Manages this process's sessions and their chat groups.

    Attributes:
        sessions: connection_id -> Session.
        chat_members: chat_id -> connection IDs joined to it.
    """

    def __init__(
        self,
        bridge: EventBridge,
        presence: PresenceSet,
        chat_channel: str = "courier:chat-events",
    ) -> None:
        self._bridge = bridge
        self._presence = presence
        self._chat_channel = chat_channel
        self.sessions: Dict[str, Session] = {}
        self.chat_members: Dict[str, Set[str]] = {}
        self._chat_locks: Dict[str, asyncio.Lock] = {}

        bridge.subscribe(chat_channel, self._on_chat_event)
        presence.subscribe(self.broadcast_online_users)

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    def register(self, session: Session) -> None:
        self.sessions[session.connection_id] = session
        logger.info(
            f"[Manager] Registered {session.user_id} ({session.connection_id}); "
            f"{len(self.sessions)} local sessions"
        )

    def unregister(self, session: Session) -> None:
        """Remove a session from every chat group it joined."""
        for chat_id in list(session.chats):
            self.leave(session, chat_id)
        self.sessions.pop(session.connection_id, None)
        logger.info(f"[Manager] Unregistered {session.user_id} ({session.connection_id})")

    def join(self, session: Session, chat_id: str) -> None:
        self.chat_members.setdefault(chat_id, set()).add(session.connection_id)
        session.chats.add(chat_id)

    def leave(self, session: Session, chat_id: str) -> None:
        session.chats.discard(chat_id)
        members = self.chat_members.get(chat_id)
        if members is None:
            return
        members.discard(session.connection_id)
        if not members:
            del self.chat_members[chat_id]
            self._chat_locks.pop(chat_id, None)

    def get_group_size(self, chat_id: str) -> int:
        return len(self.chat_members.get(chat_id, ()))

    # =========================================================================
    # Broadcasting
    # =========================================================================

    async def broadcast(
        self,
        chat_id: str,
        event: str,
        data,
        exclude_connection: Optional[str] = None,
    ) -> None:
        """Send an event to every session, on any process, joined to *chat_id*.

        Args:
            chat_id: Chat whose group receives the event.
            event: Event name.
            data: JSON-serializable payload.
            exclude_connection: Connection ID to skip (e.g. the typing user).
        """
        await self._bridge.publish(
            self._chat_channel,
            {
                "chatId": chat_id,
                "frame": events.frame(event, data),
                "exclude": exclude_connection,
            },
        )

    async def _on_chat_event(self, payload: dict) -> None:
        await self.deliver(payload["chatId"], payload["frame"], payload.get("exclude"))

    async def deliver(self, chat_id: str, message: dict, exclude: Optional[str] = None) -> None:
        """Deliver a frame to the local sessions of a chat group, in order."""
        lock = self._chat_locks.setdefault(chat_id, asyncio.Lock())
        async with lock:
            connection_ids = [
                cid for cid in self.chat_members.get(chat_id, ()) if cid != exclude
            ]
            await self._send_many(connection_ids, message)

    async def broadcast_online_users(self) -> None:
        """Send the full presence snapshot to every local session."""
        snapshot = self._presence.snapshot()
        await self._send_many(list(self.sessions), events.frame(events.ONLINE_USERS, snapshot))

    async def send(self, session: Session, event: str, data) -> bool:
        """Send an event to a single session."""
        return await self._safe_send(session.websocket, events.frame(event, data))

    async def _send_many(self, connection_ids: Iterable[str], message: dict) -> None:
        sessions = [self.sessions[cid] for cid in connection_ids if cid in self.sessions]
        if not sessions:
            return

        # Send to all connections concurrently
        results = await asyncio.gather(
            *[self._safe_send(s.websocket, message) for s in sessions],
            return_exceptions=True
        )

        # Remove failed connections
        failed = [s for s, success in zip(sessions, results) if success is not True]
        self._cleanup_sessions(failed)

    async def _safe_send(self, connection: WebSocket, message: dict) -> bool:
        """Send a message to a WebSocket connection with error handling.

        Returns:
            True if successful, False if connection failed.
        """
        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False

    def _cleanup_sessions(self, failed: List[Session]) -> None:
        """Drop dead sessions from their chat groups.

        Presence is released by the session's own handler when its receive
        loop ends.
        """
        for session in failed:
            for chat_id in list(session.chats):
                self.leave(session, chat_id)
            logger.debug(f"Removed dead connection {session.connection_id}")
