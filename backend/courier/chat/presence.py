"""Presence set: which users have at least one live connection.

A user is online while any of their connections, on any server process, is
open. The authoritative connection sets live in a registry (process-local or
Redis); every status change is published on the presence channel, and each
process refreshes its mirrored view of the online users when it receives one.

Reads (``snapshot``) never touch the registry: they combine the mirror with
the users connected to this process. If the registry or the channel is
unavailable, presence degrades to process-local visibility and the
connection path keeps working.
"""
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, List, Set

from redis.exceptions import RedisError

from courier.errors import TransientStoreError

from .pubsub import EventBridge

logger = logging.getLogger(__name__)

PresenceCallback = Callable[[], Awaitable[None]]

ONLINE = "online"
OFFLINE = "offline"


# =============================================================================
# Registries
# =============================================================================


class PresenceRegistry(ABC):
    """Shared user -> connection IDs mapping."""

    @abstractmethod
    async def add(self, user_id: str, connection_id: str) -> None:
        """Register a connection; idempotent."""

    @abstractmethod
    async def remove(self, user_id: str, connection_id: str) -> bool:
        """Unregister a connection.

        Returns:
            True if the user has no connections left anywhere.
        """

    @abstractmethod
    async def members(self) -> Set[str]:
        """All users with at least one connection."""


class LocalPresenceRegistry(PresenceRegistry):
    def __init__(self) -> None:
        self._connections: Dict[str, Set[str]] = {}

    async def add(self, user_id: str, connection_id: str) -> None:
        self._connections.setdefault(user_id, set()).add(connection_id)

    async def remove(self, user_id: str, connection_id: str) -> bool:
        connections = self._connections.get(user_id)
        if connections is None:
            return True
        connections.discard(connection_id)
        if connections:
            return False
        del self._connections[user_id]
        return True

    async def members(self) -> Set[str]:
        return set(self._connections)


# Remove a connection and, atomically, the user once none remain
_REMOVE_SCRIPT = """
redis.call('SREM', KEYS[1], ARGV[2])
if redis.call('SCARD', KEYS[1]) == 0 then
    redis.call('SREM', KEYS[2], ARGV[1])
    return 1
end
return 0
"""


class RedisPresenceRegistry(PresenceRegistry):
    """Connection sets in Redis, shared by every process.

    Keys:
        courier:presence:users            set of online user IDs
        courier:presence:conn:<userId>    set of that user's connection IDs
    """

    USERS_KEY = "courier:presence:users"
    CONNECTIONS_PREFIX = "courier:presence:conn:"

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    def _connections_key(self, user_id: str) -> str:
        return f"{self.CONNECTIONS_PREFIX}{user_id}"

    async def add(self, user_id: str, connection_id: str) -> None:
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.sadd(self._connections_key(user_id), connection_id)
                pipe.sadd(self.USERS_KEY, user_id)
                await pipe.execute()
        except RedisError as exc:
            raise TransientStoreError("Presence registry unavailable") from exc

    async def remove(self, user_id: str, connection_id: str) -> bool:
        try:
            gone = await self._redis.eval(
                _REMOVE_SCRIPT,
                2,
                self._connections_key(user_id),
                self.USERS_KEY,
                user_id,
                connection_id,
            )
        except RedisError as exc:
            raise TransientStoreError("Presence registry unavailable") from exc
        return bool(gone)

    async def members(self) -> Set[str]:
        try:
            raw = await self._redis.smembers(self.USERS_KEY)
        except RedisError as exc:
            raise TransientStoreError("Presence registry unavailable") from exc
        return {m.decode("utf-8") if isinstance(m, bytes) else m for m in raw}


# =============================================================================
# Presence Set
# =============================================================================


class PresenceSet:
    """Online users, converged across processes through the event bridge."""

    def __init__(
        self,
        registry: PresenceRegistry,
        bridge: EventBridge,
        channel: str = "courier:presence",
    ) -> None:
        self._registry = registry
        self._bridge = bridge
        self._channel = channel
        # Connections attached to this process: user_id -> connection IDs
        self._local: Dict[str, Set[str]] = {}
        self._mirror: Set[str] = set()
        self._callbacks: List[PresenceCallback] = []
        bridge.subscribe(channel, self._on_status_event)

    def subscribe(self, callback: PresenceCallback) -> None:
        """Invoke *callback* after every received status event."""
        self._callbacks.append(callback)

    def snapshot(self) -> List[str]:
        """Sorted IDs of online users."""
        return sorted(self._mirror | set(self._local))

    def is_online(self, user_id: str) -> bool:
        return user_id in self._local or user_id in self._mirror

    async def mark_online(self, user_id: str, connection_id: str) -> None:
        """Register a connection for *user_id*; safe to repeat."""
        self._local.setdefault(user_id, set()).add(connection_id)
        try:
            await self._registry.add(user_id, connection_id)
        except TransientStoreError as e:
            logger.warning(f"[Presence] Registry unavailable, {user_id} is online locally only: {e}")
        logger.info(f"[Presence] {user_id} online (connection {connection_id})")
        await self._bridge.publish(self._channel, {"userId": user_id, "status": ONLINE})

    async def mark_offline(self, user_id: str, connection_id: str) -> None:
        """Drop a connection; the user goes offline with their last one."""
        connections = self._local.get(user_id)
        if connections is not None:
            connections.discard(connection_id)
            if not connections:
                del self._local[user_id]

        try:
            gone = await self._registry.remove(user_id, connection_id)
        except TransientStoreError as e:
            logger.warning(f"[Presence] Registry unavailable while removing {user_id}: {e}")
            gone = user_id not in self._local

        if not gone:
            logger.debug(f"[Presence] {user_id} still has open connections")
            return

        self._mirror.discard(user_id)
        logger.info(f"[Presence] {user_id} offline")
        await self._bridge.publish(self._channel, {"userId": user_id, "status": OFFLINE})

    async def refresh(self) -> None:
        """Reload the mirror from the registry."""
        try:
            self._mirror = await self._registry.members()
        except TransientStoreError as e:
            logger.warning(f"[Presence] Could not refresh mirror, using local view: {e}")
            self._mirror = set(self._local)

    async def run(self) -> None:
        """Listen on the shared channel for the lifetime of the process."""
        await self.refresh()
        await self._bridge.run()

    async def _on_status_event(self, payload: dict) -> None:
        logger.debug(f"[Presence] Status event: {payload}")
        await self.refresh()
        for callback in self._callbacks:
            try:
                await callback()
            except Exception as e:
                logger.error(f"[Presence] Callback failed: {e}", exc_info=True)
