"""Ephemeral recent-message cache.

Each chat maps to an ordered list of serialized message snapshots with a TTL
(one hour by default). Entries are opaque: a single message is updated by
reading the whole list, replacing the matching snapshot by ID and writing it
back, which also refreshes the TTL. Concurrent patches of different messages
of the same chat can therefore lose an update (last writer wins); entries
expire regardless, which bounds how long such a snapshot survives.

Backends:
    - MemoryMessageCache: process-local dict, for single-process deployments
      and tests.
    - RedisMessageCache: Redis list per chat, shared by all processes.

All backend failures surface as ``TransientStoreError``.
"""
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from redis.exceptions import RedisError

from courier.errors import TransientStoreError

logger = logging.getLogger(__name__)

# Default time-to-live for a chat's cache entry
DEFAULT_TTL_SECONDS = 3600


def _patch_list(snapshots: List[dict], updates: Iterable[dict]) -> Tuple[List[dict], bool]:
    by_id = {update["id"]: update for update in updates}
    patched = False
    result = []
    for snapshot in snapshots:
        replacement = by_id.get(snapshot.get("id"))
        if replacement is not None:
            result.append(replacement)
            patched = True
        else:
            result.append(snapshot)
    return result, patched


class MessageCache(ABC):
    """Recent-message list per chat with TTL."""

    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        self.ttl_seconds = ttl_seconds

    @abstractmethod
    async def get(self, chat_id: str) -> Optional[List[dict]]:
        """Return the cached snapshots, or None when absent, expired or empty."""

    @abstractmethod
    async def set(self, chat_id: str, messages: List[dict]) -> None:
        """Replace the entry with *messages* and start a fresh TTL."""

    @abstractmethod
    async def append(self, chat_id: str, message: dict) -> bool:
        """Append to an existing entry and refresh its TTL.

        An absent entry is left absent, so the next fetch repopulates the
        full history from the durable store.

        Returns:
            True if the entry existed and was extended.
        """

    @abstractmethod
    async def patch(self, chat_id: str, messages: List[dict]) -> bool:
        """Replace the snapshots whose IDs match *messages*; refresh the TTL.

        Returns:
            True if at least one snapshot was replaced.
        """

    @abstractmethod
    async def invalidate(self, chat_id: str) -> None:
        """Drop the chat's entry."""


class MemoryMessageCache(MessageCache):
    """Process-local cache with monotonic-clock expiry."""

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(ttl_seconds)
        self._clock = clock
        # chat_id -> (expires_at, snapshots)
        self._entries: Dict[str, Tuple[float, List[dict]]] = {}

    def _live(self, chat_id: str) -> Optional[List[dict]]:
        entry = self._entries.get(chat_id)
        if entry is None:
            return None
        expires_at, snapshots = entry
        if self._clock() >= expires_at:
            del self._entries[chat_id]
            return None
        return snapshots

    def _store(self, chat_id: str, snapshots: List[dict]) -> None:
        self._entries[chat_id] = (self._clock() + self.ttl_seconds, snapshots)

    async def get(self, chat_id: str) -> Optional[List[dict]]:
        snapshots = self._live(chat_id)
        if not snapshots:
            return None
        return [dict(snapshot) for snapshot in snapshots]

    async def set(self, chat_id: str, messages: List[dict]) -> None:
        self._store(chat_id, [dict(message) for message in messages])

    async def append(self, chat_id: str, message: dict) -> bool:
        snapshots = self._live(chat_id)
        if snapshots is None:
            return False
        self._store(chat_id, snapshots + [dict(message)])
        return True

    async def patch(self, chat_id: str, messages: List[dict]) -> bool:
        snapshots = self._live(chat_id)
        if snapshots is None:
            return False
        patched_list, patched = _patch_list(snapshots, [dict(m) for m in messages])
        self._store(chat_id, patched_list)
        return patched

    async def invalidate(self, chat_id: str) -> None:
        self._entries.pop(chat_id, None)


class RedisMessageCache(MessageCache):
    """Redis list of JSON snapshots per chat, shared across processes."""

    KEY_PREFIX = "courier:chat-messages:"

    def __init__(self, redis_client, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        super().__init__(ttl_seconds)
        self._redis = redis_client

    def _key(self, chat_id: str) -> str:
        return f"{self.KEY_PREFIX}{chat_id}"

    async def get(self, chat_id: str) -> Optional[List[dict]]:
        try:
            raw = await self._redis.lrange(self._key(chat_id), 0, -1)
        except RedisError as exc:
            raise TransientStoreError("Message cache unavailable") from exc
        if not raw:
            return None
        return [json.loads(item) for item in raw]

    async def set(self, chat_id: str, messages: List[dict]) -> None:
        key = self._key(chat_id)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                if messages:
                    pipe.rpush(key, *[json.dumps(m) for m in messages])
                    pipe.expire(key, self.ttl_seconds)
                await pipe.execute()
        except RedisError as exc:
            raise TransientStoreError("Message cache unavailable") from exc

    async def append(self, chat_id: str, message: dict) -> bool:
        key = self._key(chat_id)
        try:
            # RPUSHX only extends an existing list
            length = await self._redis.rpushx(key, json.dumps(message))
            if length:
                await self._redis.expire(key, self.ttl_seconds)
        except RedisError as exc:
            raise TransientStoreError("Message cache unavailable") from exc
        return bool(length)

    async def patch(self, chat_id: str, messages: List[dict]) -> bool:
        key = self._key(chat_id)
        try:
            raw = await self._redis.lrange(key, 0, -1)
            if not raw:
                return False
            snapshots = [json.loads(item) for item in raw]
            patched_list, patched = _patch_list(snapshots, messages)
            if not patched:
                return False
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                pipe.rpush(key, *[json.dumps(m) for m in patched_list])
                pipe.expire(key, self.ttl_seconds)
                await pipe.execute()
        except RedisError as exc:
            raise TransientStoreError("Message cache unavailable") from exc
        return True

    async def invalidate(self, chat_id: str) -> None:
        try:
            await self._redis.delete(self._key(chat_id))
        except RedisError as exc:
            raise TransientStoreError("Message cache unavailable") from exc
