"""Service container wiring Courier's components from an AppConfig.

Everything the routers need hangs off one ``Services`` instance stored on
``app.state.services``; nothing is a module-level singleton, so tests can
build as many independent instances as they like.
"""
import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Optional

import redis.asyncio as aioredis

from courier.auth.service import TokenVerifier
from courier.chat.cache import MemoryMessageCache, MessageCache, RedisMessageCache
from courier.chat.dispatch import DispatchEngine
from courier.chat.manager import ConnectionManager
from courier.chat.presence import (
    LocalPresenceRegistry,
    PresenceRegistry,
    PresenceSet,
    RedisPresenceRegistry,
)
from courier.chat.pubsub import EventBridge, LocalBridge, RedisBridge
from courier.chat.typing_throttle import TypingThrottle
from courier.chats.service import ChatDirectory
from courier.config import EXAMPLE_SECRET_KEY, AppConfig
from courier.media.service import MediaStore
from courier.store.database import Database
from courier.store.service import MessageStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: AppConfig
    database: Database
    store: MessageStore
    chats: ChatDirectory
    media: MediaStore
    cache: MessageCache
    bridge: EventBridge
    presence: PresenceSet
    manager: ConnectionManager
    engine: DispatchEngine
    tokens: TokenVerifier
    redis: Optional[aioredis.Redis] = None
    _listener: Optional[asyncio.Task] = field(default=None, repr=False)

    async def start(self) -> None:
        """Start the process-lifetime presence listener."""
        if self._listener is None:
            self._listener = asyncio.create_task(self.presence.run())
        logger.info(
            f"[Services] Started (cache={self.config.cache.backend}, "
            f"presence={self.config.presence.backend})"
        )

    async def close(self) -> None:
        await self.bridge.close()
        if self._listener is not None:
            self._listener.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listener
            self._listener = None
        if self.redis is not None:
            await self.redis.aclose()
        self.database.close()
        logger.info("[Services] Closed")


def build_services(config: AppConfig) -> Services:
    """Construct every component for *config*.

    Raises:
        ValueError: If no auth secret key is configured, or the example
            placeholder is still in place.
    """
    secret_key = config.secrets.auth.secret_key
    if not secret_key or secret_key == EXAMPLE_SECRET_KEY:
        raise ValueError("auth.secret_key must be set in courier.secrets.yaml")

    redis_client = None
    if config.uses_redis:
        redis_client = aioredis.from_url(
            config.redis.url,
            password=config.secrets.redis.password or None,
        )
        logger.info(f"[Services] Using Redis at {config.redis.url}")

    database = Database(config.storage.db_path)
    store = MessageStore(database)
    chats = ChatDirectory(database)
    media = MediaStore(database, config.storage.media_dir, config.storage.max_image_bytes)

    if config.cache.backend == "redis":
        cache: MessageCache = RedisMessageCache(redis_client, ttl_seconds=config.cache.ttl_seconds)
    else:
        cache = MemoryMessageCache(ttl_seconds=config.cache.ttl_seconds)

    if config.presence.backend == "redis":
        bridge: EventBridge = RedisBridge(
            redis_client, retry_interval_seconds=config.presence.retry_interval_seconds
        )
        registry: PresenceRegistry = RedisPresenceRegistry(redis_client)
    else:
        bridge = LocalBridge()
        registry = LocalPresenceRegistry()

    presence = PresenceSet(registry, bridge, channel=config.presence.channel)
    manager = ConnectionManager(bridge, presence, chat_channel=config.presence.chat_channel)
    throttle = TypingThrottle(config.typing.throttle_ms, redis_client=redis_client)
    engine = DispatchEngine(store, chats, cache, presence, manager, throttle)

    return Services(
        config=config,
        database=database,
        store=store,
        chats=chats,
        media=media,
        cache=cache,
        bridge=bridge,
        presence=presence,
        manager=manager,
        engine=engine,
        tokens=TokenVerifier(secret_key),
        redis=redis_client,
    )
