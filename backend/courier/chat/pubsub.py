"""Publish/subscribe bridge between server processes.

Presence status events and chat broadcast events travel over named channels.
Handlers subscribed to a channel run once for every payload published on it,
in publication order, in every process.

Bridges:
    - LocalBridge: in-process delivery only (single process, tests).
    - RedisBridge: Redis pub/sub. When a publish fails the payload is
      delivered to local handlers only, so a Redis outage degrades the
      system to process-local visibility instead of failing callers.
"""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, List

from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

Handler = Callable[[dict], Awaitable[None]]


class EventBridge(ABC):
    """Channel-based fan-out of JSON payloads."""

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = {}

    def subscribe(self, channel: str, handler: Handler) -> None:
        self._handlers.setdefault(channel, []).append(handler)

    @property
    def channels(self) -> List[str]:
        return list(self._handlers)

    async def dispatch_local(self, channel: str, payload: dict) -> None:
        """Run every handler of *channel* in subscription order.

        A failing handler is logged and does not stop the others.
        """
        for handler in self._handlers.get(channel, []):
            try:
                await handler(payload)
            except Exception as e:
                logger.error(f"[PubSub] Handler for {channel} failed: {e}", exc_info=True)

    @abstractmethod
    async def publish(self, channel: str, payload: dict) -> None:
        """Deliver *payload* to the channel's handlers in every process."""

    @abstractmethod
    async def run(self) -> None:
        """Listen for payloads published by other processes until closed."""

    async def close(self) -> None:
        return None


class LocalBridge(EventBridge):
    """Bridge for a single process: publishing calls the handlers directly."""

    async def publish(self, channel: str, payload: dict) -> None:
        await self.dispatch_local(channel, payload)

    async def run(self) -> None:
        # Nothing to listen to
        return None


class RedisBridge(EventBridge):
    """Redis pub/sub bridge with a reconnecting listener.

    Payloads published by this process come back through the subscription,
    so handlers run exactly once per publish while Redis is healthy.
    """

    def __init__(self, redis_client, retry_interval_seconds: float = 5.0) -> None:
        super().__init__()
        self._redis = redis_client
        self._retry_interval = retry_interval_seconds
        self._closed = asyncio.Event()

    async def publish(self, channel: str, payload: dict) -> None:
        try:
            await self._redis.publish(channel, json.dumps(payload))
        except RedisError as e:
            logger.warning(
                f"[PubSub] Publish to {channel} failed, delivering locally only: {e}"
            )
            await self.dispatch_local(channel, payload)

    async def run(self) -> None:
        while not self._closed.is_set():
            pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
            try:
                await pubsub.subscribe(*self.channels)
                logger.info(f"[PubSub] Listening on {', '.join(self.channels)}")
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    await self._handle(message)
            except RedisError as e:
                logger.warning(
                    f"[PubSub] Listener lost connection ({e}); "
                    f"retrying in {self._retry_interval}s"
                )
            finally:
                await pubsub.aclose()

            try:
                await asyncio.wait_for(self._closed.wait(), timeout=self._retry_interval)
            except asyncio.TimeoutError:
                pass

    async def _handle(self, message: dict) -> None:
        channel = message["channel"]
        if isinstance(channel, bytes):
            channel = channel.decode("utf-8")
        try:
            payload = json.loads(message["data"])
        except (TypeError, ValueError):
            logger.warning(f"[PubSub] Dropping malformed payload on {channel}")
            return
        await self.dispatch_local(channel, payload)

    async def close(self) -> None:
        self._closed.set()
