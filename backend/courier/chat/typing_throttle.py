"""Rate limit for typing indicators: one emission per interval per user and chat.

With a Redis client the window is shared by all processes (``SET NX PX``);
without one, or while Redis is unreachable, it is tracked in-process.
"""
import logging
import time
from typing import Callable, Dict, Optional, Tuple

from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

# Prune the local window table once it grows past this many pairs
_PRUNE_THRESHOLD = 1024


class TypingThrottle:
    KEY_PREFIX = "courier:typing:"

    def __init__(
        self,
        interval_ms: int = 500,
        redis_client=None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._interval = interval_ms / 1000.0
        self._interval_ms = interval_ms
        self._redis = redis_client
        self._clock = clock
        self._last: Dict[Tuple[str, str], float] = {}

    async def allow(self, chat_id: str, user_id: str) -> bool:
        """True if a typing event for (chat, user) may be emitted now."""
        if self._redis is not None:
            try:
                acquired = await self._redis.set(
                    f"{self.KEY_PREFIX}{chat_id}:{user_id}", "1", px=self._interval_ms, nx=True
                )
                return bool(acquired)
            except RedisError as e:
                logger.debug(f"[Typing] Redis unavailable, throttling locally: {e}")
        return self._allow_local(chat_id, user_id)

    def _allow_local(self, chat_id: str, user_id: str) -> bool:
        now = self._clock()
        key = (chat_id, user_id)
        last = self._last.get(key)
        if last is not None and now - last < self._interval:
            return False
        self._last[key] = now
        if len(self._last) > _PRUNE_THRESHOLD:
            self._last = {
                k: t for k, t in self._last.items() if now - t < self._interval
            }
        return True
