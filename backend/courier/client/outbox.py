"""Receiving-side reconciliation of optimistic sends.

A client shows its own message immediately under a temporary ID (``tempId``)
and later receives the authoritative copy twice over: in the send response
and in the ``message received`` broadcast. ``OptimisticOutbox`` swaps the
provisional copy for the server's exactly once and ignores every later event
for the same ``tempId`` or message ID.

The recently-seen set is bounded by both size (LRU eviction) and age, so a
long-running client neither grows without bound nor forgets a token while a
duplicate may still arrive.
"""
import time
import uuid
from collections import OrderedDict
from typing import Callable, List, Optional

# Default bounds for the recently-seen set
DEFAULT_MAX_SIZE = 1000
DEFAULT_MAX_AGE_SECONDS = 300.0

REPLACED = "replaced"
APPENDED = "appended"


class RecentlySeen:
    """Set of recently seen tokens with size and age bounds."""

    def __init__(
        self,
        max_size: int = DEFAULT_MAX_SIZE,
        max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self._max_size = max_size
        self._max_age = max_age_seconds
        self._clock = clock
        self._seen: "OrderedDict[str, float]" = OrderedDict()

    def _expire(self) -> None:
        cutoff = self._clock() - self._max_age
        while self._seen:
            token, seen_at = next(iter(self._seen.items()))
            if seen_at > cutoff:
                break
            self._seen.popitem(last=False)

    def __contains__(self, token: str) -> bool:
        self._expire()
        return token in self._seen

    def __len__(self) -> int:
        self._expire()
        return len(self._seen)

    def add(self, token: str) -> bool:
        """Record *token*.

        Returns:
            True if it was not already present.
        """
        self._expire()
        if token in self._seen:
            self._seen.move_to_end(token)
            self._seen[token] = self._clock()
            return False
        self._seen[token] = self._clock()
        # Evict oldest (LRU)
        while len(self._seen) > self._max_size:
            self._seen.popitem(last=False)
        return True


class OptimisticOutbox:
    """Local message list of one chat with optimistic-send reconciliation."""

    def __init__(self, recently_seen: Optional[RecentlySeen] = None) -> None:
        self._messages: List[dict] = []
        self._seen = recently_seen or RecentlySeen()

    @property
    def messages(self) -> List[dict]:
        return list(self._messages)

    def stage(self, chat_id: str, sender_id: str, text: str) -> dict:
        """Add a provisional copy of an outgoing message.

        Returns:
            The provisional message; send its ``tempId`` with the request.
        """
        temp_id = str(uuid.uuid4())
        pending = {
            "id": None,
            "tempId": temp_id,
            "chatId": chat_id,
            "senderId": sender_id,
            "text": text,
            "pending": True,
        }
        self._messages.append(pending)
        return pending

    def reconcile(self, message: dict) -> Optional[str]:
        """Apply an authoritative message from a send response or broadcast.

        Returns:
            ``"replaced"`` if it replaced a provisional copy, ``"appended"`` if
            it is a new message, or None if it was a duplicate.
        """
        message_id = message.get("id")
        temp_id = message.get("tempId")

        if message_id in self._seen or (temp_id and temp_id in self._seen):
            return None
        if message_id:
            self._seen.add(message_id)
        if temp_id:
            self._seen.add(temp_id)

        if temp_id:
            for index, local in enumerate(self._messages):
                if local.get("pending") and local.get("tempId") == temp_id:
                    self._messages[index] = dict(message)
                    return REPLACED

        if any(local.get("id") == message_id for local in self._messages):
            return None
        self._messages.append(dict(message))
        return APPENDED

    def fail(self, temp_id: str) -> bool:
        """Drop a provisional copy whose send failed."""
        for index, local in enumerate(self._messages):
            if local.get("pending") and local.get("tempId") == temp_id:
                del self._messages[index]
                return True
        return False
