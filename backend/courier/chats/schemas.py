"""Pydantic schemas for chats and their participant sets."""
import time
import uuid
from typing import List, Optional

from pydantic import BaseModel, Field


class Chat(BaseModel):
    """A conversation with a fixed participant set.

    Attributes:
        id: Unique chat identifier.
        participants: Sorted participant user IDs (at least two).
        latestMessageId: Most recent non-deleted message, for listings.
        createdAt: Unix timestamp of creation.
        updatedAt: Unix timestamp of the last message activity.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Chat ID")
    participants: List[str] = Field(..., min_length=2, description="Participant user IDs")
    latestMessageId: Optional[str] = Field(default=None, description="Latest visible message")
    createdAt: float = Field(default_factory=time.time)
    updatedAt: float = Field(default_factory=time.time)

    def has_participant(self, user_id: str) -> bool:
        return user_id in self.participants


class CreateChatRequest(BaseModel):
    """Body of POST /api/chats."""
    userIds: List[str] = Field(..., description="Participant user IDs (two or more)")


class ChatSummary(BaseModel):
    """A chat as listed for one user, with its latest message inlined."""
    chat: Chat
    latestMessage: Optional[dict] = None
