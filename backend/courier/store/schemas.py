"""Pydantic schemas for persisted chat messages.

A message carries exactly one content payload: ``text`` or ``imageUrl``.
Read and delivery receipts are append-only sets; ``readBy`` always starts
with the sender.

These schemas are used by:
    - MessageStore: DuckDB storage layer
    - DispatchEngine: fan-out payloads and cache snapshots
    - /api/messages: request and response bodies
"""
import time
import uuid
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class ReceiptKind(str, Enum):
    """Kinds of per-user receipts recorded against a message.

    Attributes:
        DELIVERED: The message reached an online recipient's client.
        READ: The recipient has viewed the message.
    """
    DELIVERED = "delivered"
    READ = "read"


class Message(BaseModel):
    """Complete message with all metadata.

    Attributes:
        id: Server-assigned unique identifier.
        chatId: Chat this message belongs to.
        senderId: User who sent the message.
        text: Text body (None for image messages and deleted messages).
        imageUrl: Image reference (None for text messages and deleted messages).
        createdAt: Unix timestamp of creation.
        updatedAt: Unix timestamp of the last edit or delete.
        edited: True once the text has been edited.
        deleted: True once soft-deleted; content is suppressed from reads.
        readBy: Users who have read the message, sender first.
        deliveredTo: Users the message was delivered to.
        tempId: Client correlation token from the optimistic send, if any.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Message ID")
    chatId: str = Field(..., description="Chat ID")
    senderId: str = Field(..., description="Sender user ID")
    text: Optional[str] = Field(default=None, description="Text content")
    imageUrl: Optional[str] = Field(default=None, description="Image reference")
    createdAt: float = Field(default_factory=time.time, description="Creation time")
    updatedAt: float = Field(default_factory=time.time, description="Last update time")
    edited: bool = False
    deleted: bool = False
    readBy: List[str] = Field(default_factory=list)
    deliveredTo: List[str] = Field(default_factory=list)
    tempId: Optional[str] = Field(default=None, description="Client correlation token")

    @model_validator(mode="after")
    def _one_payload(self) -> "Message":
        if not self.deleted and (self.text is None) == (self.imageUrl is None):
            raise ValueError("a message must have exactly one of text or imageUrl")
        return self

    @property
    def is_image(self) -> bool:
        return self.imageUrl is not None

    def to_client(self) -> dict:
        """Serialize for clients and the cache; deleted content is suppressed."""
        data = self.model_dump()
        if self.deleted:
            data["text"] = None
            data["imageUrl"] = None
        return data


class SendMessageRequest(BaseModel):
    """Body of POST /api/messages."""
    chatId: str = Field(..., description="Chat to send to")
    content: str = Field(..., description="Message text")
    tempId: Optional[str] = Field(default=None, max_length=128, description="Client correlation token")


class EditMessageRequest(BaseModel):
    """Body of PUT /api/messages/{messageId}."""
    text: str = Field(..., description="Replacement text")
