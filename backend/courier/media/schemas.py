"""Pydantic schemas for uploaded chat images.

Images are stored in chat-scoped directories (media/{chat_id}/) with
UUID-based filenames to prevent collisions. Metadata is tracked in DuckDB.
"""
import time
import uuid

from pydantic import BaseModel, Field

ALLOWED_IMAGE_TYPES = {
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
}


class MediaMetadata(BaseModel):
    """Metadata for an uploaded image."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Media ID")
    chat_id: str = Field(..., description="Chat the image was sent to")
    user_id: str = Field(..., description="Uploader user ID")
    original_filename: str = Field(..., description="Original filename")
    stored_filename: str = Field(..., description="Filename on disk (UUID-based)")
    mime_type: str = Field(..., description="MIME type of the image")
    size_bytes: int = Field(..., description="Image size in bytes")
    uploaded_at: float = Field(default_factory=time.time, description="Upload timestamp")
