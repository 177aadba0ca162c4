"""Image storage for image messages.

Handles image bytes on disk and metadata tracking in DuckDB.
Images are stored in: {media_dir}/{chat_id}/{uuid}.{ext}

The dispatch engine only ever sees the resulting media reference; storage
happens before an image message is sent.
"""
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional

from courier.errors import ValidationError
from courier.store.database import Database

from .schemas import ALLOWED_IMAGE_TYPES, MediaMetadata

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS media_metadata (
    id                VARCHAR PRIMARY KEY,
    chat_id           VARCHAR NOT NULL,
    user_id           VARCHAR NOT NULL,
    original_filename VARCHAR NOT NULL,
    stored_filename   VARCHAR NOT NULL,
    mime_type         VARCHAR NOT NULL,
    size_bytes        BIGINT NOT NULL,
    uploaded_at       TIMESTAMP NOT NULL
)
"""


class MediaStore:
    """Service for storing uploaded chat images."""

    def __init__(self, database: Database, media_dir: str, max_bytes: int) -> None:
        self._db = database
        self._media_dir = Path(media_dir)
        self._max_bytes = max_bytes
        self._media_dir.mkdir(parents=True, exist_ok=True)
        self._db.execute(_CREATE_TABLE)

    def _get_chat_dir(self, chat_id: str) -> Path:
        return self._media_dir / chat_id

    def save_image(
        self,
        chat_id: str,
        user_id: str,
        filename: str,
        content: bytes,
        mime_type: str,
    ) -> MediaMetadata:
        """Save an uploaded image to disk and record metadata.

        Raises:
            ValidationError: If the upload is empty, too large or not an image.
        """
        size_bytes = len(content)
        if size_bytes == 0:
            raise ValidationError("Image file is empty")
        if size_bytes > self._max_bytes:
            raise ValidationError(
                f"Image size ({size_bytes} bytes) exceeds limit ({self._max_bytes} bytes)"
            )
        if mime_type not in ALLOWED_IMAGE_TYPES:
            raise ValidationError(f"Unsupported image type: {mime_type}")

        media_id = str(uuid.uuid4())
        ext = Path(filename).suffix.lower() or ""
        stored_filename = f"{media_id}{ext}"

        chat_dir = self._get_chat_dir(chat_id)
        chat_dir.mkdir(parents=True, exist_ok=True)
        file_path = chat_dir / stored_filename
        file_path.write_bytes(content)

        metadata = MediaMetadata(
            id=media_id,
            chat_id=chat_id,
            user_id=user_id,
            original_filename=filename,
            stored_filename=stored_filename,
            mime_type=mime_type,
            size_bytes=size_bytes,
        )
        try:
            self._db.execute(
                """
                INSERT INTO media_metadata
                (id, chat_id, user_id, original_filename, stored_filename,
                 mime_type, size_bytes, uploaded_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    metadata.id,
                    metadata.chat_id,
                    metadata.user_id,
                    metadata.original_filename,
                    metadata.stored_filename,
                    metadata.mime_type,
                    metadata.size_bytes,
                    datetime.fromtimestamp(metadata.uploaded_at),
                ],
            )
        except Exception:
            file_path.unlink(missing_ok=True)
            raise

        logger.info(f"Saved image: {file_path} ({size_bytes} bytes)")
        return metadata

    def discard(self, media_id: str) -> None:
        """Remove an image and its metadata, e.g. when the message carrying it failed."""
        file_path = self.get_media_path(media_id)
        if file_path is not None:
            file_path.unlink(missing_ok=True)
        self._db.execute("DELETE FROM media_metadata WHERE id = ?", [media_id])
        logger.info(f"Discarded image {media_id}")

    def get_media(self, media_id: str) -> Optional[MediaMetadata]:
        """Get image metadata by ID."""
        rows = self._db.execute(
            """
            SELECT id, chat_id, user_id, original_filename, stored_filename,
                   mime_type, size_bytes, uploaded_at
            FROM media_metadata
            WHERE id = ?
            """,
            [media_id],
        )
        if not rows:
            return None
        row = rows[0]
        return MediaMetadata(
            id=row[0],
            chat_id=row[1],
            user_id=row[2],
            original_filename=row[3],
            stored_filename=row[4],
            mime_type=row[5],
            size_bytes=row[6],
            uploaded_at=row[7].timestamp() if row[7] else 0,
        )

    def get_media_path(self, media_id: str) -> Optional[Path]:
        """Get the path on disk for a media ID."""
        metadata = self.get_media(media_id)
        if not metadata:
            return None
        file_path = self._get_chat_dir(metadata.chat_id) / metadata.stored_filename
        if not file_path.exists():
            return None
        return file_path
