"""Download endpoint for uploaded chat images."""
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import FileResponse

from courier.auth.dependencies import current_user, get_services
from courier.errors import Forbidden, NotFound
from courier.services import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/media", tags=["media"])


@router.get("/{media_id}")
async def download_image(
    media_id: str,
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
):
    """Download an image by ID; only participants of its chat may read it.

    Raises:
        NotFound: If the image or its file is missing.
        Forbidden: If the caller is not a participant of the image's chat.
    """
    metadata = services.media.get_media(media_id)
    if not metadata:
        raise NotFound("Image not found")
    if not services.chats.is_participant(metadata.chat_id, user_id):
        raise Forbidden("You are not a participant of this chat")

    file_path = services.media.get_media_path(media_id)
    if not file_path:
        raise NotFound("Image not found on disk")

    return FileResponse(
        path=file_path,
        filename=metadata.original_filename,
        media_type=metadata.mime_type,
    )
