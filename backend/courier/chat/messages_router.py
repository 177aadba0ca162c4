"""HTTP endpoints for messages.

Endpoints:
    POST   /api/messages                  - Send a text message
    POST   /api/messages/image            - Upload an image and send it
    GET    /api/messages/online-users     - Presence snapshot
    GET    /api/messages/{chatId}         - Fetch a chat's messages (marks them read)
    POST   /api/messages/{chatId}/read    - Mark a chat read
    PUT    /api/messages/{messageId}      - Edit own text message
    DELETE /api/messages/{messageId}      - Soft-delete own message

All endpoints require ``Authorization: Bearer <token>``.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile

from courier.auth.dependencies import current_user, get_services
from courier.services import Services
from courier.store.schemas import EditMessageRequest, SendMessageRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/messages", tags=["messages"])


@router.post("", status_code=201)
async def send_message(
    body: SendMessageRequest,
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
) -> dict:
    message = await services.engine.send(body.chatId, user_id, body.content, body.tempId)
    return message.to_client()


@router.post("/image", status_code=201)
async def send_image(
    chatId: str = Form(...),
    tempId: Optional[str] = Form(None),
    file: UploadFile = File(...),
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
) -> dict:
    """Store an uploaded image and send it as an image message.

    Membership is checked before anything is written to disk.
    """
    services.engine.require_participant(chatId, user_id)

    content = await file.read()
    metadata = services.media.save_image(
        chat_id=chatId,
        user_id=user_id,
        filename=file.filename or "image",
        content=content,
        mime_type=file.content_type or "application/octet-stream",
    )
    try:
        message = await services.engine.send_image(
            chatId, user_id, f"/media/{metadata.id}", tempId
        )
    except Exception:
        services.media.discard(metadata.id)
        raise
    return message.to_client()


# Must be registered before /{chatId}
@router.get("/online-users")
async def online_users(
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
) -> dict:
    return {"onlineUsers": services.engine.online_users()}


@router.get("/{chatId}")
async def fetch_messages(
    chatId: str,
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
) -> List[dict]:
    return await services.engine.fetch_messages(chatId, user_id)


@router.post("/{chatId}/read")
async def mark_read(
    chatId: str,
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
) -> dict:
    updated = await services.engine.mark_read(chatId, user_id)
    return {"updated": updated}


@router.put("/{messageId}")
async def edit_message(
    messageId: str,
    body: EditMessageRequest,
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
) -> dict:
    message = await services.engine.edit_message(messageId, user_id, body.text)
    return {"message": message.to_client()}


@router.delete("/{messageId}")
async def delete_message(
    messageId: str,
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
) -> dict:
    message = await services.engine.delete_message(messageId, user_id)
    return {"messageId": message.id}
