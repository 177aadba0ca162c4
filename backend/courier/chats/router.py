"""HTTP endpoints for chats.

Endpoints:
    POST /api/chats  - Get or create the chat with exactly the given participants
    GET  /api/chats  - List the caller's chats, most recently active first
"""
import logging

from fastapi import APIRouter, Depends, Response

from courier.auth.dependencies import current_user, get_services
from courier.services import Services

from .schemas import CreateChatRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chats", tags=["chats"])


@router.post("")
async def get_or_create_chat(
    body: CreateChatRequest,
    response: Response,
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
) -> dict:
    """Return 200 with an existing chat, or 201 with a new one."""
    chat, created = services.engine.get_or_create_chat(user_id, body.userIds)
    response.status_code = 201 if created else 200
    return chat.model_dump()


@router.get("")
async def list_chats(
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
) -> list:
    return [summary.model_dump() for summary in services.engine.list_chats(user_id)]
