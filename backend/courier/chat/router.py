"""WebSocket endpoint for real-time chat.

Protocol Flow:
    1. Client connects to /ws?token=...&userId=... (or with an
       ``Authorization: Bearer`` header). A missing or invalid token, or a
       token issued for another user, closes the socket with code 4401
       before it is accepted.
    2. Server sends ``connected {userId, connectionId}`` and then the
       ``onlineUsers`` snapshot; every other session receives a refreshed
       snapshot.
    3. Client sends ``join chat {chatId}``
       -> Server replies ``joined {chatId}`` and reconciles delivery and
          read receipts for that chat.
    4. Client sends ``send message {chatId, content, tempId}``
       -> Server broadcasts ``message received`` to the chat group.
    5. Client sends ``mark read {chatId}`` / ``typing {chatId}`` /
       ``leave chat {chatId}``.
    6. On disconnect the session leaves every group and its presence is
       released.

Frames are ``{"type": <event>, "data": {...}}``; a flat
``{"type": <event>, "chatId": ...}`` is accepted from clients too. Failures
are answered to the originating session only, as ``error {kind, message}``.
"""
import json
import logging
from typing import Optional

import anyio
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from courier.auth.service import bearer_token
from courier.errors import AuthenticationError, CourierError, Forbidden, ValidationError, require_id

from . import events
from .manager import Session

logger = logging.getLogger(__name__)

router = APIRouter()

# Close code for a failed handshake authentication
WS_UNAUTHORIZED = 4401


def _payload(data: dict) -> dict:
    inner = data.get("data")
    return inner if isinstance(inner, dict) else data


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Identity token"),
    userId: Optional[str] = Query(None, description="User the token was issued for"),
) -> None:
    """WebSocket endpoint for one authenticated client connection."""
    services = websocket.app.state.services
    manager = services.manager
    engine = services.engine
    presence = services.presence

    try:
        user_id = services.tokens.authenticate(
            token or bearer_token(websocket.headers.get("authorization")), userId
        )
    except AuthenticationError as e:
        logger.warning(f"[WS] Rejected handshake: {e.message}")
        await websocket.close(code=WS_UNAUTHORIZED)
        return

    await websocket.accept()
    session = Session(websocket, user_id)
    logger.info(f"[WS] Connection accepted for {user_id} ({session.connection_id})")

    try:
        await manager.send(
            session, events.CONNECTED,
            {"userId": user_id, "connectionId": session.connection_id},
        )
        await presence.mark_online(user_id, session.connection_id)
        manager.register(session)
        await manager.send(session, events.ONLINE_USERS, presence.snapshot())

        # Main message loop
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except ValueError:
                await manager.send(
                    session, events.ERROR, ValidationError("Invalid JSON").to_dict()
                )
                continue
            if not isinstance(data, dict):
                await manager.send(
                    session, events.ERROR, ValidationError("Frame must be an object").to_dict()
                )
                continue

            message_type = data.get("type")
            payload = _payload(data)
            chat_id = payload.get("chatId")
            logger.debug(f"[WS] {user_id} sent type={message_type}")

            try:
                if message_type == events.JOIN_CHAT:
                    await engine.join(session, chat_id)
                    continue

                if message_type == events.LEAVE_CHAT:
                    await engine.leave(session, chat_id)
                    continue

                if message_type == events.SEND_MESSAGE:
                    message = await engine.send(
                        chat_id, user_id, payload.get("content"), payload.get("tempId")
                    )
                    # Senders outside the group still need the tempId round trip
                    if message.chatId not in session.chats:
                        await manager.send(session, events.MESSAGE_RECEIVED, message.to_client())
                    continue

                if message_type == events.MARK_READ:
                    await engine.mark_read(chat_id, user_id)
                    continue

                if message_type == events.TYPING:
                    if require_id(chat_id, "chatId") not in session.chats:
                        raise Forbidden("Join the chat before sending typing events")
                    await engine.typing(chat_id, user_id, exclude_connection=session.connection_id)
                    continue

                raise ValidationError(f"Unknown event type: {message_type}")

            except CourierError as e:
                logger.info(f"[WS] {message_type} from {user_id} failed: {e.kind}: {e.message}")
                await manager.send(session, events.ERROR, e.to_dict())

    except WebSocketDisconnect:
        logger.info(f"[WS] {user_id} disconnected ({session.connection_id})")
    finally:
        manager.unregister(session)
        # Runs to completion even when the handler task is being cancelled
        with anyio.CancelScope(shield=True):
            await presence.mark_offline(user_id, session.connection_id)
