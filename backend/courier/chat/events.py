"""WebSocket event names and frame construction.

Every frame on the wire is ``{"type": <event>, "data": <payload>}``.
"""
from typing import Any

# Client -> server
JOIN_CHAT = "join chat"
LEAVE_CHAT = "leave chat"
SEND_MESSAGE = "send message"
MARK_READ = "mark read"

# Server -> client
CONNECTED = "connected"
JOINED = "joined"
LEFT = "left"
MESSAGE_RECEIVED = "message received"
MESSAGE_DELIVERED = "message delivered"
MESSAGE_READ = "message read"
MESSAGE_EDITED = "message edited"
MESSAGE_DELETED = "message deleted"
ONLINE_USERS = "onlineUsers"
ERROR = "error"

# Both directions
TYPING = "typing"


def frame(event: str, data: Any) -> dict:
    return {"type": event, "data": data}
