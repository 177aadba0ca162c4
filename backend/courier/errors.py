"""Error taxonomy shared by the dispatch engine, the stores and the routers.

Every failure a caller can observe is a ``CourierError`` carrying a stable
``kind`` string and the HTTP status the REST layer answers with. WebSocket
handlers send the same ``kind``/``message`` pair in an ``error`` frame.
"""
import uuid


class CourierError(Exception):
    """Base class for all caller-visible failures."""

    kind = "error"
    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class ValidationError(CourierError):
    """Malformed identifier, missing field or otherwise invalid argument."""

    kind = "validation_error"
    status_code = 400


class AuthenticationError(CourierError):
    """Missing, invalid or mismatched identity token."""

    kind = "unauthorized"
    status_code = 401


class Forbidden(CourierError):
    """Caller is not a participant, or not the original sender."""

    kind = "forbidden"
    status_code = 403


class NotFound(CourierError):
    """Chat or message does not exist."""

    kind = "not_found"
    status_code = 404


class TransientStoreError(CourierError):
    """Durable store or cache is unavailable. Never retried by the engine."""

    kind = "store_unavailable"
    status_code = 503


def require_id(value, field: str) -> str:
    """Validate that *value* is a well-formed identifier (a UUID string).

    Raises:
        ValidationError: If the value is missing or not a UUID.
    """
    if not value or not isinstance(value, str):
        raise ValidationError(f"{field} is required")
    try:
        uuid.UUID(value)
    except ValueError:
        raise ValidationError(f"Invalid {field} format") from None
    return value
