"""FastAPI dependencies for resolving the service container and the caller."""
from typing import Optional

from fastapi import Header, Request

from courier.services import Services

from .service import bearer_token


def get_services(request: Request) -> Services:
    return request.app.state.services


def current_user(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> str:
    """Return the user ID of the bearer token on the request.

    Raises:
        AuthenticationError: If the token is missing or invalid.
    """
    services = get_services(request)
    return services.tokens.verify(bearer_token(authorization))
