"""Identity token verification.

Credential issuance belongs to the external auth service; Courier only
verifies tokens. A token is ``<userId>.<signature>`` where the signature is
the hex HMAC-SHA256 of the user ID under the shared secret from
``courier.secrets.yaml``. ``issue`` exists for tooling and tests.
"""
import hashlib
import hmac
import logging
from typing import Optional

from courier.errors import AuthenticationError

logger = logging.getLogger(__name__)


class TokenVerifier:
    """Verifies HMAC-signed identity tokens."""

    def __init__(self, secret_key: str) -> None:
        if not secret_key:
            raise ValueError("secret_key must not be empty")
        self._secret = secret_key.encode("utf-8")

    def _sign(self, user_id: str) -> str:
        return hmac.new(self._secret, user_id.encode("utf-8"), hashlib.sha256).hexdigest()

    def issue(self, user_id: str) -> str:
        return f"{user_id}.{self._sign(user_id)}"

    def verify(self, token: Optional[str]) -> str:
        """Return the user ID a token was issued for.

        Raises:
            AuthenticationError: If the token is missing or its signature is wrong.
        """
        if not token:
            raise AuthenticationError("Not authorized, token missing")

        user_id, _, signature = token.rpartition(".")
        if not user_id or not signature:
            raise AuthenticationError("Token is invalid")

        # Constant-time comparison to prevent timing attacks
        if not hmac.compare_digest(self._sign(user_id), signature):
            logger.warning("[Auth] Rejected token with bad signature")
            raise AuthenticationError("Token is invalid")
        return user_id

    def authenticate(self, token: Optional[str], user_id: Optional[str] = None) -> str:
        """Verify a token and, when given, that it belongs to *user_id*."""
        token_user = self.verify(token)
        if user_id is not None and user_id != token_user:
            logger.warning(f"[Auth] Token for {token_user} presented as {user_id}")
            raise AuthenticationError("Token does not match user")
        return token_user


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
