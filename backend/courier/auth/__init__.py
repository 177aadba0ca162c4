"""Authentication module.

Courier does not issue credentials; it verifies HMAC-signed identity tokens
presented on HTTP requests (``Authorization: Bearer``) and on the WebSocket
handshake.

Services:
    - TokenVerifier: token verification (and issuance for tooling/tests).
"""
