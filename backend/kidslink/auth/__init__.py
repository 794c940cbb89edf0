"""Authentication for the messaging API.

Tokens are issued by the external KidsLink auth service; this package only
verifies them.

Services:
    - TokenService: HS256 JWT verification (PyJWT).
    - get_current_identity: FastAPI dependency for REST endpoints.
"""
from .service import Identity, TokenService, extract_bearer_token

__all__ = ["Identity", "TokenService", "extract_bearer_token"]
