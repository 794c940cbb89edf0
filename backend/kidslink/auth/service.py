"""Bearer-token verification for WebSocket handshakes and REST calls.

Tokens are issued by the external KidsLink auth service as HS256 JWTs whose
claims carry ``id``, ``role`` and ``username``. This module only verifies
them; ``issue()`` exists for local tooling and tests.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Mapping, Optional

import jwt
from pydantic import BaseModel, Field

from kidslink.errors import AuthenticationError

logger = logging.getLogger(__name__)

MISSING_TOKEN = "Missing authentication token"
INVALID_TOKEN = "Invalid or expired token"


class Identity(BaseModel):
    """Decoded identity claims attached to a connection or request.

    Attributes:
        id: User identifier (matches users.id in the store).
        role: User role (parent, teacher, school_admin, admin, ...).
        username: Login name of the user.
    """
    id: str = Field(..., min_length=1, description="User ID")
    role: str = Field(default="", description="User role")
    username: str = Field(default="", description="Username")


class TokenService:
    """Verifies bearer credentials against the issuing authority's secret."""

    def __init__(self, secret_key: str, algorithm: str = "HS256", leeway_seconds: int = 0):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.leeway_seconds = leeway_seconds

    def decode(self, token: Optional[str]) -> Identity:
        """Verify a token and return its identity claims.

        Raises:
            AuthenticationError: If the token is absent, malformed, expired
                or fails signature verification.
        """
        if not token:
            raise AuthenticationError(MISSING_TOKEN)

        try:
            claims = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                leeway=self.leeway_seconds,
            )
        except jwt.PyJWTError as e:
            logger.info("Token rejected: %s", e)
            raise AuthenticationError(INVALID_TOKEN, details=str(e))

        user_id = claims.get("id")
        if user_id is None or str(user_id) == "":
            raise AuthenticationError(INVALID_TOKEN, details="token has no id claim")

        return Identity(
            id=str(user_id),
            role=str(claims.get("role") or ""),
            username=str(claims.get("username") or ""),
        )

    def issue(self, identity: Identity, expires_in: timedelta = timedelta(hours=1)) -> str:
        """Sign a token for *identity* (local tooling and tests only)."""
        now = datetime.now(timezone.utc)
        payload = {
            "id": identity.id,
            "role": identity.role,
            "username": identity.username,
            "iat": now,
            "exp": now + expires_in,
        }
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)


def extract_bearer_token(
    headers: Mapping[str, str],
    query_params: Mapping[str, str],
    query_param: str = "token",
) -> Optional[str]:
    """Pull a bearer credential from handshake headers or query parameters.

    The ``Authorization: Bearer <token>`` header wins over the query parameter.
    """
    auth_header = headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[len("Bearer "):].strip()
        if token:
            return token
    return query_params.get(query_param) or None
