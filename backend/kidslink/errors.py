"""Error taxonomy for the messaging subsystem.

Every error carries a human-readable message, optional details and the
client-supplied idempotency token (``tempId``) when one was provided. The
WebSocket layer turns them into ``error`` events for the originating
connection only; the REST layer maps them to HTTP status codes.

    AuthenticationError -> handshake rejected / 401
    AuthorizationError  -> not a participant / 403
    ValidationError     -> missing or malformed fields / 400
    UpstreamError       -> store or image upload failure / 502
    NotFoundError       -> REST only / 404
    ConflictError       -> REST only / 409
"""
from typing import Optional


class MessagingError(Exception):
    """Base class for all errors reported back to a client."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        temp_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        self.temp_id = temp_id

    def to_payload(self) -> dict:
        """Build the ``error`` event payload."""
        payload = {"message": self.message}
        if self.details:
            payload["details"] = self.details
        if self.temp_id is not None:
            payload["tempId"] = self.temp_id
        return payload


class AuthenticationError(MessagingError):
    status_code = 401


class AuthorizationError(MessagingError):
    status_code = 403


class ValidationError(MessagingError):
    status_code = 400


class UpstreamError(MessagingError):
    status_code = 502


class NotFoundError(MessagingError):
    status_code = 404


class ConflictError(MessagingError):
    status_code = 409


class ImageUploadError(Exception):
    """Raised by image stores when an upload cannot be completed."""
