"""FastAPI dependencies for authenticated REST endpoints."""
from fastapi import HTTPException, Request

from kidslink.errors import AuthenticationError

from .service import Identity, extract_bearer_token


def get_current_identity(request: Request) -> Identity:
    """Resolve the caller's identity from the ``Authorization`` header.

    Raises:
        HTTPException 401: If the token is missing or invalid.
    """
    token_service = request.app.state.token_service
    query_param = request.app.state.config.auth.token_query_param
    token = extract_bearer_token(request.headers, request.query_params, query_param)
    try:
        return token_service.decode(token)
    except AuthenticationError as e:
        raise HTTPException(status_code=401, detail=e.message)
