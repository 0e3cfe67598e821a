"""FastAPI dependencies shared by the chat and rooms routers."""
from typing import Optional

from fastapi import Header, Request

from palchat.auth.service import extract_bearer_token
from palchat.errors import Unauthorized

from .hub import ChatHub


def get_hub(request: Request) -> ChatHub:
    """The hub created by the application lifespan."""
    return request.app.state.hub


def current_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> str:
    """Resolve the caller's user ID from an ``Authorization: Bearer`` header."""
    token = extract_bearer_token(authorization)
    if not token:
        raise Unauthorized("Not authorized, no token")
    return get_hub(request).verifier.verify(token)
