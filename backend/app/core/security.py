import logging
import uuid
from typing import Annotated, Any

import jwt
from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel

from app.core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


class CurrentUser(BaseModel):
    """Authenticated principal resolved from the session token."""

    id: uuid.UUID
    email: str | None = None


def decode_token(token: str) -> dict[str, Any] | None:
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError:
        logger.debug("Rejected session token", exc_info=True)
        return None


def _token_from_request(request: Request) -> str | None:
    header = request.headers.get("authorization") or ""
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return request.cookies.get("access_token")


async def get_optional_user(request: Request) -> CurrentUser | None:
    """Return the session user or None. Never raises."""
    token = _token_from_request(request)
    if not token:
        return None

    payload = decode_token(token)
    if not payload or payload.get("type", "access") != "access":
        return None

    try:
        user_id = uuid.UUID(str(payload.get("sub")))
    except ValueError:
        return None
    return CurrentUser(id=user_id, email=payload.get("email"))


async def get_current_user(
    user: Annotated[CurrentUser | None, Depends(get_optional_user)],
) -> CurrentUser:
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return user
