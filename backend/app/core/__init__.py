from app.core.config import Settings, get_settings
from app.core.database import Base, get_db, async_session_maker, engine
from app.core.security import (
    CurrentUser,
    decode_token,
    get_current_user,
    get_optional_user,
)

__all__ = [
    "Settings",
    "get_settings",
    "Base",
    "get_db",
    "async_session_maker",
    "engine",
    "CurrentUser",
    "decode_token",
    "get_current_user",
    "get_optional_user",
]
