"""Security utilities exposed for convenience."""

from .auth import (
    get_current_token_payload,
    get_current_user,
    get_db_session,
    require_permission,
    require_role,
)
from .tokens import (
    JWTSettings,
    create_access_token,
    get_jwt_settings,
    reset_jwt_settings_cache,
)

__all__ = [
    "JWTSettings",
    "create_access_token",
    "get_current_token_payload",
    "get_current_user",
    "get_db_session",
    "get_jwt_settings",
    "require_permission",
    "require_role",
    "reset_jwt_settings_cache",
]
