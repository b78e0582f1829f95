"""Helpers for issuing tenant access tokens."""

from __future__ import annotations

import dataclasses
import datetime as dt
import os
from functools import lru_cache
from typing import Any

import jwt

from agent_inbox.models import User


@dataclasses.dataclass(frozen=True)
class JWTSettings:
    """Runtime configuration for issuing authentication tokens."""

    secret: str
    issuer: str
    audience: str
    algorithm: str = "HS256"
    access_token_ttl_seconds: int = 900  # 15 minutes


@lru_cache(maxsize=1)
def get_jwt_settings() -> JWTSettings:
    """Load settings from the environment."""

    secret = os.getenv("TENANT_TOKEN_SECRET")
    issuer = os.getenv("TENANT_TOKEN_ISSUER")
    audience = os.getenv("TENANT_TOKEN_AUDIENCE")
    algorithm = os.getenv("TENANT_TOKEN_ALGORITHM", "HS256")
    if not secret or not issuer or not audience:
        raise RuntimeError(
            "TENANT_TOKEN_SECRET, TENANT_TOKEN_ISSUER and TENANT_TOKEN_AUDIENCE must be set.",
        )
    access_ttl = int(os.getenv("ACCESS_TOKEN_TTL_SECONDS", "900"))
    return JWTSettings(
        secret=secret,
        issuer=issuer,
        audience=audience,
        algorithm=algorithm,
        access_token_ttl_seconds=access_ttl,
    )


def reset_jwt_settings_cache() -> None:
    """Clear cached JWT settings; useful in tests when env vars change."""

    get_jwt_settings.cache_clear()


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def create_access_token(
    user: User, *, settings: JWTSettings | None = None
) -> tuple[str, dt.datetime]:
    """Issue a signed JWT access token carrying ``user``'s roles and permissions."""

    settings = settings or get_jwt_settings()
    now = _utcnow()
    expires_at = now + dt.timedelta(seconds=settings.access_token_ttl_seconds)
    payload: dict[str, Any] = {
        "tenant_id": str(user.organization_id),
        "user_id": str(user.id),
        "email": user.email,
        "name": user.name,
        "roles": [user.role] if user.role else [],
        "permissions": user.permission_list,
        "iss": settings.issuer,
        "aud": settings.audience,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
        "type": "access",
    }
    token = jwt.encode(payload, settings.secret, algorithm=settings.algorithm)
    return str(token), expires_at


__all__ = [
    "JWTSettings",
    "create_access_token",
    "get_jwt_settings",
    "reset_jwt_settings_cache",
]
