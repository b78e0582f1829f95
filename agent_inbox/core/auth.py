"""Bearer token validation for the agent inbox API.

Tokens are issued by :mod:`agent_inbox.security.tokens` and carry the tenant,
the user and the user's roles and permissions. Routers never call
:func:`decode_tenant_token` directly; they depend on
:func:`get_tenant_context` or on the helpers in :mod:`agent_inbox.security`.
"""

from __future__ import annotations

import os
from typing import Any, NamedTuple, cast

import jwt
from fastapi import HTTPException, Request, status
from jwt import ExpiredSignatureError, InvalidTokenError
from typing_extensions import TypedDict

__all__ = [
    "TenantTokenPayload",
    "TenantTokenConfigurationError",
    "TenantTokenValidationError",
    "decode_tenant_token",
    "get_tenant_context",
]


class TenantTokenConfigurationError(RuntimeError):
    """Raised when the token environment is incomplete."""


class TenantTokenValidationError(ValueError):
    """Raised when a bearer token is rejected."""


class _TenantTokenRequiredClaims(TypedDict):
    tenant_id: str
    user_id: str


class TenantTokenPayload(_TenantTokenRequiredClaims, total=False):
    """Claims of an inbox access token."""

    aud: str | list[str]
    email: str
    exp: int
    iat: int
    iss: str
    name: str
    roles: list[str]
    permissions: list[str]
    type: str


class _DecodeSettings(NamedTuple):
    secret: str
    audience: str
    issuer: str
    algorithm: str
    leeway: int


def _get_env(name: str, *, required: bool = True, default: str | None = None) -> str:
    """Read a token setting from the environment.

    Args:
        name: Environment variable to read.
        required: Whether a missing or blank value is an error.
        default: Value used when the variable is unset.

    Returns:
        str: The stripped value, or ``""`` when unset and not required.

    Raises:
        TenantTokenConfigurationError: If a required variable is missing or blank.
    """

    value = os.getenv(name, default)
    if required and (value is None or not value.strip()):
        raise TenantTokenConfigurationError(
            f"Environment variable '{name}' must be set for tenant token validation.",
        )
    if value is None:
        return ""
    return value.strip()


def _decode_settings() -> _DecodeSettings:
    """Collect the verification settings.

    Read on every call so that rotated secrets apply without a restart.

    Returns:
        _DecodeSettings: Secret, audience, issuer, algorithm and clock leeway.

    Raises:
        TenantTokenConfigurationError: If a required variable is missing or the
            leeway is not a non-negative integer.
    """

    raw_leeway = _get_env("TENANT_TOKEN_LEEWAY_SECONDS", required=False, default="0") or "0"
    if not raw_leeway.isdigit():
        raise TenantTokenConfigurationError(
            "TENANT_TOKEN_LEEWAY_SECONDS must be a non-negative integer.",
        )
    return _DecodeSettings(
        secret=_get_env("TENANT_TOKEN_SECRET"),
        audience=_get_env("TENANT_TOKEN_AUDIENCE"),
        issuer=_get_env("TENANT_TOKEN_ISSUER"),
        algorithm=_get_env("TENANT_TOKEN_ALGORITHM", required=False, default="HS256"),
        leeway=int(raw_leeway),
    )


def _string_list(payload: dict[str, Any], claim: str) -> None:
    """Check that ``claim`` is a list of strings and drop blanks and repeats in place.

    Args:
        payload: Decoded claims, modified in place.
        claim: Name of the list claim, ``roles`` or ``permissions``.

    Raises:
        TenantTokenValidationError: If the claim is present but not a list of strings.
    """

    values = payload.get(claim)
    if values is None:
        return
    if not isinstance(values, list) or not all(isinstance(item, str) for item in values):
        raise TenantTokenValidationError(f"Tenant token {claim} must be a list of strings.")
    cleaned: list[str] = []
    for item in values:
        item = item.strip()
        if item and item not in cleaned:
            cleaned.append(item)
    payload[claim] = cleaned


def decode_tenant_token(token: str) -> TenantTokenPayload:
    """Decode and validate an inbox access token.

    Args:
        token: Encoded JWT from the ``Authorization`` header.

    Returns:
        TenantTokenPayload: Claims with ``roles`` and ``permissions`` normalised.

    Raises:
        TenantTokenConfigurationError: If mandatory environment configuration is missing.
        TenantTokenValidationError: If the signature, claims, token type or expiry
            are invalid.
    """

    settings = _decode_settings()
    try:
        payload = jwt.decode(
            token,
            settings.secret,
            algorithms=[settings.algorithm],
            audience=settings.audience,
            issuer=settings.issuer,
            leeway=settings.leeway,
            options={"require": ["exp", "aud", "iss"]},
        )
    except ExpiredSignatureError as exc:
        raise TenantTokenValidationError("Tenant token has expired.") from exc
    except InvalidTokenError as exc:
        raise TenantTokenValidationError("Tenant token is invalid.") from exc

    if not payload.get("tenant_id") or not payload.get("user_id"):
        raise TenantTokenValidationError(
            "Tenant token payload must include 'tenant_id' and 'user_id'.",
        )
    type_claim = payload.get("type")
    if type_claim and type_claim != "access":
        raise TenantTokenValidationError("Tenant token must be an access token.")
    _string_list(payload, "roles")
    _string_list(payload, "permissions")

    return cast(TenantTokenPayload, payload)


async def get_tenant_context(request: Request) -> TenantTokenPayload:
    """FastAPI dependency returning the caller's validated token claims.

    Args:
        request: Incoming request carrying ``Authorization: Bearer <token>``.

    Returns:
        TenantTokenPayload: The decoded claims.

    Raises:
        HTTPException: ``401`` when the header is missing, malformed or the
            token is rejected; ``500`` when token settings are missing.
    """

    authorization = request.headers.get("Authorization")
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Authorization header.",
        )

    scheme, _, credentials = authorization.partition(" ")
    if not credentials.strip() or scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header must use Bearer scheme.",
        )

    try:
        return decode_tenant_token(credentials.strip())
    except TenantTokenConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc
    except TenantTokenValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc
