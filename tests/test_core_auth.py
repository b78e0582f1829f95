"""Tests for bearer token decoding and issuing."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from agent_inbox.core.auth import (
    TenantTokenConfigurationError,
    TenantTokenPayload,
    TenantTokenValidationError,
    decode_tenant_token,
    get_tenant_context,
)
from agent_inbox.models import User
from agent_inbox.security import create_access_token, reset_jwt_settings_cache


@pytest.fixture()
def token_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("TENANT_TOKEN_SECRET", "secret-key")
    monkeypatch.setenv("TENANT_TOKEN_AUDIENCE", "agent-inbox")
    monkeypatch.setenv("TENANT_TOKEN_ISSUER", "auth.agent-inbox")
    monkeypatch.setenv("TENANT_TOKEN_ALGORITHM", "HS256")
    monkeypatch.delenv("TENANT_TOKEN_LEEWAY_SECONDS", raising=False)
    reset_jwt_settings_cache()
    yield
    reset_jwt_settings_cache()


def _issue_token(
    *,
    secret: str = "secret-key",
    audience: str = "agent-inbox",
    issuer: str = "auth.agent-inbox",
    tenant_id: str | None = "tenant-123",
    user_id: str | None = "user-456",
    expires_in: timedelta = timedelta(minutes=5),
    **extra_claims: object,
) -> str:
    payload: dict[str, object] = {
        "aud": audience,
        "iss": issuer,
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    if tenant_id is not None:
        payload["tenant_id"] = tenant_id
    if user_id is not None:
        payload["user_id"] = user_id
    payload.update(extra_claims)
    return jwt.encode(payload, secret, algorithm="HS256")


def test_decode_returns_claims(token_env) -> None:
    payload = decode_tenant_token(
        _issue_token(roles=["supervisor"], permissions=["session.bulk_transfer"])
    )

    assert payload["tenant_id"] == "tenant-123"
    assert payload["user_id"] == "user-456"
    assert payload["roles"] == ["supervisor"]
    assert payload["permissions"] == ["session.bulk_transfer"]


@pytest.mark.parametrize(
    "overrides",
    [
        {"user_id": None},
        {"tenant_id": None},
        {"type": "refresh"},
        {"permissions": "teams.manage"},
        {"roles": ["agent", 3]},
        {"tenant_id": ""},
        {"audience": "someone-else"},
        {"expires_in": timedelta(minutes=-1)},
    ],
)
def test_decode_rejects_bad_tokens(token_env, overrides) -> None:
    with pytest.raises(TenantTokenValidationError):
        decode_tenant_token(_issue_token(**overrides))


def test_decode_normalises_role_and_permission_lists(token_env) -> None:
    payload = decode_tenant_token(
        _issue_token(
            roles=[" agent ", ""],
            permissions=["teams.manage", " teams.manage", "session.bulk_transfer"],
        )
    )

    assert payload["roles"] == ["agent"]
    assert payload["permissions"] == ["teams.manage", "session.bulk_transfer"]


def test_decode_leeway_accepts_recently_expired_token(token_env, monkeypatch) -> None:
    token = _issue_token(expires_in=timedelta(seconds=-5))
    with pytest.raises(TenantTokenValidationError):
        decode_tenant_token(token)

    monkeypatch.setenv("TENANT_TOKEN_LEEWAY_SECONDS", "30")
    assert decode_tenant_token(token)["user_id"] == "user-456"

    monkeypatch.setenv("TENANT_TOKEN_LEEWAY_SECONDS", "soon")
    with pytest.raises(TenantTokenConfigurationError):
        decode_tenant_token(token)


def test_decode_configuration_error(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("TENANT_TOKEN_SECRET", "TENANT_TOKEN_AUDIENCE", "TENANT_TOKEN_ISSUER"):
        monkeypatch.delenv(name, raising=False)

    with pytest.raises(TenantTokenConfigurationError):
        decode_tenant_token("token")


def test_issued_access_token_round_trips(token_env) -> None:
    user = User(
        organization_id=uuid.uuid4(),
        email="sup@tenant.example",
        name="Sup",
        role="supervisor",
        permissions="teams.manage, session.bulk_transfer",
    )
    user.id = uuid.uuid4()

    token, expires_at = create_access_token(user)
    payload = decode_tenant_token(token)

    assert payload["user_id"] == str(user.id)
    assert payload["roles"] == ["supervisor"]
    assert payload["permissions"] == ["teams.manage", "session.bulk_transfer"]
    assert payload["type"] == "access"
    assert expires_at > datetime.now(timezone.utc)


def _create_test_client() -> TestClient:
    app = FastAPI()

    @app.get("/tenant")
    async def read_tenant(
        payload: TenantTokenPayload = Depends(get_tenant_context),
    ) -> TenantTokenPayload:
        return payload

    return TestClient(app)


def test_tenant_dependency(token_env) -> None:
    client = _create_test_client()
    token = _issue_token()

    ok = client.get("/tenant", headers={"Authorization": f"Bearer {token}"})
    assert ok.status_code == 200
    assert ok.json()["tenant_id"] == "tenant-123"

    assert client.get("/tenant").status_code == 401
    assert client.get("/tenant", headers={"Authorization": f"Token {token}"}).status_code == 401
    forged = _issue_token(secret="another-secret")
    assert client.get("/tenant", headers={"Authorization": f"Bearer {forged}"}).status_code == 401


def test_tenant_dependency_configuration_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TENANT_TOKEN_SECRET", raising=False)
    monkeypatch.setenv("TENANT_TOKEN_AUDIENCE", "agent-inbox")
    monkeypatch.setenv("TENANT_TOKEN_ISSUER", "auth.agent-inbox")

    response = _create_test_client().get("/tenant", headers={"Authorization": "Bearer token"})

    assert response.status_code == 500
