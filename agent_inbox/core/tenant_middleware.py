"""Middleware responsible for wiring tenant context into each request."""

from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from .auth import get_tenant_context
from .tenant_context import reset_tenant_context, set_tenant_context

__all__ = ["TenantContextMiddleware"]

logger = logging.getLogger(__name__)

_PUBLIC_ENDPOINTS = {"/api/health", "/api/version", "/api/metrics"}


class TenantContextMiddleware(BaseHTTPMiddleware):
    """Populate request state and the tenant context var from the bearer token."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:  # type: ignore[override]
        if not self._is_configured() or self._should_bypass(request):
            return await call_next(request)

        try:
            payload = await get_tenant_context(request)
        except HTTPException as exc:
            headers = dict(exc.headers or {})
            if exc.status_code == status.HTTP_401_UNAUTHORIZED:
                headers.setdefault("WWW-Authenticate", "Bearer")
            return JSONResponse(
                status_code=exc.status_code,
                content={"detail": exc.detail},
                headers=headers or None,
            )

        request.state.tenant_id = payload["tenant_id"]
        request.state.user_id = payload["user_id"]

        context_token = set_tenant_context(
            payload["tenant_id"],
            payload["user_id"],
            payload.get("permissions") or [],
        )
        try:
            return await call_next(request)
        finally:
            reset_tenant_context(context_token)

    @staticmethod
    def _is_configured() -> bool:
        required = (
            os.getenv("TENANT_TOKEN_SECRET"),
            os.getenv("TENANT_TOKEN_AUDIENCE"),
            os.getenv("TENANT_TOKEN_ISSUER"),
        )
        return all(required)

    @staticmethod
    def _should_bypass(request: Request) -> bool:
        if request.method.upper() == "OPTIONS":
            return True
        return request.url.path in _PUBLIC_ENDPOINTS
