"""Runtime helpers for storing tenant-aware request context.

A :class:`contextvars.ContextVar` keeps the tenant, the acting user and the
caller's permissions for the lifetime of a request. ``TenantContextMiddleware``
populates it from the bearer token; routers, services and the assignment
scheduler read it back through ``get_current_tenant_id`` and friends without
needing the original HTTP request object.
"""

from __future__ import annotations

from contextvars import ContextVar, Token
from typing_extensions import TypedDict

__all__ = [
    "TenantRuntimeContext",
    "get_current_permissions",
    "get_current_tenant_id",
    "get_current_user_id",
    "reset_tenant_context",
    "set_tenant_context",
]


class TenantRuntimeContext(TypedDict):
    """Values stored in the tenant context during a request."""

    tenant_id: str
    user_id: str
    permissions: tuple[str, ...]


_tenant_context: ContextVar[TenantRuntimeContext | None] = ContextVar(
    "tenant_runtime_context", default=None
)


def set_tenant_context(
    tenant_id: str,
    user_id: str,
    permissions: tuple[str, ...] | list[str] = (),
) -> Token[TenantRuntimeContext | None]:
    """Persist the tenant metadata in the request-scoped context variable.

    Returns the ``Token`` produced by :meth:`contextvars.ContextVar.set`;
    callers pass it to :func:`reset_tenant_context` once they are done.
    """

    return _tenant_context.set(
        {"tenant_id": tenant_id, "user_id": user_id, "permissions": tuple(permissions)}
    )


def reset_tenant_context(token: Token[TenantRuntimeContext | None]) -> None:
    """Restore the tenant context to the state prior to ``set_tenant_context``."""

    _tenant_context.reset(token)


def get_current_tenant_id() -> str | None:
    """Return the tenant identifier for the current execution context."""

    context = _tenant_context.get()
    if context is None:
        return None
    return context["tenant_id"]


def get_current_user_id() -> str | None:
    context = _tenant_context.get()
    if context is None:
        return None
    return context["user_id"]


def get_current_permissions() -> tuple[str, ...]:
    context = _tenant_context.get()
    if context is None:
        return ()
    return context["permissions"]
