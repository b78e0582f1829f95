"""Database helpers for tenant-scoped SQLAlchemy sessions."""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .tenant_context import get_current_tenant_id

logger = logging.getLogger(__name__)


def apply_tenant_settings(session: Session, tenant_id: str | UUID | None = None) -> None:
    """Configure ``app.tenant_id`` on Postgres connections for row level security.

    Other dialects have no session variables and are left untouched.
    """

    effective = tenant_id or get_current_tenant_id()
    if effective is None:
        raise RuntimeError("tenant_id is required for tenant-scoped operations")

    bind = session.get_bind()
    if bind.dialect.name != "postgresql":
        return
    try:
        session.execute(
            text("SELECT set_config('app.tenant_id', :tenant_id, true)"),
            {"tenant_id": str(effective)},
        )
    except SQLAlchemyError:  # pragma: no cover - requires Postgres
        logger.exception("Failed to apply tenant settings to session")
        raise


def get_required_tenant_id(tenant_id: str | UUID | None = None) -> UUID:
    """Return the current tenant identifier or raise ``RuntimeError``."""

    effective = tenant_id or get_current_tenant_id()
    if effective is None:
        raise RuntimeError("Tenant context missing")
    if isinstance(effective, UUID):
        return effective
    try:
        return UUID(str(effective))
    except ValueError as exc:
        raise RuntimeError("Invalid tenant identifier") from exc
