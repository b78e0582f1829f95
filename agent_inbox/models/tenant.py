"""Tenant-related SQLAlchemy models.

Organizations own every inbox record; users are the people who sign in and,
when they carry an :class:`~agent_inbox.models.inbox.AgentProfile`, take
conversations from the queue.
"""

from __future__ import annotations

import datetime as dt
import uuid
from typing import List

from sqlalchemy import DateTime, ForeignKey, Index, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from . import Base


def _utcnow() -> dt.datetime:
    """Return the current UTC timestamp with timezone awareness."""

    return dt.datetime.now(dt.timezone.utc)


class Organization(Base):
    """Represents a tenant organization.

    Attributes:
        id: Primary key generated via ``gen_random_uuid`` in Postgres.
        name: Display name of the organization.
        subdomain: Unique subdomain used for tenant isolation.
        users: Collection of users that belong to this organization.
    """

    __tablename__ = "organizations"
    __table_args__ = (
        Index("ix_organizations_subdomain_unique", "subdomain", unique=True),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    name: Mapped[str] = mapped_column(String(length=255), nullable=False)
    subdomain: Mapped[str] = mapped_column(String(length=255), nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    users: Mapped[List["User"]] = relationship(
        back_populates="organization",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class User(Base):
    """Represents a user that belongs to an organization.

    Attributes:
        id: Primary key generated via ``gen_random_uuid`` in Postgres.
        organization_id: Foreign key that links to the owning organization.
        email: Unique e-mail address.
        name: Friendly name shown in the inbox and logs.
        role: Coarse role (``viewer``, ``agent``, ``supervisor``, ``admin``).
        permissions: Comma separated fine-grained permissions such as
            ``teams.manage`` or ``session.bulk_transfer``.
    """

    __tablename__ = "users"
    __table_args__ = (
        Index("ix_users_email_unique", "email", unique=True),
        Index("ix_users_organization_id", "organization_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    email: Mapped[str] = mapped_column(String(length=320), nullable=False)
    name: Mapped[str] = mapped_column(String(length=255), nullable=False)
    role: Mapped[str] = mapped_column(
        String(length=32),
        nullable=False,
        default="agent",
        server_default=text("'agent'"),
    )
    permissions: Mapped[str] = mapped_column(
        String(length=512),
        nullable=False,
        default="",
        server_default=text("''"),
    )
    is_active: Mapped[bool] = mapped_column(
        nullable=False,
        default=True,
        server_default=text("true"),
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    organization: Mapped[Organization] = relationship(
        back_populates="users",
        lazy="joined",
    )

    @property
    def permission_list(self) -> list[str]:
        return [item.strip() for item in (self.permissions or "").split(",") if item.strip()]


__all__ = ["Organization", "User"]
