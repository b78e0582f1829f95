"""Inbox routing models: presence, teams, sessions and resolutions.

The tables mirror ``agent_inbox/migrations/001_create_inbox_tables.py``. JSON
payloads use ``JSONB`` on Postgres and plain ``JSON`` elsewhere so the same
models back the SQLite databases used in tests.

SQLAlchemy does not track in-place mutation of JSON columns; callers assign a
fresh ``dict`` when they change ``context``, ``settings`` or ``form_data``.
"""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Any, List

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from . import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )


def _tenant_fk() -> Mapped[uuid.UUID]:
    return mapped_column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )


class AgentProfile(Base):
    """Presence and capacity of a user that can take conversations.

    Attributes:
        user_id: The agent's user id (one profile per user).
        status: ``online``, ``offline`` or ``busy``.
        presence_reason: Why the agent is in ``status`` (``available``,
            ``busy``, ``unavailable``, ``off_shift``, ``on_leave``).
        max_concurrent_chats: Upper bound on simultaneously assigned sessions.
        is_active: Profiles are deactivated, never deleted, so history keeps
            pointing at a real agent.
    """

    __tablename__ = "agent_profiles"
    __table_args__ = (Index("ix_agent_profiles_tenant_status", "tenant_id", "status"),)

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
    )
    tenant_id: Mapped[uuid.UUID] = _tenant_fk()
    status: Mapped[str] = mapped_column(
        String(length=16),
        nullable=False,
        default="offline",
        server_default=text("'offline'"),
    )
    presence_reason: Mapped[str] = mapped_column(
        String(length=32),
        nullable=False,
        default="unavailable",
        server_default=text("'unavailable'"),
    )
    max_concurrent_chats: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=3,
        server_default=text("3"),
    )
    is_active: Mapped[bool] = mapped_column(
        nullable=False,
        default=True,
        server_default=text("true"),
    )
    status_changed_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class Team(Base):
    """A routing group of agents with its own strategy and wrap-up form."""

    __tablename__ = "teams"
    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_teams_tenant_name"),
        Index("ix_teams_tenant_id", "tenant_id"),
    )

    id: Mapped[uuid.UUID] = _uuid_pk()
    tenant_id: Mapped[uuid.UUID] = _tenant_fk()
    name: Mapped[str] = mapped_column(String(length=255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text())
    routing_strategy: Mapped[str] = mapped_column(
        String(length=32),
        nullable=False,
        default="round_robin",
        server_default=text("'round_robin'"),
    )
    is_default: Mapped[bool] = mapped_column(
        nullable=False, default=False, server_default=text("false")
    )
    is_active: Mapped[bool] = mapped_column(
        nullable=False, default=True, server_default=text("true")
    )
    enforce_shifts: Mapped[bool] = mapped_column(
        nullable=False, default=False, server_default=text("false")
    )
    # Last agent that received a round-robin assignment for this team.
    rotation_cursor: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    wrap_up_form: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    # Weekly opening hours: {"enabled", "timezone", "days", "outOfOfficeMessage"}.
    schedule: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    members: Mapped[List["TeamMember"]] = relationship(
        back_populates="team",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class TeamMember(Base):
    """Membership of a user in a team."""

    __tablename__ = "team_members"
    __table_args__ = (
        UniqueConstraint("team_id", "user_id", name="uq_team_members_team_user"),
        Index("ix_team_members_user_id", "user_id"),
    )

    id: Mapped[uuid.UUID] = _uuid_pk()
    tenant_id: Mapped[uuid.UUID] = _tenant_fk()
    team_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("teams.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    role: Mapped[str] = mapped_column(
        String(length=16),
        nullable=False,
        default="member",
        server_default=text("'member'"),
    )
    is_active: Mapped[bool] = mapped_column(
        nullable=False, default=True, server_default=text("true")
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    team: Mapped[Team] = relationship(back_populates="members")


class AssignmentConfig(Base):
    """Automatic assignment switch and strategy settings.

    A row with ``team_id`` set applies to that team; a row without one is the
    tenant-wide fallback.
    """

    __tablename__ = "assignment_configs"
    __table_args__ = (
        UniqueConstraint("tenant_id", "team_id", name="uq_assignment_configs_tenant_team"),
        # NULL team ids are distinct under the constraint above.
        Index(
            "ix_assignment_configs_tenant_default",
            "tenant_id",
            unique=True,
            postgresql_where=text("team_id IS NULL"),
            sqlite_where=text("team_id IS NULL"),
        ),
    )

    id: Mapped[uuid.UUID] = _uuid_pk()
    tenant_id: Mapped[uuid.UUID] = _tenant_fk()
    team_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("teams.id", ondelete="CASCADE"),
    )
    enabled: Mapped[bool] = mapped_column(
        nullable=False, default=True, server_default=text("true")
    )
    strategy: Mapped[str] = mapped_column(
        String(length=32),
        nullable=False,
        default="round_robin",
        server_default=text("'round_robin'"),
    )
    settings: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class InboxSession(Base):
    """A live or historical support conversation with one contact.

    ``version`` is bumped by every state transition; conditional updates use
    it to detect concurrent writers.
    """

    __tablename__ = "inbox_sessions"
    __table_args__ = (
        Index("ix_inbox_sessions_tenant_status", "tenant_id", "status"),
        Index("ix_inbox_sessions_agent_status", "assigned_agent_id", "status"),
        Index("ix_inbox_sessions_team_status", "assigned_team_id", "status"),
        Index("ix_inbox_sessions_contact", "tenant_id", "contact_id"),
    )

    id: Mapped[uuid.UUID] = _uuid_pk()
    tenant_id: Mapped[uuid.UUID] = _tenant_fk()
    contact_id: Mapped[str] = mapped_column(String(length=255), nullable=False)
    contact_name: Mapped[str | None] = mapped_column(String(length=255))
    channel: Mapped[str] = mapped_column(
        String(length=32),
        nullable=False,
        default="whatsapp",
        server_default=text("'whatsapp'"),
    )
    status: Mapped[str] = mapped_column(
        String(length=16),
        nullable=False,
        default="unassigned",
        server_default=text("'unassigned'"),
    )
    assigned_agent_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
    )
    assigned_team_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("teams.id", ondelete="SET NULL"),
    )
    priority: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    context: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    last_message_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    assigned_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    # Set by the first claim or agent transfer and never moved afterwards.
    first_assigned_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    version: Mapped[int] = mapped_column(
        Integer, nullable=False, default=1, server_default=text("1")
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    resolution: Mapped["Resolution | None"] = relationship(
        back_populates="session",
        uselist=False,
    )


class Resolution(Base):
    """Wrap-up record written when a session is resolved."""

    __tablename__ = "resolutions"
    __table_args__ = (
        Index("ix_resolutions_session_unique", "session_id", unique=True),
        Index("ix_resolutions_tenant_created", "tenant_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = _uuid_pk()
    tenant_id: Mapped[uuid.UUID] = _tenant_fk()
    session_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("inbox_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    category: Mapped[str] = mapped_column(String(length=64), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text())
    outcome: Mapped[str] = mapped_column(
        String(length=32),
        nullable=False,
        default="resolved",
        server_default=text("'resolved'"),
    )
    form_data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    resolved_by_agent_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
    )
    csat_score: Mapped[int | None] = mapped_column(Integer)
    csat_feedback: Mapped[str | None] = mapped_column(Text())
    csat_submitted_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    session: Mapped[InboxSession] = relationship(back_populates="resolution")


class Shift(Base):
    """A working window for an agent, optionally scoped to one team."""

    __tablename__ = "shifts"
    __table_args__ = (Index("ix_shifts_user_window", "user_id", "start_time", "end_time"),)

    id: Mapped[uuid.UUID] = _uuid_pk()
    tenant_id: Mapped[uuid.UUID] = _tenant_fk()
    team_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("teams.id", ondelete="CASCADE"),
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    start_time: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)


__all__ = [
    "AgentProfile",
    "AssignmentConfig",
    "InboxSession",
    "JSONType",
    "Resolution",
    "Shift",
    "Team",
    "TeamMember",
]
