"""Create tenant, presence, team, session and resolution tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "001_create_inbox_tables"
down_revision = None
branch_labels = None
depends_on = None


_UUID = postgresql.UUID(as_uuid=True)
_JSONB = postgresql.JSONB(astext_type=sa.Text())
_NOW = sa.text("timezone('utc', now())")


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        _UUID,
        primary_key=True,
        nullable=False,
        server_default=sa.text("gen_random_uuid()"),
    )


def _tenant_column() -> sa.Column:
    return sa.Column(
        "tenant_id",
        _UUID,
        sa.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at", sa.DateTime(timezone=True), nullable=False, server_default=_NOW
    )


def upgrade() -> None:
    """Create the inbox schema with the indexes the queue queries rely on."""

    op.create_table(
        "organizations",
        _id_column(),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("subdomain", sa.String(length=255), nullable=False),
        _created_at(),
    )
    op.create_index(
        "ix_organizations_subdomain_unique", "organizations", ["subdomain"], unique=True
    )

    op.create_table(
        "users",
        _id_column(),
        sa.Column(
            "organization_id",
            _UUID,
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column(
            "role", sa.String(length=32), nullable=False, server_default=sa.text("'agent'")
        ),
        sa.Column(
            "permissions", sa.String(length=512), nullable=False, server_default=sa.text("''")
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
    )
    op.create_index("ix_users_email_unique", "users", ["email"], unique=True)
    op.create_index("ix_users_organization_id", "users", ["organization_id"])

    op.create_table(
        "agent_profiles",
        sa.Column(
            "user_id",
            _UUID,
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            primary_key=True,
            nullable=False,
        ),
        _tenant_column(),
        sa.Column(
            "status", sa.String(length=16), nullable=False, server_default=sa.text("'offline'")
        ),
        sa.Column(
            "presence_reason",
            sa.String(length=32),
            nullable=False,
            server_default=sa.text("'unavailable'"),
        ),
        sa.Column(
            "max_concurrent_chats", sa.Integer(), nullable=False, server_default=sa.text("3")
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("status_changed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.CheckConstraint("max_concurrent_chats > 0", name="ck_agent_profiles_capacity"),
    )
    op.create_index("ix_agent_profiles_tenant_status", "agent_profiles", ["tenant_id", "status"])

    op.create_table(
        "teams",
        _id_column(),
        _tenant_column(),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "routing_strategy",
            sa.String(length=32),
            nullable=False,
            server_default=sa.text("'round_robin'"),
        ),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "enforce_shifts", sa.Boolean(), nullable=False, server_default=sa.text("false")
        ),
        sa.Column("rotation_cursor", _UUID, nullable=True),
        sa.Column("wrap_up_form", _JSONB, nullable=True),
        sa.Column("schedule", _JSONB, nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=_NOW),
        sa.UniqueConstraint("tenant_id", "name", name="uq_teams_tenant_name"),
    )
    op.create_index("ix_teams_tenant_id", "teams", ["tenant_id"])

    op.create_table(
        "team_members",
        _id_column(),
        _tenant_column(),
        sa.Column(
            "team_id", _UUID, sa.ForeignKey("teams.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column(
            "user_id", _UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column(
            "role", sa.String(length=16), nullable=False, server_default=sa.text("'member'")
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
        sa.UniqueConstraint("team_id", "user_id", name="uq_team_members_team_user"),
    )
    op.create_index("ix_team_members_user_id", "team_members", ["user_id"])

    op.create_table(
        "assignment_configs",
        _id_column(),
        _tenant_column(),
        sa.Column(
            "team_id", _UUID, sa.ForeignKey("teams.id", ondelete="CASCADE"), nullable=True
        ),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "strategy",
            sa.String(length=32),
            nullable=False,
            server_default=sa.text("'round_robin'"),
        ),
        sa.Column("settings", _JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=_NOW),
        sa.UniqueConstraint("tenant_id", "team_id", name="uq_assignment_configs_tenant_team"),
    )
    # The unique constraint treats NULL team ids as distinct.
    op.create_index(
        "ix_assignment_configs_tenant_default",
        "assignment_configs",
        ["tenant_id"],
        unique=True,
        postgresql_where=sa.text("team_id IS NULL"),
        sqlite_where=sa.text("team_id IS NULL"),
    )

    op.create_table(
        "inbox_sessions",
        _id_column(),
        _tenant_column(),
        sa.Column("contact_id", sa.String(length=255), nullable=False),
        sa.Column("contact_name", sa.String(length=255), nullable=True),
        sa.Column(
            "channel", sa.String(length=32), nullable=False, server_default=sa.text("'whatsapp'")
        ),
        sa.Column(
            "status",
            sa.String(length=16),
            nullable=False,
            server_default=sa.text("'unassigned'"),
        ),
        sa.Column(
            "assigned_agent_id",
            _UUID,
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "assigned_team_id",
            _UUID,
            sa.ForeignKey("teams.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("context", _JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("first_assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=_NOW),
        sa.CheckConstraint(
            "status IN ('unassigned', 'assigned', 'resolved')",
            name="ck_inbox_sessions_status",
        ),
    )
    op.create_index("ix_inbox_sessions_tenant_status", "inbox_sessions", ["tenant_id", "status"])
    op.create_index(
        "ix_inbox_sessions_agent_status", "inbox_sessions", ["assigned_agent_id", "status"]
    )
    op.create_index(
        "ix_inbox_sessions_team_status", "inbox_sessions", ["assigned_team_id", "status"]
    )
    op.create_index("ix_inbox_sessions_contact", "inbox_sessions", ["tenant_id", "contact_id"])

    op.create_table(
        "resolutions",
        _id_column(),
        _tenant_column(),
        sa.Column(
            "session_id",
            _UUID,
            sa.ForeignKey("inbox_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("category", sa.String(length=64), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column(
            "outcome", sa.String(length=32), nullable=False, server_default=sa.text("'resolved'")
        ),
        sa.Column("form_data", _JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column(
            "resolved_by_agent_id",
            _UUID,
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("csat_score", sa.Integer(), nullable=True),
        sa.Column("csat_feedback", sa.Text(), nullable=True),
        sa.Column("csat_submitted_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.CheckConstraint(
            "csat_score IS NULL OR csat_score BETWEEN 1 AND 5",
            name="ck_resolutions_csat_range",
        ),
    )
    op.create_index("ix_resolutions_session_unique", "resolutions", ["session_id"], unique=True)
    op.create_index("ix_resolutions_tenant_created", "resolutions", ["tenant_id", "created_at"])

    op.create_table(
        "shifts",
        _id_column(),
        _tenant_column(),
        sa.Column(
            "team_id", _UUID, sa.ForeignKey("teams.id", ondelete="CASCADE"), nullable=True
        ),
        sa.Column(
            "user_id", _UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("end_time > start_time", name="ck_shifts_window"),
    )
    op.create_index("ix_shifts_user_window", "shifts", ["user_id", "start_time", "end_time"])


def downgrade() -> None:
    """Drop the inbox schema in reverse dependency order."""

    op.drop_index("ix_shifts_user_window", table_name="shifts")
    op.drop_table("shifts")
    op.drop_index("ix_resolutions_tenant_created", table_name="resolutions")
    op.drop_index("ix_resolutions_session_unique", table_name="resolutions")
    op.drop_table("resolutions")
    for name in (
        "ix_inbox_sessions_contact",
        "ix_inbox_sessions_team_status",
        "ix_inbox_sessions_agent_status",
        "ix_inbox_sessions_tenant_status",
    ):
        op.drop_index(name, table_name="inbox_sessions")
    op.drop_table("inbox_sessions")
    op.drop_index("ix_assignment_configs_tenant_default", table_name="assignment_configs")
    op.drop_table("assignment_configs")
    op.drop_index("ix_team_members_user_id", table_name="team_members")
    op.drop_table("team_members")
    op.drop_index("ix_teams_tenant_id", table_name="teams")
    op.drop_table("teams")
    op.drop_index("ix_agent_profiles_tenant_status", table_name="agent_profiles")
    op.drop_table("agent_profiles")
    op.drop_index("ix_users_organization_id", table_name="users")
    op.drop_index("ix_users_email_unique", table_name="users")
    op.drop_table("users")
    op.drop_index("ix_organizations_subdomain_unique", table_name="organizations")
    op.drop_table("organizations")
