"""Persistence for inbox routing backed by SQLAlchemy.

Every state transition on :class:`~agent_inbox.models.InboxSession` is a
single conditional ``UPDATE`` whose ``WHERE`` clause carries the precondition
(current status, assignee, ``version``, remaining agent capacity). The
database evaluates it atomically, so a caller that loses a race sees zero
affected rows instead of overwriting someone else's claim.

Reads that feed a write decision use ``populate_existing`` so objects already
in the identity map are refreshed from the database.
"""

from __future__ import annotations

import datetime as dt
from typing import Any, Iterable, Protocol, Sequence, cast
from uuid import UUID

from sqlalchemy import ColumnElement, and_, func, or_, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.orm import Session, aliased

from ..models import (
    AgentProfile,
    AssignmentConfig,
    InboxSession,
    Resolution,
    Shift,
    Team,
    TeamMember,
    User,
)
from .models import SessionStatus

_OPEN_STATUSES = (SessionStatus.UNASSIGNED.value, SessionStatus.ASSIGNED.value)


def _rowcount(result: Any) -> int:
    cursor_result = cast(CursorResult[Any], result)
    return int(cursor_result.rowcount or 0)


def _activity_column() -> ColumnElement[Any]:
    return func.coalesce(InboxSession.last_message_at, InboxSession.created_at)


class InboxRepository(Protocol):
    """Persistence abstraction used by the routing services."""

    tenant_id: UUID

    # users and presence
    def get_user(self, user_id: UUID) -> User | None: ...

    def get_profile(self, user_id: UUID, *, lock: bool = False) -> AgentProfile | None: ...

    def add_profile(self, profile: AgentProfile) -> AgentProfile: ...

    def active_session_counts(self, agent_ids: Iterable[UUID]) -> dict[UUID, int]: ...

    def assignment_totals(
        self, agent_ids: Iterable[UUID], since: dt.datetime | None = None
    ) -> dict[UUID, int]: ...

    # teams
    def get_team(self, team_id: UUID) -> Team | None: ...

    def list_teams(self, *, active_only: bool = True) -> list[Team]: ...

    def get_default_team(self) -> Team | None: ...

    def add_team(self, team: Team) -> Team: ...

    def clear_default_team(self, keep_team_id: UUID) -> None: ...

    def get_member(self, team_id: UUID, user_id: UUID) -> TeamMember | None: ...

    def add_member(self, member: TeamMember) -> TeamMember: ...

    def team_ids_for_user(self, user_id: UUID) -> list[UUID]: ...

    def team_candidates(self, team_id: UUID) -> list[AgentProfile]: ...

    def get_assignment_config(self, team_id: UUID | None) -> AssignmentConfig | None: ...

    def add_assignment_config(self, config: AssignmentConfig) -> AssignmentConfig: ...

    def advance_rotation_cursor(self, team_id: UUID, agent_id: UUID) -> None: ...

    def add_shift(self, shift: Shift) -> Shift: ...

    def users_on_shift(
        self, user_ids: Sequence[UUID], team_id: UUID, now: dt.datetime
    ) -> set[UUID]: ...

    # sessions
    def get_session(self, session_id: UUID) -> InboxSession | None: ...

    def find_open_session(self, contact_id: str, channel: str) -> InboxSession | None: ...

    def add_session(self, session: InboxSession) -> InboxSession: ...

    def queued_sessions(
        self, team_id: UUID | None, *, include_unteamed: bool = False, limit: int | None = None
    ) -> list[InboxSession]: ...

    def claim_session(
        self,
        session_id: UUID,
        agent_id: UUID,
        team_id: UUID | None,
        max_chats: int,
        now: dt.datetime,
    ) -> bool: ...

    def transfer_session(
        self,
        session: InboxSession,
        *,
        agent_id: UUID | None,
        team_id: UUID | None,
        max_chats: int | None,
        context: dict[str, Any],
        now: dt.datetime,
    ) -> bool: ...

    def route_to_team(self, session: InboxSession, team_id: UUID, now: dt.datetime) -> bool: ...

    def resolve_session(self, session: InboxSession, agent_id: UUID, now: dt.datetime) -> bool: ...

    def update_context(self, session: InboxSession, context: dict[str, Any], now: dt.datetime) -> bool: ...

    def touch_session(self, session_id: UUID, now: dt.datetime) -> None: ...

    def add_resolution(self, resolution: Resolution) -> Resolution: ...

    def get_resolution(self, session_id: UUID) -> Resolution | None: ...

    def stale_candidates(
        self,
        *,
        before: dt.datetime | None = None,
        start: dt.datetime | None = None,
        end: dt.datetime | None = None,
        limit: int | None = None,
    ) -> list[InboxSession]: ...

    # stats
    def count_sessions(
        self, team_id: UUID, status: SessionStatus, *, include_unteamed: bool = False
    ) -> int: ...

    def assigned_wait_samples(
        self, team_id: UUID, since: dt.datetime
    ) -> list[tuple[dt.datetime, dt.datetime]]: ...

    def unassigned_created_at(
        self, team_id: UUID, *, include_unteamed: bool = False
    ) -> list[dt.datetime]: ...

    def resolution_samples(
        self, team_id: UUID, since: dt.datetime
    ) -> list[tuple[dt.datetime | None, dt.datetime]]: ...


class SqlAlchemyInboxRepository:
    """Tenant-scoped :class:`InboxRepository` over a SQLAlchemy session.

    The caller owns the transaction: nothing here commits.
    """

    def __init__(self, session: Session, *, tenant_id: UUID) -> None:
        self._session = session
        self.tenant_id = tenant_id

    # ------------------------------------------------------------------
    # Users and presence

    def get_user(self, user_id: UUID) -> User | None:
        user = self._session.get(User, user_id)
        if user is None or user.organization_id != self.tenant_id:
            return None
        return user

    def get_profile(self, user_id: UUID, *, lock: bool = False) -> AgentProfile | None:
        stmt = select(AgentProfile).where(
            AgentProfile.user_id == user_id,
            AgentProfile.tenant_id == self.tenant_id,
        )
        if lock:
            stmt = stmt.with_for_update()
        return self._session.execute(
            stmt.execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def add_profile(self, profile: AgentProfile) -> AgentProfile:
        self._session.add(profile)
        self._session.flush()
        return profile

    def active_session_counts(self, agent_ids: Iterable[UUID]) -> dict[UUID, int]:
        ids = list(agent_ids)
        if not ids:
            return {}
        rows = self._session.execute(
            select(InboxSession.assigned_agent_id, func.count())
            .where(
                InboxSession.tenant_id == self.tenant_id,
                InboxSession.status == SessionStatus.ASSIGNED.value,
                InboxSession.assigned_agent_id.in_(ids),
            )
            .group_by(InboxSession.assigned_agent_id)
        ).all()
        counts = {agent_id: 0 for agent_id in ids}
        counts.update({agent_id: int(count) for agent_id, count in rows})
        return counts

    def assignment_totals(
        self, agent_ids: Iterable[UUID], since: dt.datetime | None = None
    ) -> dict[UUID, int]:
        """Sessions currently owned by each agent that were assigned since ``since``.

        Resolved sessions count too; ``since=None`` counts all time.
        """

        ids = list(agent_ids)
        if not ids:
            return {}
        stmt = (
            select(InboxSession.assigned_agent_id, func.count())
            .where(
                InboxSession.tenant_id == self.tenant_id,
                InboxSession.assigned_agent_id.in_(ids),
            )
            .group_by(InboxSession.assigned_agent_id)
        )
        if since is not None:
            stmt = stmt.where(InboxSession.assigned_at >= since)
        counts = {agent_id: 0 for agent_id in ids}
        counts.update({agent_id: int(count) for agent_id, count in self._session.execute(stmt).all()})
        return counts

    # ------------------------------------------------------------------
    # Teams

    def get_team(self, team_id: UUID) -> Team | None:
        return self._session.execute(
            select(Team)
            .where(Team.id == team_id, Team.tenant_id == self.tenant_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def list_teams(self, *, active_only: bool = True) -> list[Team]:
        stmt = select(Team).where(Team.tenant_id == self.tenant_id)
        if active_only:
            stmt = stmt.where(Team.is_active.is_(True))
        return list(self._session.execute(stmt.order_by(Team.name)).scalars())

    def get_default_team(self) -> Team | None:
        return self._session.execute(
            select(Team)
            .where(
                Team.tenant_id == self.tenant_id,
                Team.is_default.is_(True),
                Team.is_active.is_(True),
            )
            .limit(1)
        ).scalar_one_or_none()

    def add_team(self, team: Team) -> Team:
        self._session.add(team)
        self._session.flush()
        return team

    def clear_default_team(self, keep_team_id: UUID) -> None:
        self._session.execute(
            update(Team)
            .where(Team.tenant_id == self.tenant_id, Team.id != keep_team_id)
            .values(is_default=False)
            .execution_options(synchronize_session=False)
        )

    def get_member(self, team_id: UUID, user_id: UUID) -> TeamMember | None:
        return self._session.execute(
            select(TeamMember).where(
                TeamMember.tenant_id == self.tenant_id,
                TeamMember.team_id == team_id,
                TeamMember.user_id == user_id,
            )
        ).scalar_one_or_none()

    def add_member(self, member: TeamMember) -> TeamMember:
        self._session.add(member)
        self._session.flush()
        return member

    def team_ids_for_user(self, user_id: UUID) -> list[UUID]:
        return list(
            self._session.execute(
                select(TeamMember.team_id).where(
                    TeamMember.tenant_id == self.tenant_id,
                    TeamMember.user_id == user_id,
                    TeamMember.is_active.is_(True),
                ).order_by(TeamMember.created_at, TeamMember.team_id)
            ).scalars()
        )

    def team_candidates(self, team_id: UUID) -> list[AgentProfile]:
        """Active, online profiles of active team members."""

        stmt = (
            select(AgentProfile)
            .join(TeamMember, TeamMember.user_id == AgentProfile.user_id)
            .join(User, User.id == AgentProfile.user_id)
            .where(
                TeamMember.tenant_id == self.tenant_id,
                TeamMember.team_id == team_id,
                TeamMember.is_active.is_(True),
                AgentProfile.tenant_id == self.tenant_id,
                AgentProfile.is_active.is_(True),
                AgentProfile.status == "online",
                User.is_active.is_(True),
            )
            .execution_options(populate_existing=True)
        )
        return list(self._session.execute(stmt).scalars())

    def get_assignment_config(self, team_id: UUID | None) -> AssignmentConfig | None:
        """Return the team's config, falling back to the tenant-wide one."""

        if team_id is not None:
            config = self._session.execute(
                select(AssignmentConfig).where(
                    AssignmentConfig.tenant_id == self.tenant_id,
                    AssignmentConfig.team_id == team_id,
                )
            ).scalar_one_or_none()
            if config is not None:
                return config
        return self._session.execute(
            select(AssignmentConfig).where(
                AssignmentConfig.tenant_id == self.tenant_id,
                AssignmentConfig.team_id.is_(None),
            )
        ).scalar_one_or_none()

    def add_assignment_config(self, config: AssignmentConfig) -> AssignmentConfig:
        self._session.add(config)
        self._session.flush()
        return config

    def advance_rotation_cursor(self, team_id: UUID, agent_id: UUID) -> None:
        self._session.execute(
            update(Team)
            .where(Team.id == team_id, Team.tenant_id == self.tenant_id)
            .values(rotation_cursor=agent_id)
            .execution_options(synchronize_session=False)
        )

    def add_shift(self, shift: Shift) -> Shift:
        self._session.add(shift)
        self._session.flush()
        return shift

    def users_on_shift(
        self, user_ids: Sequence[UUID], team_id: UUID, now: dt.datetime
    ) -> set[UUID]:
        if not user_ids:
            return set()
        rows = self._session.execute(
            select(Shift.user_id).where(
                Shift.tenant_id == self.tenant_id,
                Shift.user_id.in_(list(user_ids)),
                or_(Shift.team_id == team_id, Shift.team_id.is_(None)),
                Shift.start_time <= now,
                Shift.end_time > now,
            )
        ).scalars()
        return set(rows)

    # ------------------------------------------------------------------
    # Sessions

    def get_session(self, session_id: UUID) -> InboxSession | None:
        return self._session.execute(
            select(InboxSession)
            .where(InboxSession.id == session_id, InboxSession.tenant_id == self.tenant_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def find_open_session(self, contact_id: str, channel: str) -> InboxSession | None:
        return self._session.execute(
            select(InboxSession)
            .where(
                InboxSession.tenant_id == self.tenant_id,
                InboxSession.contact_id == contact_id,
                InboxSession.channel == channel,
                InboxSession.status.in_(_OPEN_STATUSES),
            )
            .order_by(InboxSession.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def add_session(self, session: InboxSession) -> InboxSession:
        self._session.add(session)
        self._session.flush()
        return session

    def queued_sessions(
        self, team_id: UUID | None, *, include_unteamed: bool = False, limit: int | None = None
    ) -> list[InboxSession]:
        """Unassigned sessions, most urgent and then longest waiting first."""

        stmt = select(InboxSession).where(
            InboxSession.tenant_id == self.tenant_id,
            InboxSession.status == SessionStatus.UNASSIGNED.value,
        )
        if team_id is not None:
            stmt = stmt.where(self._team_filter(team_id, include_unteamed))
        stmt = stmt.order_by(
            InboxSession.priority.desc(),
            _activity_column().asc(),
            InboxSession.created_at.asc(),
            InboxSession.id.asc(),
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(
            self._session.execute(stmt.execution_options(populate_existing=True)).scalars()
        )

    def _capacity_guard(self, agent_id: UUID, max_chats: int) -> ColumnElement[bool]:
        counted = aliased(InboxSession)
        active = (
            select(func.count())
            .select_from(counted)
            .where(
                counted.assigned_agent_id == agent_id,
                counted.status == SessionStatus.ASSIGNED.value,
            )
            .scalar_subquery()
        )
        return active < max_chats

    def claim_session(
        self,
        session_id: UUID,
        agent_id: UUID,
        team_id: UUID | None,
        max_chats: int,
        now: dt.datetime,
    ) -> bool:
        """Move ``unassigned -> assigned`` if the agent still has capacity.

        The agent's profile row is locked first so concurrent claims for the
        same agent serialise on Postgres.
        """

        self.get_profile(agent_id, lock=True)
        values: dict[str, Any] = {
            "status": SessionStatus.ASSIGNED.value,
            "assigned_agent_id": agent_id,
            "assigned_at": now,
            "first_assigned_at": func.coalesce(InboxSession.first_assigned_at, now),
            "updated_at": now,
            "version": InboxSession.version + 1,
        }
        if team_id is not None:
            values["assigned_team_id"] = team_id
        result = self._session.execute(
            update(InboxSession)
            .where(
                InboxSession.id == session_id,
                InboxSession.tenant_id == self.tenant_id,
                InboxSession.status == SessionStatus.UNASSIGNED.value,
                self._capacity_guard(agent_id, max_chats),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return _rowcount(result) == 1

    def transfer_session(
        self,
        session: InboxSession,
        *,
        agent_id: UUID | None,
        team_id: UUID | None,
        max_chats: int | None,
        context: dict[str, Any],
        now: dt.datetime,
    ) -> bool:
        """Reassign a non-resolved session read at ``session.version``.

        With an agent target the session becomes ``assigned``; a team-only
        target leaves it ``unassigned`` in that team's queue.
        """

        conditions: list[ColumnElement[bool]] = [
            InboxSession.id == session.id,
            InboxSession.tenant_id == self.tenant_id,
            InboxSession.status != SessionStatus.RESOLVED.value,
            InboxSession.version == session.version,
        ]
        values: dict[str, Any] = {
            "context": context,
            "updated_at": now,
            "version": InboxSession.version + 1,
        }
        if agent_id is not None:
            if max_chats is not None and session.assigned_agent_id != agent_id:
                self.get_profile(agent_id, lock=True)
                conditions.append(self._capacity_guard(agent_id, max_chats))
            values.update(
                status=SessionStatus.ASSIGNED.value,
                assigned_agent_id=agent_id,
                assigned_at=now,
                first_assigned_at=func.coalesce(InboxSession.first_assigned_at, now),
            )
            if team_id is not None:
                values["assigned_team_id"] = team_id
        else:
            values.update(
                status=SessionStatus.UNASSIGNED.value,
                assigned_agent_id=None,
                assigned_team_id=team_id,
                assigned_at=None,
            )
        result = self._session.execute(
            update(InboxSession)
            .where(and_(*conditions))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return _rowcount(result) == 1

    def route_to_team(self, session: InboxSession, team_id: UUID, now: dt.datetime) -> bool:
        """Point a still-queued session at ``team_id`` without assigning it."""

        result = self._session.execute(
            update(InboxSession)
            .where(
                InboxSession.id == session.id,
                InboxSession.tenant_id == self.tenant_id,
                InboxSession.status == SessionStatus.UNASSIGNED.value,
                InboxSession.version == session.version,
            )
            .values(assigned_team_id=team_id, updated_at=now, version=InboxSession.version + 1)
            .execution_options(synchronize_session=False)
        )
        return _rowcount(result) == 1

    def resolve_session(self, session: InboxSession, agent_id: UUID, now: dt.datetime) -> bool:
        result = self._session.execute(
            update(InboxSession)
            .where(
                InboxSession.id == session.id,
                InboxSession.tenant_id == self.tenant_id,
                InboxSession.status == SessionStatus.ASSIGNED.value,
                InboxSession.assigned_agent_id == agent_id,
                InboxSession.version == session.version,
            )
            .values(
                status=SessionStatus.RESOLVED.value,
                updated_at=now,
                version=InboxSession.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return _rowcount(result) == 1

    def update_context(self, session: InboxSession, context: dict[str, Any], now: dt.datetime) -> bool:
        result = self._session.execute(
            update(InboxSession)
            .where(
                InboxSession.id == session.id,
                InboxSession.tenant_id == self.tenant_id,
                InboxSession.version == session.version,
            )
            .values(context=context, updated_at=now, version=InboxSession.version + 1)
            .execution_options(synchronize_session=False)
        )
        return _rowcount(result) == 1

    def touch_session(self, session_id: UUID, now: dt.datetime) -> None:
        self._session.execute(
            update(InboxSession)
            .where(InboxSession.id == session_id, InboxSession.tenant_id == self.tenant_id)
            .values(last_message_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    def add_resolution(self, resolution: Resolution) -> Resolution:
        self._session.add(resolution)
        self._session.flush()
        return resolution

    def get_resolution(self, session_id: UUID) -> Resolution | None:
        return self._session.execute(
            select(Resolution).where(
                Resolution.tenant_id == self.tenant_id,
                Resolution.session_id == session_id,
            )
        ).scalar_one_or_none()

    def stale_candidates(
        self,
        *,
        before: dt.datetime | None = None,
        start: dt.datetime | None = None,
        end: dt.datetime | None = None,
        limit: int | None = None,
    ) -> list[InboxSession]:
        activity = _activity_column()
        stmt = select(InboxSession).where(
            InboxSession.tenant_id == self.tenant_id,
            InboxSession.status.in_(_OPEN_STATUSES),
        )
        if before is not None:
            stmt = stmt.where(activity < before)
        if start is not None:
            stmt = stmt.where(activity >= start)
        if end is not None:
            stmt = stmt.where(activity <= end)
        stmt = stmt.order_by(activity.asc(), InboxSession.id.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(
            self._session.execute(stmt.execution_options(populate_existing=True)).scalars()
        )

    # ------------------------------------------------------------------
    # Stats

    def _team_filter(self, team_id: UUID, include_unteamed: bool) -> ColumnElement[bool]:
        team_filter = InboxSession.assigned_team_id == team_id
        if include_unteamed:
            team_filter = or_(team_filter, InboxSession.assigned_team_id.is_(None))
        return team_filter

    def count_sessions(
        self, team_id: UUID, status: SessionStatus, *, include_unteamed: bool = False
    ) -> int:
        return int(
            self._session.execute(
                select(func.count())
                .select_from(InboxSession)
                .where(
                    InboxSession.tenant_id == self.tenant_id,
                    self._team_filter(team_id, include_unteamed),
                    InboxSession.status == status.value,
                )
            ).scalar_one()
        )

    def assigned_wait_samples(
        self, team_id: UUID, since: dt.datetime
    ) -> list[tuple[dt.datetime, dt.datetime]]:
        """``(created_at, first_assigned_at)`` for first pickups since ``since``."""

        rows = self._session.execute(
            select(InboxSession.created_at, InboxSession.first_assigned_at).where(
                InboxSession.tenant_id == self.tenant_id,
                InboxSession.assigned_team_id == team_id,
                InboxSession.first_assigned_at.is_not(None),
                InboxSession.first_assigned_at >= since,
            )
        ).all()
        return [(created_at, assigned_at) for created_at, assigned_at in rows]

    def unassigned_created_at(
        self, team_id: UUID, *, include_unteamed: bool = False
    ) -> list[dt.datetime]:
        """Creation times of queued sessions that were never picked up."""

        return list(
            self._session.execute(
                select(InboxSession.created_at).where(
                    InboxSession.tenant_id == self.tenant_id,
                    self._team_filter(team_id, include_unteamed),
                    InboxSession.status == SessionStatus.UNASSIGNED.value,
                    InboxSession.first_assigned_at.is_(None),
                )
            ).scalars()
        )

    def resolution_samples(
        self, team_id: UUID, since: dt.datetime
    ) -> list[tuple[dt.datetime | None, dt.datetime]]:
        rows = self._session.execute(
            select(
                func.coalesce(InboxSession.first_assigned_at, InboxSession.assigned_at),
                Resolution.created_at,
            )
            .join(Resolution, Resolution.session_id == InboxSession.id)
            .where(
                Resolution.tenant_id == self.tenant_id,
                InboxSession.assigned_team_id == team_id,
                Resolution.created_at >= since,
            )
        ).all()
        return [(assigned_at, resolved_at) for assigned_at, resolved_at in rows]


def tenants_with_queue(session: Session) -> list[UUID]:
    """Tenants that currently have at least one unassigned session."""

    return list(
        session.execute(
            select(InboxSession.tenant_id)
            .where(InboxSession.status == SessionStatus.UNASSIGNED.value)
            .distinct()
        ).scalars()
    )


__all__ = ["InboxRepository", "SqlAlchemyInboxRepository", "tenants_with_queue"]
