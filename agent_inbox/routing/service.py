"""Facade used by the HTTP routers, the scheduler and the CLI tools."""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Mapping, Sequence
from uuid import UUID

from ..core.config import InboxSettings, get_inbox_settings
from ..models import AgentProfile, InboxSession
from .audit import AuditSink, LoggingAuditSink
from .bulk import BulkOperations
from .engine import AssignmentEngine
from .errors import InboxValidationError, TeamNotFoundError
from .messaging import MessagingDispatcher
from .models import (
    AgentStatus,
    ClaimResult,
    ReengageSummary,
    ResolutionResult,
    SessionStatus,
    StaleSelection,
    TeamQueueStats,
    TransferResult,
)
from .presence import PresenceService
from .repository import InboxRepository
from .resolution import ResolutionWorkflow
from .stats import QueueStatsAggregator
from .teams import TeamRegistry

logger = logging.getLogger(__name__)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class InboxService:
    """High-level orchestration of routing operations for one tenant."""

    def __init__(
        self,
        repository: InboxRepository,
        *,
        dispatcher: MessagingDispatcher | None = None,
        audit_sink: AuditSink | None = None,
        settings: InboxSettings | None = None,
    ) -> None:
        self._repository = repository
        self._settings = settings or get_inbox_settings()
        audit = audit_sink or LoggingAuditSink()
        self.presence = PresenceService(repository, audit_sink=audit)
        self.teams = TeamRegistry(repository, audit_sink=audit)
        self.engine = AssignmentEngine(
            repository,
            self.presence,
            dispatcher=dispatcher,
            audit_sink=audit,
            batch_limit=self._settings.assign_batch_limit,
        )
        self.stats = QueueStatsAggregator(
            repository, self.presence, lookback_hours=self._settings.stats_lookback_hours
        )
        self.bulk = BulkOperations(
            repository, dispatcher=dispatcher, audit_sink=audit, settings=self._settings
        )
        self.resolution = ResolutionWorkflow(repository, audit_sink=audit)

    @property
    def tenant_id(self) -> UUID:
        return self._repository.tenant_id

    # ------------------------------------------------------------------
    # Presence

    def set_presence(
        self, agent_id: UUID, status: str, reason: str | None = None
    ) -> tuple[AgentProfile, int]:
        """Update presence; going online triggers a pass over the agent's teams.

        Returns the profile and how many sessions that pass assigned.
        """

        profile = self.presence.set_presence(agent_id, status, reason)
        assigned = 0
        if profile.status == AgentStatus.ONLINE.value and self._settings.assign_on_online:
            for team_id in self._repository.team_ids_for_user(agent_id):
                assigned += self.engine.assign_queue(team_id, actor_id=agent_id)["assigned"]
        return profile, assigned

    def get_presence(self, agent_id: UUID) -> AgentProfile:
        return self.presence.get_presence(agent_id)

    # ------------------------------------------------------------------
    # Intake and queue

    def record_inbound(
        self,
        contact_id: str,
        *,
        contact_name: str | None = None,
        channel: str = "whatsapp",
        team_id: UUID | None = None,
        priority: int = 0,
        context: Mapping[str, Any] | None = None,
        now: dt.datetime | None = None,
    ) -> tuple[InboxSession, bool]:
        """Get or create the open session for a contact and touch its activity.

        Returns ``(session, created)``.
        """

        now = now or _utcnow()
        contact_id = contact_id.strip()
        if not contact_id:
            raise InboxValidationError("contact_id is required.", field="contact_id")
        channel = channel.strip().lower() or "whatsapp"
        existing = self._repository.find_open_session(contact_id, channel)
        if existing is not None:
            self._repository.touch_session(existing.id, now)
            return self._repository.get_session(existing.id) or existing, False

        if team_id is not None:
            if self._repository.get_team(team_id) is None:
                raise TeamNotFoundError(f"Team {team_id} not found")
        else:
            default_team = self._repository.get_default_team()
            team_id = default_team.id if default_team else None
        session = self._repository.add_session(
            InboxSession(
                tenant_id=self.tenant_id,
                contact_id=contact_id,
                contact_name=contact_name,
                channel=channel,
                status=SessionStatus.UNASSIGNED.value,
                assigned_team_id=team_id,
                priority=priority,
                context=dict(context or {}),
                last_message_at=now,
                created_at=now,
                updated_at=now,
            )
        )
        logger.info("Queued new session %s on %s", session.id, channel)
        return session, True

    def list_queue(self, team_id: UUID | None = None, *, limit: int = 100) -> list[InboxSession]:
        return self._repository.queued_sessions(team_id, limit=limit)

    # ------------------------------------------------------------------
    # Routing operations

    def assign_queue(self, team_id: UUID | None = None, *, actor_id: UUID | None = None) -> dict[str, int]:
        return self.engine.assign_queue(team_id, actor_id=actor_id)

    def assign_to_agents(
        self, assignments: Sequence[tuple[UUID, int]], *, actor_id: UUID | None = None
    ) -> dict[str, int]:
        return self.engine.assign_to_agents(assignments, actor_id=actor_id)

    def assign_to_teams(
        self, team_ids: Sequence[UUID], *, actor_id: UUID | None = None
    ) -> dict[str, int]:
        return self.engine.assign_to_teams(team_ids, actor_id=actor_id)

    def claim_session(self, session_id: UUID, agent_id: UUID) -> ClaimResult:
        return self.engine.claim_session(session_id, agent_id)

    def get_queue_stats(self, team_ids: Sequence[UUID] | None = None) -> list[TeamQueueStats]:
        return self.stats.get_queue_stats(team_ids)

    def bulk_transfer(
        self,
        session_ids: Sequence[UUID],
        *,
        target_agent_id: UUID | None = None,
        target_team_id: UUID | None = None,
        reason: str | None = None,
        actor_id: UUID | None = None,
    ) -> list[TransferResult]:
        return self.bulk.bulk_transfer(
            session_ids,
            target_agent_id=target_agent_id,
            target_team_id=target_team_id,
            reason=reason,
            actor_id=actor_id,
        )

    def get_expired_count(self, selection: StaleSelection) -> dict[str, int]:
        return self.bulk.get_expired_count(selection)

    def bulk_reengage(self, selection: StaleSelection, *, actor_id: UUID | None = None) -> ReengageSummary:
        return self.bulk.bulk_reengage(selection, actor_id=actor_id)

    def resolve_session(
        self,
        session_id: UUID,
        agent_id: UUID,
        *,
        category: str | None = None,
        notes: str | None = None,
        fields: Mapping[str, Any] | None = None,
        skip: bool = False,
    ) -> ResolutionResult:
        return self.resolution.resolve_session(
            session_id, agent_id, category=category, notes=notes, fields=fields, skip=skip
        )

    def attach_csat(self, session_id: UUID, score: int, feedback: str | None = None):
        return self.resolution.attach_csat(session_id, score, feedback)


__all__ = ["InboxService"]
