"""Agent presence and routing eligibility."""

from __future__ import annotations

import datetime as dt
import logging
from uuid import UUID

from ..models import AgentProfile
from .audit import PRESENCE_CHANGED, AuditEvent, AuditSink, LoggingAuditSink, emit_safely
from .errors import AgentNotFoundError, InboxValidationError
from .models import PRESENCE_REASONS, AgentStatus, PresenceReason
from .repository import InboxRepository

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHATS = 3


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _coerce_status(value: str | AgentStatus) -> AgentStatus:
    try:
        return AgentStatus(value)
    except ValueError as exc:
        raise InboxValidationError(f"Unknown presence status: {value!r}", field="status") from exc


def _coerce_reason(value: str | PresenceReason) -> PresenceReason:
    try:
        return PresenceReason(value)
    except ValueError as exc:
        raise InboxValidationError(f"Unknown presence reason: {value!r}", field="reason") from exc


def resolve_reason(
    status: str | AgentStatus, reason: str | PresenceReason | None
) -> tuple[AgentStatus, PresenceReason]:
    """Validate ``reason`` against ``status`` and fill in the default."""

    coarse = _coerce_status(status)
    allowed = PRESENCE_REASONS[coarse]
    if reason is None or reason == "":
        return coarse, allowed[0]
    fine = _coerce_reason(reason)
    if fine not in allowed:
        raise InboxValidationError(
            f"Reason '{fine.value}' is not valid while {coarse.value}.", field="reason"
        )
    return coarse, fine


class PresenceService:
    """Maintain agent profiles and answer "can this agent take a chat?"."""

    def __init__(
        self,
        repository: InboxRepository,
        *,
        audit_sink: AuditSink | None = None,
    ) -> None:
        self._repository = repository
        self._audit = audit_sink or LoggingAuditSink()

    # ------------------------------------------------------------------
    # Profile lifecycle

    def ensure_profile(
        self, agent_id: UUID, *, max_concurrent_chats: int | None = None
    ) -> AgentProfile:
        """Create the profile if missing; ``max_concurrent_chats=None`` keeps the current cap."""

        if max_concurrent_chats is not None and max_concurrent_chats < 1:
            raise InboxValidationError(
                "max_concurrent_chats must be positive.", field="max_concurrent_chats"
            )
        profile = self._repository.get_profile(agent_id)
        if profile is not None:
            if max_concurrent_chats is not None:
                profile.max_concurrent_chats = max_concurrent_chats
            profile.is_active = True
            return profile
        if self._repository.get_user(agent_id) is None:
            raise AgentNotFoundError(f"User {agent_id} not found")
        return self._repository.add_profile(
            AgentProfile(
                user_id=agent_id,
                tenant_id=self._repository.tenant_id,
                status=AgentStatus.OFFLINE.value,
                presence_reason=PresenceReason.UNAVAILABLE.value,
                max_concurrent_chats=max_concurrent_chats or DEFAULT_MAX_CHATS,
            )
        )

    def deactivate(self, agent_id: UUID, *, actor_id: UUID | None = None) -> AgentProfile:
        profile = self._require_profile(agent_id)
        self._apply(profile, AgentStatus.OFFLINE, PresenceReason.UNAVAILABLE, actor_id, "deactivated")
        profile.is_active = False
        return profile

    def get_presence(self, agent_id: UUID) -> AgentProfile:
        return self._require_profile(agent_id)

    # ------------------------------------------------------------------
    # Presence changes

    def set_presence(
        self,
        agent_id: UUID,
        status: str | AgentStatus,
        reason: str | PresenceReason | None = None,
        *,
        actor_id: UUID | None = None,
    ) -> AgentProfile:
        """Change an agent's presence.

        Existing assignments are left untouched; going offline only stops new
        sessions from being routed to the agent.
        """

        coarse, fine = resolve_reason(status, reason)
        profile = self._repository.get_profile(agent_id)
        if profile is None:
            profile = self.ensure_profile(agent_id)
        if not profile.is_active:
            raise AgentNotFoundError(f"Agent {agent_id} is deactivated")
        self._apply(profile, coarse, fine, actor_id or agent_id, "self")
        return profile

    def force_offline(self, agent_id: UUID, *, reason: str = "logout") -> AgentProfile | None:
        """System-initiated offline, e.g. on logout or revoked credentials."""

        profile = self._repository.get_profile(agent_id)
        if profile is None:
            return None
        self._apply(profile, AgentStatus.OFFLINE, PresenceReason.UNAVAILABLE, None, reason)
        return profile

    def _apply(
        self,
        profile: AgentProfile,
        status: AgentStatus,
        reason: PresenceReason,
        actor_id: UUID | None,
        source: str,
    ) -> None:
        previous = profile.status
        profile.status = status.value
        profile.presence_reason = reason.value
        profile.status_changed_at = _utcnow()
        logger.info("Agent %s presence %s -> %s (%s)", profile.user_id, previous, status.value, source)
        emit_safely(
            self._audit,
            AuditEvent(
                action=PRESENCE_CHANGED,
                actor_id=actor_id,
                resource_id=profile.user_id,
                tenant_id=self._repository.tenant_id,
                details={
                    "from": previous,
                    "to": status.value,
                    "reason": reason.value,
                    "source": source,
                },
            ),
        )

    def _require_profile(self, agent_id: UUID) -> AgentProfile:
        profile = self._repository.get_profile(agent_id)
        if profile is None:
            raise AgentNotFoundError(f"Agent profile for {agent_id} not found")
        return profile

    # ------------------------------------------------------------------
    # Eligibility

    def is_eligible(self, agent_id: UUID, team_id: UUID | None, now: dt.datetime | None = None) -> bool:
        """Return whether ``agent_id`` may receive a new session for ``team_id``.

        ``team_id=None`` skips the membership and shift checks; manual claims
        on sessions that have no team use it.
        """

        now = now or _utcnow()
        profile = self._repository.get_profile(agent_id)
        if profile is None or not profile.is_active or profile.status != AgentStatus.ONLINE.value:
            return False
        user = self._repository.get_user(agent_id)
        if user is None or not user.is_active:
            return False
        load = self._repository.active_session_counts([agent_id]).get(agent_id, 0)
        if load >= profile.max_concurrent_chats:
            return False
        if team_id is None:
            return True
        member = self._repository.get_member(team_id, agent_id)
        if member is None or not member.is_active:
            return False
        team = self._repository.get_team(team_id)
        if team is None:
            return False
        if team.enforce_shifts:
            return agent_id in self._repository.users_on_shift([agent_id], team_id, now)
        return True

    def eligible_agents(
        self, team_id: UUID, now: dt.datetime | None = None
    ) -> list[tuple[AgentProfile, int]]:
        """Eligible agents of a team with their current load, ordered by user id."""

        now = now or _utcnow()
        team = self._repository.get_team(team_id)
        if team is None or not team.is_active:
            return []
        profiles = self._repository.team_candidates(team_id)
        if team.enforce_shifts:
            on_shift = self._repository.users_on_shift([p.user_id for p in profiles], team_id, now)
            profiles = [p for p in profiles if p.user_id in on_shift]
        loads = self._repository.active_session_counts(p.user_id for p in profiles)
        eligible = [
            (profile, loads.get(profile.user_id, 0))
            for profile in profiles
            if loads.get(profile.user_id, 0) < profile.max_concurrent_chats
        ]
        eligible.sort(key=lambda item: str(item[0].user_id))
        return eligible


__all__ = ["PresenceService", "resolve_reason"]
