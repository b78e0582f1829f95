"""Team registry: teams, membership, assignment config, shifts and wrap-up forms."""

from __future__ import annotations

import datetime as dt
from typing import Any, Mapping
from uuid import UUID

from ..models import AssignmentConfig, Shift, Team, TeamMember
from .audit import TEAM_UPDATED, AuditEvent, AuditSink, LoggingAuditSink, emit_safely
from .errors import AgentNotFoundError, InboxValidationError, TeamNotFoundError
from .models import MemberRole, RoutingStrategy, WrapUpForm, load_priority, load_time_window
from .repository import InboxRepository
from .schedule import TeamSchedule, validate_timezone

NO_AGENT_ACTIONS = ("queue", "reply")


def _as_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def _coerce_strategy(value: str) -> RoutingStrategy:
    try:
        return RoutingStrategy(value)
    except ValueError as exc:
        raise InboxValidationError(f"Unknown routing strategy: {value!r}", field="strategy") from exc


class TeamRegistry:
    def __init__(
        self,
        repository: InboxRepository,
        *,
        audit_sink: AuditSink | None = None,
    ) -> None:
        self._repository = repository
        self._audit = audit_sink or LoggingAuditSink()

    def _emit(self, team_id: UUID, actor_id: UUID | None, change: str, **details: Any) -> None:
        emit_safely(
            self._audit,
            AuditEvent(
                action=TEAM_UPDATED,
                actor_id=actor_id,
                resource_id=team_id,
                tenant_id=self._repository.tenant_id,
                details={"change": change, **details},
            ),
        )

    def get_team(self, team_id: UUID) -> Team:
        team = self._repository.get_team(team_id)
        if team is None:
            raise TeamNotFoundError(f"Team {team_id} not found")
        return team

    def list_teams(self) -> list[Team]:
        return self._repository.list_teams(active_only=False)

    def create_team(
        self,
        name: str,
        *,
        description: str | None = None,
        routing_strategy: str = RoutingStrategy.ROUND_ROBIN.value,
        is_default: bool = False,
        enforce_shifts: bool = False,
        actor_id: UUID | None = None,
    ) -> Team:
        name = name.strip()
        if not name:
            raise InboxValidationError("Team name is required.", field="name")
        if any(team.name == name for team in self._repository.list_teams(active_only=False)):
            raise InboxValidationError(f"Team '{name}' already exists.", field="name")
        team = self._repository.add_team(
            Team(
                tenant_id=self._repository.tenant_id,
                name=name,
                description=description,
                routing_strategy=_coerce_strategy(routing_strategy).value,
                is_default=is_default,
                enforce_shifts=enforce_shifts,
            )
        )
        if is_default:
            self._repository.clear_default_team(team.id)
        self._emit(team.id, actor_id, "created", name=name)
        return team

    def add_member(
        self,
        team_id: UUID,
        user_id: UUID,
        *,
        role: str = MemberRole.MEMBER.value,
        actor_id: UUID | None = None,
    ) -> TeamMember:
        self.get_team(team_id)
        try:
            member_role = MemberRole(role)
        except ValueError as exc:
            raise InboxValidationError(f"Unknown member role: {role!r}", field="role") from exc
        if self._repository.get_user(user_id) is None:
            raise AgentNotFoundError(f"User {user_id} not found")
        member = self._repository.get_member(team_id, user_id)
        if member is not None:
            member.role = member_role.value
            member.is_active = True
        else:
            member = self._repository.add_member(
                TeamMember(
                    tenant_id=self._repository.tenant_id,
                    team_id=team_id,
                    user_id=user_id,
                    role=member_role.value,
                )
            )
        self._emit(team_id, actor_id, "member_added", user_id=str(user_id), role=member_role.value)
        return member

    def remove_member(self, team_id: UUID, user_id: UUID, *, actor_id: UUID | None = None) -> None:
        """Deactivate membership; assigned sessions stay with the agent."""

        member = self._repository.get_member(team_id, user_id)
        if member is None or not member.is_active:
            raise AgentNotFoundError(f"User {user_id} is not a member of team {team_id}")
        member.is_active = False
        self._emit(team_id, actor_id, "member_removed", user_id=str(user_id))

    def set_assignment_config(
        self,
        team_id: UUID | None,
        *,
        enabled: bool,
        strategy: str,
        settings: Mapping[str, Any] | None = None,
        actor_id: UUID | None = None,
    ) -> AssignmentConfig:
        """Create or replace the config for a team, or the tenant when ``team_id`` is None."""

        if team_id is not None:
            self.get_team(team_id)
        coerced = _coerce_strategy(strategy)
        settings_dict = dict(settings or {})
        if coerced is RoutingStrategy.SPECIFIC_AGENTS:
            agent_ids = settings_dict.get("agentIds")
            if not isinstance(agent_ids, list) or not agent_ids:
                raise InboxValidationError(
                    "specific_agents requires a non-empty settings.agentIds list.",
                    field="settings",
                )
            try:
                settings_dict["agentIds"] = [str(UUID(str(value))) for value in agent_ids]
            except ValueError as exc:
                raise InboxValidationError("settings.agentIds must be UUIDs.", field="settings") from exc
        load_priority(coerced, settings_dict)
        load_time_window(settings_dict)
        waterfall = settings_dict.get("waterfall")
        if waterfall is not None:
            if team_id is not None:
                raise InboxValidationError(
                    "settings.waterfall belongs on the tenant-wide config.", field="settings"
                )
            action = waterfall.get("noAgentAction", "queue") if isinstance(waterfall, dict) else None
            if action not in NO_AGENT_ACTIONS:
                raise InboxValidationError(
                    "settings.waterfall.noAgentAction must be 'queue' or 'reply'.", field="settings"
                )

        config = self._repository.get_assignment_config(team_id)
        if config is None or config.team_id != team_id:
            config = self._repository.add_assignment_config(
                AssignmentConfig(
                    tenant_id=self._repository.tenant_id,
                    team_id=team_id,
                    enabled=enabled,
                    strategy=coerced.value,
                    settings=settings_dict,
                )
            )
        else:
            config.enabled = enabled
            config.strategy = coerced.value
            config.settings = settings_dict
        if team_id is not None:
            self._emit(team_id, actor_id, "assignment_config", strategy=coerced.value, enabled=enabled)
        return config

    def set_wrap_up_form(
        self, team_id: UUID, raw: Mapping[str, Any] | None, *, actor_id: UUID | None = None
    ) -> WrapUpForm | None:
        team = self.get_team(team_id)
        form = WrapUpForm.parse(raw)
        team.wrap_up_form = form.to_dict() if form is not None else None
        self._emit(team_id, actor_id, "wrap_up_form", enabled=bool(form and form.enabled))
        return form

    def set_schedule(
        self, team_id: UUID, raw: Mapping[str, Any] | None, *, actor_id: UUID | None = None
    ) -> TeamSchedule | None:
        """Replace the team's opening hours; ``None`` keeps the team always open."""

        team = self.get_team(team_id)
        schedule = TeamSchedule.parse(raw)
        if schedule is not None:
            validate_timezone(schedule.timezone)
        team.schedule = schedule.to_dict() if schedule is not None else None
        self._emit(team_id, actor_id, "schedule", enabled=bool(schedule and schedule.enabled))
        return schedule

    def add_shift(
        self,
        user_id: UUID,
        start_time: dt.datetime,
        end_time: dt.datetime,
        *,
        team_id: UUID | None = None,
        actor_id: UUID | None = None,
    ) -> Shift:
        start_time, end_time = _as_utc(start_time), _as_utc(end_time)
        if end_time <= start_time:
            raise InboxValidationError("end_time must be after start_time.", field="end_time")
        if team_id is not None:
            self.get_team(team_id)
        if self._repository.get_user(user_id) is None:
            raise AgentNotFoundError(f"User {user_id} not found")
        shift = self._repository.add_shift(
            Shift(
                tenant_id=self._repository.tenant_id,
                team_id=team_id,
                user_id=user_id,
                start_time=start_time,
                end_time=end_time,
            )
        )
        if team_id is not None:
            self._emit(team_id, actor_id, "shift_added", user_id=str(user_id))
        return shift


__all__ = ["TeamRegistry"]
