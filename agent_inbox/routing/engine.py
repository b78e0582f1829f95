"""Assignment engine: claims queued sessions onto eligible agents.

Strategies
----------
``round_robin``
    Eligible agents are scanned in a fixed order (by user id) starting just
    after the team's persisted rotation cursor; the first one with spare
    capacity wins and the cursor moves to it in the same transaction.
``specific_agents``
    Same rotation over the ordered allow-list in
    ``AssignmentConfig.settings["agentIds"]``. The position in the full
    allow-list is kept even while some listed agents are unavailable.
``least_active``
    Fewest currently assigned sessions wins; ties rotate as above.
``least_assigned``
    Fewest sessions assigned inside ``settings["timeWindow"]`` wins (one of
    ``all_time``, ``shift``, ``day``, ``week`` or ``month``).
``hybrid``
    Compares the metrics listed in ``settings["priority"]`` in order and
    rotates among the agents tied on all of them.
``manual``
    No automatic assignment. Agents claim sessions one at a time through
    :meth:`AssignmentEngine.claim_session`.

A team with an enabled weekly schedule gets no assignments while closed.
Its queued contacts receive the out-of-office reply at most once a day when
the next opening is more than a day away. When a team has nobody to take a
session and the tenant-wide config asks for it
(``settings["waterfall"]["noAgentAction"] == "reply"``), each waiting
contact is told once that all agents are busy.

Claims are conditional updates (see :mod:`agent_inbox.routing.repository`);
losing a race is not an error. The engine re-reads the session and either
moves on to the next session or tries the next candidate agent.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Sequence
from uuid import UUID

from ..models import AssignmentConfig, InboxSession, Team
from .audit import (
    SESSION_ASSIGNED,
    SESSION_AUTO_REPLIED,
    SESSION_CLAIMED,
    AuditEvent,
    AuditSink,
    LoggingAuditSink,
    emit_safely,
)
from .errors import (
    AgentNotFoundError,
    InboxValidationError,
    InvalidTransitionError,
    SessionNotFoundError,
    TeamNotFoundError,
)
from .messaging import MessagingDispatcher
from .models import (
    ClaimResult,
    RoutingStrategy,
    SessionStatus,
    TimeWindow,
    load_priority,
    load_time_window,
    ordered_unique,
    window_start,
)
from .presence import PresenceService
from .repository import InboxRepository
from .schedule import TeamSchedule

logger = logging.getLogger(__name__)

DEFAULT_NO_AGENT_MESSAGE = "All of our agents are currently busy. We will get back to you shortly."

OUT_OF_OFFICE_THROTTLE = dt.timedelta(hours=24)
# Openings closer than this are not announced.
OUT_OF_OFFICE_HORIZON = dt.timedelta(hours=24)

_METRIC_ATTRIBUTES = {
    RoutingStrategy.LEAST_ACTIVE: "load",
    RoutingStrategy.LEAST_ASSIGNED: "total",
}


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _parse_stamp(raw: Any) -> dt.datetime | None:
    if not raw:
        return None
    try:
        value = dt.datetime.fromisoformat(str(raw))
    except ValueError:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value


@dataclass
class _Candidate:
    agent_id: UUID
    max_chats: int
    load: int
    total: int = 0

    @property
    def has_capacity(self) -> bool:
        return self.load < self.max_chats


@dataclass
class _TeamPlan:
    """Everything one pass needs to route a team's queue."""

    team: Team
    strategy: RoutingStrategy
    schedule: TeamSchedule | None
    is_open: bool
    # Full rotation order, including agents that are currently unavailable.
    order: list[UUID] = field(default_factory=list)
    candidates: dict[UUID, _Candidate] = field(default_factory=dict)
    metrics: tuple[str, ...] = ()
    cursor: UUID | None = None

    @property
    def sorted_by_id(self) -> bool:
        return self.strategy is not RoutingStrategy.SPECIFIC_AGENTS


def _parse_agent_ids(settings: dict[str, Any] | None) -> list[UUID]:
    ids: list[UUID] = []
    for raw in (settings or {}).get("agentIds") or []:
        try:
            value = raw if isinstance(raw, UUID) else UUID(str(raw))
        except ValueError:
            logger.warning("Ignoring malformed agent id %r in assignment settings", raw)
            continue
        if value not in ids:
            ids.append(value)
    return ids


def rotate(agent_ids: Sequence[UUID], cursor: UUID | None, *, sorted_by_id: bool) -> list[UUID]:
    """Order ``agent_ids`` to start just after ``cursor``.

    When the cursor agent is not in the list, id-ordered lists resume at the
    next id after it; allow-lists restart from the top.
    """

    if not agent_ids or cursor is None:
        return list(agent_ids)
    ids = list(agent_ids)
    if cursor in ids:
        start = ids.index(cursor) + 1
    elif sorted_by_id:
        start = next((i for i, agent_id in enumerate(ids) if str(agent_id) > str(cursor)), 0)
    else:
        start = 0
    start %= len(ids)
    return ids[start:] + ids[:start]


class AssignmentEngine:
    """Assign unassigned sessions to agents, team by team."""

    def __init__(
        self,
        repository: InboxRepository,
        presence: PresenceService,
        *,
        dispatcher: MessagingDispatcher | None = None,
        audit_sink: AuditSink | None = None,
        batch_limit: int = 50,
    ) -> None:
        self._repository = repository
        self._presence = presence
        self._dispatcher = dispatcher
        self._audit = audit_sink or LoggingAuditSink()
        self._batch_limit = batch_limit

    # ------------------------------------------------------------------
    # Batch assignment

    def assign_queue(
        self,
        team_id: UUID | None = None,
        *,
        limit: int | None = None,
        now: dt.datetime | None = None,
        actor_id: UUID | None = None,
    ) -> dict[str, int]:
        """Run one assignment pass and return ``{"assigned": n}``.

        Without ``team_id`` every active team is processed; sessions without a
        team are picked up by the tenant's default team.
        """

        now = now or _utcnow()
        remaining = self._batch_limit if limit is None else limit
        if team_id is not None:
            team = self._repository.get_team(team_id)
            if team is None:
                raise TeamNotFoundError(f"Team {team_id} not found")
            teams = [team]
        else:
            teams = self._repository.list_teams(active_only=True)

        assigned = 0
        for team in teams:
            if remaining <= 0:
                break
            count = self._assign_team(team, remaining, now, actor_id)
            assigned += count
            remaining -= count
        if assigned:
            logger.info("Assigned %s session(s) for tenant %s", assigned, self._repository.tenant_id)
        return {"assigned": assigned}

    def _assign_team(
        self, team: Team, limit: int, now: dt.datetime, actor_id: UUID | None
    ) -> int:
        plan = self._plan(team, now)
        if plan is None:
            return 0
        queue = self._repository.queued_sessions(
            team.id, include_unteamed=team.is_default, limit=limit
        )
        return self._assign_sessions(plan, queue, now, actor_id)

    def _strategy(self, team: Team, config: AssignmentConfig) -> RoutingStrategy:
        raw = config.strategy if config.team_id is not None else team.routing_strategy
        try:
            return RoutingStrategy(raw)
        except ValueError:
            logger.warning("Unknown strategy %r for team %s; treating as manual", raw, team.id)
            return RoutingStrategy.MANUAL

    def _schedule(self, team: Team) -> TeamSchedule | None:
        try:
            return TeamSchedule.parse(team.schedule)
        except InboxValidationError as exc:
            logger.warning("Team %s has an unreadable schedule (%s); treating as closed", team.id, exc)
            return TeamSchedule(enabled=True, timezone=None)

    def _plan(self, team: Team, now: dt.datetime) -> _TeamPlan | None:
        if not team.is_active:
            return None
        config = self._repository.get_assignment_config(team.id)
        if config is None or not config.enabled:
            return None
        schedule = self._schedule(team)
        plan = _TeamPlan(
            team=team,
            strategy=self._strategy(team, config),
            schedule=schedule,
            is_open=schedule is None or schedule.is_open(now),
            cursor=team.rotation_cursor,
        )
        if not plan.is_open or plan.strategy is RoutingStrategy.MANUAL:
            return plan

        eligible = [
            _Candidate(agent_id=profile.user_id, max_chats=profile.max_concurrent_chats, load=load)
            for profile, load in self._presence.eligible_agents(team.id, now)
        ]
        plan.candidates = {c.agent_id: c for c in eligible}
        if plan.strategy is RoutingStrategy.SPECIFIC_AGENTS:
            plan.order = _parse_agent_ids(config.settings)
        else:
            plan.order = [c.agent_id for c in eligible]

        try:
            priority = load_priority(plan.strategy, config.settings)
            window = load_time_window(config.settings)
        except InboxValidationError as exc:
            logger.warning("Team %s has invalid load settings (%s); using defaults", team.id, exc)
            priority = load_priority(plan.strategy, None)
            window = TimeWindow.ALL_TIME
        plan.metrics = tuple(_METRIC_ATTRIBUTES[item] for item in priority)
        if "total" in plan.metrics:
            totals = self._repository.assignment_totals(
                plan.candidates, since=window_start(window, now)
            )
            for agent_id, total in totals.items():
                plan.candidates[agent_id].total = total
        return plan

    def _ranked(self, plan: _TeamPlan) -> list[_Candidate]:
        """Agents with spare capacity, best first."""

        ordered = [
            plan.candidates[agent_id]
            for agent_id in rotate(plan.order, plan.cursor, sorted_by_id=plan.sorted_by_id)
            if agent_id in plan.candidates and plan.candidates[agent_id].has_capacity
        ]
        if plan.metrics:
            # Stable sort keeps the rotation order among tied agents.
            ordered.sort(key=lambda c: tuple(getattr(c, metric) for metric in plan.metrics))
        return ordered

    def _assign_sessions(
        self,
        plan: _TeamPlan,
        sessions: Sequence[InboxSession],
        now: dt.datetime,
        actor_id: UUID | None,
    ) -> int:
        if not plan.is_open:
            self._reply_out_of_office(plan, sessions, now)
            return 0
        if plan.strategy is RoutingStrategy.MANUAL:
            return 0

        assigned = 0
        for index, session in enumerate(sessions):
            ranked = self._ranked(plan)
            if not ranked:
                self._reply_no_agent(sessions[index:], now)
                break
            winner = self._claim_first(session, ranked, plan.team.id, now)
            if winner is None:
                continue
            winner.load += 1
            winner.total += 1
            plan.cursor = winner.agent_id
            self._repository.advance_rotation_cursor(plan.team.id, winner.agent_id)
            assigned += 1
            emit_safely(
                self._audit,
                AuditEvent(
                    action=SESSION_ASSIGNED,
                    actor_id=actor_id,
                    resource_id=session.id,
                    tenant_id=self._repository.tenant_id,
                    details={
                        "agent_id": str(winner.agent_id),
                        "team_id": str(plan.team.id),
                        "strategy": plan.strategy.value,
                    },
                ),
            )
        plan.team.rotation_cursor = plan.cursor
        return assigned

    def _claim_first(
        self,
        session: InboxSession,
        ordered: list[_Candidate],
        team_id: UUID,
        now: dt.datetime,
    ) -> _Candidate | None:
        for candidate in ordered:
            if self._repository.claim_session(
                session.id, candidate.agent_id, team_id, candidate.max_chats, now
            ):
                return candidate
            current = self._repository.get_session(session.id)
            if current is None or current.status != SessionStatus.UNASSIGNED.value:
                logger.debug("Session %s was claimed concurrently; skipping", session.id)
                return None
            # Session still queued, so the agent filled up under us.
            candidate.load = candidate.max_chats
        return None

    # ------------------------------------------------------------------
    # Automatic replies

    def _reply_out_of_office(
        self, plan: _TeamPlan, sessions: Sequence[InboxSession], now: dt.datetime
    ) -> None:
        schedule = plan.schedule
        if schedule is None or not sessions:
            return
        opening = schedule.next_opening(now)
        if opening is not None and opening - now <= OUT_OF_OFFICE_HORIZON:
            return
        for session in sessions:
            last_sent = _parse_stamp((session.context or {}).get("oooLastSentAt"))
            if last_sent is not None and now - last_sent < OUT_OF_OFFICE_THROTTLE:
                continue
            self._auto_reply(session, schedule.message, "oooLastSentAt", "out_of_office", now)

    def _no_agent_message(self) -> str | None:
        config = self._repository.get_assignment_config(None)
        if config is None or config.team_id is not None or not config.enabled:
            return None
        waterfall = (config.settings or {}).get("waterfall") or {}
        if (waterfall.get("noAgentAction") or "queue") != "reply":
            return None
        return waterfall.get("noAgentMessage") or DEFAULT_NO_AGENT_MESSAGE

    def _reply_no_agent(self, sessions: Sequence[InboxSession], now: dt.datetime) -> None:
        pending = [s for s in sessions if not (s.context or {}).get("noAgentNotifiedAt")]
        if not pending:
            return
        message = self._no_agent_message()
        if message is None:
            return
        for session in pending:
            self._auto_reply(session, message, "noAgentNotifiedAt", "no_agent", now)

    def _auto_reply(
        self, session: InboxSession, text: str, stamp: str, kind: str, now: dt.datetime
    ) -> bool:
        if self._dispatcher is None:
            logger.debug("No dispatcher configured; %s reply to session %s not sent", kind, session.id)
            return False
        try:
            response = self._dispatcher.send_text_message(session.contact_id, text)
        except Exception as exc:
            logger.warning("Automatic %s reply to session %s failed: %s", kind, session.id, exc)
            return False
        context = dict(session.context or {})
        context[stamp] = now.isoformat()
        if not self._repository.update_context(session, context, now):
            logger.info("Session %s changed while replying; context not stamped", session.id)
        emit_safely(
            self._audit,
            AuditEvent(
                action=SESSION_AUTO_REPLIED,
                actor_id=None,
                resource_id=session.id,
                tenant_id=self._repository.tenant_id,
                details={"kind": kind, "message_id": response.get("messageId")},
            ),
        )
        return True

    # ------------------------------------------------------------------
    # Supervisor-directed assignment

    def assign_to_agents(
        self,
        assignments: Sequence[tuple[UUID, int]],
        *,
        actor_id: UUID | None = None,
        now: dt.datetime | None = None,
    ) -> dict[str, int]:
        """Hand the longest-waiting queued sessions to chosen agents.

        Each ``(agent_id, count)`` pair takes the next ``count`` sessions in
        queue order, filed under the agent's first team. Presence is not
        checked but capacity is; sessions an agent cannot take stay queued.
        """

        now = now or _utcnow()
        if not assignments:
            raise InboxValidationError("At least one agent is required.", field="assignments")
        plans: list[tuple[UUID, int, int, UUID | None]] = []
        for agent_id, count in assignments:
            if count < 1:
                raise InboxValidationError("Counts must be positive.", field="count")
            profile = self._repository.get_profile(agent_id)
            if profile is None or not profile.is_active:
                raise AgentNotFoundError(f"Agent {agent_id} not found")
            team_ids = self._repository.team_ids_for_user(agent_id)
            plans.append((agent_id, count, profile.max_concurrent_chats, team_ids[0] if team_ids else None))

        queue = iter(
            self._repository.queued_sessions(None, limit=sum(count for _, count, _, _ in plans))
        )
        assigned = 0
        for agent_id, count, max_chats, team_id in plans:
            for _ in range(count):
                session = next(queue, None)
                if session is None:
                    break
                if not self._repository.claim_session(session.id, agent_id, team_id, max_chats, now):
                    logger.warning("Could not assign session %s to agent %s", session.id, agent_id)
                    continue
                assigned += 1
                emit_safely(
                    self._audit,
                    AuditEvent(
                        action=SESSION_ASSIGNED,
                        actor_id=actor_id,
                        resource_id=session.id,
                        tenant_id=self._repository.tenant_id,
                        details={
                            "agent_id": str(agent_id),
                            "team_id": str(team_id) if team_id else None,
                            "strategy": "supervisor",
                        },
                    ),
                )
        logger.info("Supervisor assigned %s session(s) to %s agent(s)", assigned, len(plans))
        return {"assigned": assigned}

    def assign_to_teams(
        self,
        team_ids: Sequence[UUID],
        *,
        actor_id: UUID | None = None,
        now: dt.datetime | None = None,
    ) -> dict[str, int]:
        """Spread queued sessions across ``team_ids`` and route each one.

        Sessions are dealt to the teams in turn; each team then applies its
        own strategy. A session its team cannot place stays in that queue.
        """

        now = now or _utcnow()
        team_ids = ordered_unique(team_ids)
        if not team_ids:
            raise InboxValidationError("At least one team is required.", field="team_ids")
        teams: list[Team] = []
        for team_id in team_ids:
            team = self._repository.get_team(team_id)
            if team is None or not team.is_active:
                raise TeamNotFoundError(f"Team {team_id} not found")
            teams.append(team)

        plans: dict[UUID, _TeamPlan | None] = {}
        assigned = 0
        for index, session in enumerate(
            self._repository.queued_sessions(None, limit=self._batch_limit)
        ):
            team = teams[index % len(teams)]
            if not self._repository.route_to_team(session, team.id, now):
                logger.info("Session %s changed before it could be routed", session.id)
                continue
            if team.id not in plans:
                plans[team.id] = self._plan(team, now)
            plan = plans[team.id]
            current = self._repository.get_session(session.id)
            if plan is None or current is None:
                continue
            assigned += self._assign_sessions(plan, [current], now, actor_id)
        logger.info("Supervisor routed queue across %s team(s); %s assigned", len(teams), assigned)
        return {"assigned": assigned}

    # ------------------------------------------------------------------
    # Manual claim

    def claim_session(
        self,
        session_id: UUID,
        agent_id: UUID,
        *,
        now: dt.datetime | None = None,
    ) -> ClaimResult:
        """Claim one queued session for ``agent_id``.

        Returns ``applied=False`` when another claim won the race.
        """

        now = now or _utcnow()
        session = self._repository.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        if session.status == SessionStatus.RESOLVED.value:
            raise InvalidTransitionError(f"Session {session_id} is already resolved")
        if session.status != SessionStatus.UNASSIGNED.value:
            return ClaimResult(
                session_id=session_id,
                agent_id=session.assigned_agent_id,
                applied=session.assigned_agent_id == agent_id,
                reason="already_assigned",
            )
        if not self._presence.is_eligible(agent_id, session.assigned_team_id, now):
            raise InvalidTransitionError(f"Agent {agent_id} cannot take session {session_id} now")

        profile = self._presence.get_presence(agent_id)
        if not self._repository.claim_session(
            session_id, agent_id, session.assigned_team_id, profile.max_concurrent_chats, now
        ):
            current = self._repository.get_session(session_id)
            return ClaimResult(
                session_id=session_id,
                agent_id=current.assigned_agent_id if current else None,
                applied=False,
                reason="lost_race",
            )
        emit_safely(
            self._audit,
            AuditEvent(
                action=SESSION_CLAIMED,
                actor_id=agent_id,
                resource_id=session_id,
                tenant_id=self._repository.tenant_id,
                details={"agent_id": str(agent_id)},
            ),
        )
        return ClaimResult(session_id=session_id, agent_id=agent_id, applied=True)


__all__ = ["AssignmentEngine", "DEFAULT_NO_AGENT_MESSAGE", "rotate"]
