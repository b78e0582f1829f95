"""Read-only queue projections per team."""

from __future__ import annotations

import datetime as dt
from typing import Iterable, Sequence
from uuid import UUID

from .errors import TeamNotFoundError
from .models import SessionStatus, TeamQueueStats
from .presence import PresenceService
from .repository import InboxRepository


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _as_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def _minutes(start: dt.datetime | None, end: dt.datetime | None) -> float | None:
    if start is None or end is None:
        return None
    return (_as_utc(end) - _as_utc(start)).total_seconds() / 60.0


def summarize(durations: Iterable[float | None]) -> tuple[float | None, float | None]:
    """Return ``(average, longest)`` over non-null durations, rounded to 0.1.

    An empty sample yields ``(None, None)`` so "no data" is never shown as 0.
    """

    values = [max(value, 0.0) for value in durations if value is not None]
    if not values:
        return None, None
    return round(sum(values) / len(values), 1), round(max(values), 1)


class QueueStatsAggregator:
    """Compute :class:`TeamQueueStats` on demand; nothing is persisted."""

    def __init__(
        self,
        repository: InboxRepository,
        presence: PresenceService,
        *,
        lookback_hours: int = 24,
    ) -> None:
        self._repository = repository
        self._presence = presence
        self._lookback_hours = lookback_hours

    def get_queue_stats(
        self,
        team_ids: Sequence[UUID] | None = None,
        *,
        now: dt.datetime | None = None,
        lookback_hours: int | None = None,
    ) -> list[TeamQueueStats]:
        now = now or _utcnow()
        if lookback_hours is None:
            lookback_hours = self._lookback_hours
        since = now - dt.timedelta(hours=lookback_hours)
        if team_ids is None:
            team_ids = [team.id for team in self._repository.list_teams(active_only=True)]
        results: list[TeamQueueStats] = []
        for team_id in team_ids:
            team = self._repository.get_team(team_id)
            if team is None:
                raise TeamNotFoundError(f"Team {team_id} not found")
            results.append(self._team_stats(team_id, now, since, include_unteamed=team.is_default))
        return results

    def _team_stats(
        self, team_id: UUID, now: dt.datetime, since: dt.datetime, *, include_unteamed: bool
    ) -> TeamQueueStats:
        # The default team also drains sessions that have no team yet.
        waits = [
            _minutes(created_at, assigned_at)
            for created_at, assigned_at in self._repository.assigned_wait_samples(team_id, since)
        ]
        waits.extend(
            _minutes(created_at, now)
            for created_at in self._repository.unassigned_created_at(
                team_id, include_unteamed=include_unteamed
            )
        )
        avg_wait, longest_wait = summarize(waits)

        resolutions = [
            _minutes(assigned_at, resolved_at)
            for assigned_at, resolved_at in self._repository.resolution_samples(team_id, since)
        ]
        avg_resolution, longest_resolution = summarize(resolutions)

        return TeamQueueStats(
            team_id=team_id,
            queue_size=self._repository.count_sessions(
                team_id, SessionStatus.UNASSIGNED, include_unteamed=include_unteamed
            ),
            active_chats=self._repository.count_sessions(team_id, SessionStatus.ASSIGNED),
            agent_count=len(self._presence.eligible_agents(team_id, now)),
            avg_wait_time_minutes=avg_wait,
            longest_wait_time_minutes=longest_wait,
            avg_resolution_time_minutes=avg_resolution,
            longest_resolution_time_minutes=longest_resolution,
        )


__all__ = ["QueueStatsAggregator", "summarize"]
