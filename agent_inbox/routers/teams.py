"""Team administration: membership, assignment configuration, wrap-up forms, schedules and shifts."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, status

from ..models import User
from ..routing import schemas
from ..security.auth import TEAMS_MANAGE, require_permission
from .inbox import service_context

router = APIRouter(prefix="/api/teams", tags=["teams"])

_manager = require_permission(TEAMS_MANAGE)


@router.get("", response_model=schemas.TeamList)
def list_teams(user: User = Depends(_manager)) -> schemas.TeamList:
    with service_context() as svc:
        items = [schemas.TeamDetail.model_validate(team) for team in svc.teams.list_teams()]
    return schemas.TeamList(items=items, total=len(items))


@router.post("", response_model=schemas.TeamDetail, status_code=status.HTTP_201_CREATED)
def create_team(
    payload: schemas.TeamCreate, user: User = Depends(_manager)
) -> schemas.TeamDetail:
    with service_context() as svc:
        team = svc.teams.create_team(
            payload.name,
            description=payload.description,
            routing_strategy=payload.routing_strategy,
            is_default=payload.is_default,
            enforce_shifts=payload.enforce_shifts,
            actor_id=user.id,
        )
        return schemas.TeamDetail.model_validate(team)


@router.post(
    "/{team_id}/members",
    response_model=schemas.MemberDetail,
    status_code=status.HTTP_201_CREATED,
)
def add_member(
    team_id: UUID, payload: schemas.MemberCreate, user: User = Depends(_manager)
) -> schemas.MemberDetail:
    """Add (or reactivate) a member; an agent profile is created when missing."""
    with service_context() as svc:
        member = svc.teams.add_member(team_id, payload.user_id, role=payload.role, actor_id=user.id)
        svc.presence.ensure_profile(
            payload.user_id, max_concurrent_chats=payload.max_concurrent_chats
        )
        return schemas.MemberDetail.model_validate(member)


@router.delete("/{team_id}/members/{user_id}", response_model=schemas.Message)
def remove_member(team_id: UUID, user_id: UUID, user: User = Depends(_manager)) -> schemas.Message:
    with service_context() as svc:
        svc.teams.remove_member(team_id, user_id, actor_id=user.id)
    return schemas.Message(message="removed")


@router.put("/assignment-config", response_model=schemas.AssignmentConfigDetail)
def set_tenant_assignment_config(
    payload: schemas.AssignmentConfigUpdate, user: User = Depends(_manager)
) -> schemas.AssignmentConfigDetail:
    """Tenant-wide fallback used by teams without their own configuration."""
    with service_context() as svc:
        config = svc.teams.set_assignment_config(
            None,
            enabled=payload.enabled,
            strategy=payload.strategy,
            settings=payload.settings,
            actor_id=user.id,
        )
        return schemas.AssignmentConfigDetail.model_validate(config)


@router.put("/{team_id}/assignment-config", response_model=schemas.AssignmentConfigDetail)
def set_team_assignment_config(
    team_id: UUID, payload: schemas.AssignmentConfigUpdate, user: User = Depends(_manager)
) -> schemas.AssignmentConfigDetail:
    with service_context() as svc:
        config = svc.teams.set_assignment_config(
            team_id,
            enabled=payload.enabled,
            strategy=payload.strategy,
            settings=payload.settings,
            actor_id=user.id,
        )
        return schemas.AssignmentConfigDetail.model_validate(config)


@router.put("/{team_id}/wrap-up-form", response_model=schemas.TeamDetail)
def set_wrap_up_form(
    team_id: UUID,
    payload: schemas.WrapUpFormPayload | None = None,
    user: User = Depends(_manager),
) -> schemas.TeamDetail:
    """Replace the team's wrap-up form; an empty body clears it."""
    with service_context() as svc:
        raw = payload.model_dump(exclude_none=True) if payload is not None else None
        svc.teams.set_wrap_up_form(team_id, raw, actor_id=user.id)
        return schemas.TeamDetail.model_validate(svc.teams.get_team(team_id))


@router.put("/{team_id}/schedule", response_model=schemas.TeamDetail)
def set_schedule(
    team_id: UUID,
    payload: schemas.SchedulePayload | None = None,
    user: User = Depends(_manager),
) -> schemas.TeamDetail:
    """Replace the team's opening hours; an empty body keeps it always open."""
    with service_context() as svc:
        raw = payload.model_dump(by_alias=True) if payload is not None else None
        svc.teams.set_schedule(team_id, raw, actor_id=user.id)
        return schemas.TeamDetail.model_validate(svc.teams.get_team(team_id))


@router.post(
    "/{team_id}/shifts",
    response_model=schemas.ShiftDetail,
    status_code=status.HTTP_201_CREATED,
)
def add_shift(
    team_id: UUID, payload: schemas.ShiftCreate, user: User = Depends(_manager)
) -> schemas.ShiftDetail:
    with service_context() as svc:
        shift = svc.teams.add_shift(
            payload.user_id,
            payload.start_time,
            payload.end_time,
            team_id=team_id,
            actor_id=user.id,
        )
        return schemas.ShiftDetail.model_validate(shift)
