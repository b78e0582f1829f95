"""Agent inbox API: presence, queue, assignment, bulk operations and wrap-up."""

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from ..core.db import apply_tenant_settings, get_required_tenant_id
from ..core.limits import bulk_rate_limit, limiter
from ..models import User
from ..models.session import get_session_factory
from ..routing import schemas
from ..routing.errors import (
    AgentNotFoundError,
    InboxValidationError,
    InvalidTransitionError,
    NotAssignedError,
    SessionNotFoundError,
    TeamNotFoundError,
)
from ..routing.messaging import MessagingDispatcher, WhatsAppTemplateDispatcher
from ..routing.models import StaleSelection
from ..routing.repository import SqlAlchemyInboxRepository
from ..routing.service import InboxService
from ..security.auth import SESSION_BULK_TRANSFER, get_current_user, require_permission, require_role

router = APIRouter(prefix="/api/inbox", tags=["inbox"])


def get_messaging_dispatcher() -> MessagingDispatcher:
    return WhatsAppTemplateDispatcher()


@contextmanager
def service_context(dispatcher: MessagingDispatcher | None = None) -> Iterator[InboxService]:
    """Yield a tenant-scoped :class:`InboxService`; commit on success.

    Domain errors roll the transaction back and become HTTP errors.
    """

    try:
        tenant_id = get_required_tenant_id()
    except RuntimeError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc

    session = get_session_factory()()
    try:
        apply_tenant_settings(session, tenant_id)
        repository = SqlAlchemyInboxRepository(session, tenant_id=tenant_id)
        yield InboxService(repository, dispatcher=dispatcher)
        session.commit()
    except InboxValidationError as exc:
        session.rollback()
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except (SessionNotFoundError, TeamNotFoundError, AgentNotFoundError) as exc:
        session.rollback()
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except NotAssignedError as exc:
        session.rollback()
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except InvalidTransitionError as exc:
        session.rollback()
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _selection(payload: schemas.StaleSelectionRequest) -> StaleSelection:
    return StaleSelection(
        older_than_days=payload.older_than_days,
        start_date=payload.start_date,
        end_date=payload.end_date,
    )


# ----------------------------------------------------------------------
# Presence


@router.get("/presence", response_model=schemas.PresenceDetail)
def get_presence(
    user: User = Depends(get_current_user),
    role: str = Depends(require_role("agent")),
) -> schemas.PresenceDetail:
    with service_context() as svc:
        profile = svc.get_presence(user.id)
        return schemas.PresenceDetail.model_validate(profile)


@router.post("/presence", response_model=schemas.PresenceResponse)
def set_presence(
    payload: schemas.PresenceUpdate,
    user: User = Depends(get_current_user),
    role: str = Depends(require_role("agent")),
) -> schemas.PresenceResponse:
    """Set the caller's presence; going online assigns waiting sessions."""
    with service_context() as svc:
        profile, assigned = svc.set_presence(user.id, payload.status, payload.reason)
        return schemas.PresenceResponse(
            presence=schemas.PresenceDetail.model_validate(profile), assigned=assigned
        )


# ----------------------------------------------------------------------
# Queue and assignment


@router.post("/assign-queue", response_model=schemas.AssignQueueResponse)
def assign_queue(
    payload: schemas.AssignQueueRequest | None = None,
    user: User = Depends(get_current_user),
    role: str = Depends(require_role("supervisor")),
    dispatcher: MessagingDispatcher = Depends(get_messaging_dispatcher),
) -> schemas.AssignQueueResponse:
    with service_context(dispatcher=dispatcher) as svc:
        result = svc.assign_queue(payload.team_id if payload else None, actor_id=user.id)
    return schemas.AssignQueueResponse(**result)


@router.post("/assign-queue/agents", response_model=schemas.AssignQueueResponse)
def assign_queue_to_agents(
    payload: schemas.AssignToAgentsRequest,
    user: User = Depends(require_permission(SESSION_BULK_TRANSFER)),
) -> schemas.AssignQueueResponse:
    """Give the longest-waiting sessions to the listed agents, ``count`` each."""
    with service_context() as svc:
        result = svc.assign_to_agents(
            [(item.agent_id, item.count) for item in payload.assignments], actor_id=user.id
        )
    return schemas.AssignQueueResponse(**result)


@router.post("/assign-queue/teams", response_model=schemas.AssignQueueResponse)
def assign_queue_to_teams(
    payload: schemas.AssignToTeamsRequest,
    user: User = Depends(require_permission(SESSION_BULK_TRANSFER)),
    dispatcher: MessagingDispatcher = Depends(get_messaging_dispatcher),
) -> schemas.AssignQueueResponse:
    """Deal queued sessions across the listed teams and route them."""
    with service_context(dispatcher=dispatcher) as svc:
        result = svc.assign_to_teams(payload.team_ids, actor_id=user.id)
    return schemas.AssignQueueResponse(**result)


@router.get("/queue-stats", response_model=schemas.QueueStatsResponse)
def queue_stats(
    team_ids: list[UUID] | None = Query(default=None),
    role: str = Depends(require_role("agent")),
) -> schemas.QueueStatsResponse:
    with service_context() as svc:
        stats = svc.get_queue_stats(team_ids or None)
    return schemas.QueueStatsResponse(
        items=[schemas.TeamQueueStatsPayload(**vars(item)) for item in stats]
    )


@router.get("/queue", response_model=schemas.SessionList)
def list_queue(
    team_id: UUID | None = Query(default=None),
    limit: int = Query(100, ge=1, le=500),
    role: str = Depends(require_role("agent")),
) -> schemas.SessionList:
    with service_context() as svc:
        sessions = svc.list_queue(team_id, limit=limit)
        items = [schemas.SessionDetail.model_validate(s) for s in sessions]
    return schemas.SessionList(items=items, total=len(items))


@router.post(
    "/sessions/inbound",
    response_model=schemas.InboundResponse,
    status_code=status.HTTP_200_OK,
)
def record_inbound(
    payload: schemas.InboundRequest,
    role: str = Depends(require_role("agent")),
) -> schemas.InboundResponse:
    """Register inbound contact activity, opening a queued session if needed."""
    with service_context() as svc:
        session, created = svc.record_inbound(
            payload.contact_id,
            contact_name=payload.contact_name,
            channel=payload.channel,
            team_id=payload.team_id,
            priority=payload.priority,
            context=payload.context,
        )
        return schemas.InboundResponse(
            session=schemas.SessionDetail.model_validate(session), created=created
        )


@router.post("/sessions/{session_id}/accept", response_model=schemas.ClaimResponse)
def accept_session(
    session_id: UUID,
    user: User = Depends(get_current_user),
    role: str = Depends(require_role("agent")),
) -> schemas.ClaimResponse:
    with service_context() as svc:
        result = svc.claim_session(session_id, user.id)
    return schemas.ClaimResponse(**vars(result))


# ----------------------------------------------------------------------
# Bulk operations


@router.post("/sessions/bulk-transfer", response_model=schemas.BulkTransferResponse)
@limiter.limit(bulk_rate_limit)
def bulk_transfer(
    request: Request,
    payload: schemas.BulkTransferRequest,
    user: User = Depends(require_permission(SESSION_BULK_TRANSFER)),
) -> schemas.BulkTransferResponse:
    with service_context() as svc:
        results = svc.bulk_transfer(
            payload.session_ids,
            target_agent_id=payload.target_agent_id,
            target_team_id=payload.target_team_id,
            reason=payload.reason,
            actor_id=user.id,
        )
    return schemas.BulkTransferResponse(
        results=[schemas.TransferResultPayload(**vars(item)) for item in results]
    )


@router.get("/sessions/expired-count", response_model=schemas.ExpiredCountResponse)
def expired_count(
    older_than_days: int | None = Query(default=None, ge=1),
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    user: User = Depends(require_permission(SESSION_BULK_TRANSFER)),
) -> schemas.ExpiredCountResponse:
    selection = schemas.StaleSelectionRequest(
        older_than_days=older_than_days, start_date=start_date, end_date=end_date
    )
    with service_context() as svc:
        return schemas.ExpiredCountResponse(**svc.get_expired_count(_selection(selection)))


@router.post("/sessions/reengage", response_model=schemas.ReengageResponse)
@limiter.limit(bulk_rate_limit)
def reengage(
    request: Request,
    payload: schemas.StaleSelectionRequest,
    user: User = Depends(require_permission(SESSION_BULK_TRANSFER)),
    dispatcher: MessagingDispatcher = Depends(get_messaging_dispatcher),
) -> schemas.ReengageResponse:
    """Send the re-engagement template to every stale session's contact."""
    with service_context(dispatcher=dispatcher) as svc:
        summary = svc.bulk_reengage(_selection(payload), actor_id=user.id)
    return schemas.ReengageResponse(
        sent=summary.sent,
        errors=[
            schemas.ReengageErrorPayload(session_id=e.session_id, message=e.message)
            for e in summary.errors
        ],
        skipped=summary.skipped,
    )


# ----------------------------------------------------------------------
# Resolution


@router.put("/sessions/{session_id}/resolve", response_model=schemas.ResolveResponse)
def resolve_session(
    session_id: UUID,
    payload: schemas.ResolveRequest,
    user: User = Depends(get_current_user),
    role: str = Depends(require_role("agent")),
) -> schemas.ResolveResponse:
    with service_context() as svc:
        result = svc.resolve_session(
            session_id,
            user.id,
            category=payload.category,
            notes=payload.notes,
            fields=payload.fields,
            skip=payload.skip,
        )
    return schemas.ResolveResponse(**vars(result))


@router.post("/sessions/{session_id}/csat", response_model=schemas.Message)
def record_csat(
    session_id: UUID,
    payload: schemas.CsatRequest,
    role: str = Depends(require_role("agent")),
) -> schemas.Message:
    with service_context() as svc:
        svc.attach_csat(session_id, payload.score, payload.feedback)
    return schemas.Message(message="recorded")
