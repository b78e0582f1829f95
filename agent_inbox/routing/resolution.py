"""Resolution (wrap-up) workflow: the terminal ``assigned -> resolved`` step."""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Mapping
from uuid import UUID

from ..models import InboxSession, Resolution
from .audit import (
    SESSION_CSAT_RECORDED,
    SESSION_RESOLVED,
    AuditEvent,
    AuditSink,
    LoggingAuditSink,
    emit_safely,
)
from .errors import (
    InboxValidationError,
    InvalidTransitionError,
    NotAssignedError,
    SessionNotFoundError,
)
from .models import (
    SKIPPED_CATEGORY,
    ResolutionCategory,
    ResolutionResult,
    SessionStatus,
    WrapUpForm,
    summarize_wrap_up,
    validate_wrap_up,
)
from .repository import InboxRepository

logger = logging.getLogger(__name__)

_RESOLVE_ATTEMPTS = 3


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class ResolutionWorkflow:
    def __init__(
        self,
        repository: InboxRepository,
        *,
        audit_sink: AuditSink | None = None,
    ) -> None:
        self._repository = repository
        self._audit = audit_sink or LoggingAuditSink()

    def wrap_up_form(self, session: InboxSession) -> WrapUpForm | None:
        """The enabled wrap-up form of the session's team, if any."""

        if session.assigned_team_id is None:
            return None
        team = self._repository.get_team(session.assigned_team_id)
        if team is None:
            return None
        form = WrapUpForm.parse(team.wrap_up_form)
        if form is None or not form.enabled:
            return None
        return form

    def _wrap_up(
        self,
        form: WrapUpForm | None,
        *,
        category: str | None,
        notes: str | None,
        fields: Mapping[str, Any] | None,
        skip: bool,
    ) -> tuple[str, str | None, dict[str, Any]]:
        if form is None:
            if skip:
                raise InboxValidationError(
                    "A category is required to resolve this session.", field="category"
                )
            value = (category or "").strip()
            if not value:
                raise InboxValidationError("category is required.", field="category")
            try:
                ResolutionCategory(value)
            except ValueError as exc:
                raise InboxValidationError(f"Unknown category: {value!r}", field="category") from exc
            return value, (notes or "").strip() or None, {}

        if skip:
            if form.mandatory:
                raise InboxValidationError(
                    "Wrap-up is mandatory for this team; skipping is not allowed.",
                    field="skip",
                )
            return SKIPPED_CATEGORY, None, {}
        cleaned = validate_wrap_up(form, fields or {})
        derived_category, derived_notes = summarize_wrap_up(form, cleaned)
        return derived_category, derived_notes, dict(cleaned)

    def resolve_session(
        self,
        session_id: UUID,
        agent_id: UUID,
        *,
        category: str | None = None,
        notes: str | None = None,
        fields: Mapping[str, Any] | None = None,
        skip: bool = False,
        now: dt.datetime | None = None,
    ) -> ResolutionResult:
        """Close ``session_id`` on behalf of its assigned agent.

        A session that another request already resolved yields
        ``applied=False`` rather than an error.
        """

        now = now or _utcnow()
        for _ in range(_RESOLVE_ATTEMPTS):
            session = self._repository.get_session(session_id)
            if session is None:
                raise SessionNotFoundError(f"Session {session_id} not found")
            if session.status == SessionStatus.RESOLVED.value:
                return ResolutionResult(session_id=session_id, applied=False, reason="already_resolved")
            if session.status != SessionStatus.ASSIGNED.value:
                raise InvalidTransitionError(f"Session {session_id} is not assigned")
            if session.assigned_agent_id != agent_id:
                raise NotAssignedError(f"Session {session_id} is not assigned to agent {agent_id}")

            resolved_category, resolved_notes, form_data = self._wrap_up(
                self.wrap_up_form(session),
                category=category,
                notes=notes,
                fields=fields,
                skip=skip,
            )
            if not self._repository.resolve_session(session, agent_id, now):
                continue

            self._repository.add_resolution(
                Resolution(
                    tenant_id=self._repository.tenant_id,
                    session_id=session_id,
                    category=resolved_category,
                    notes=resolved_notes,
                    outcome="resolved",
                    form_data=form_data,
                    resolved_by_agent_id=agent_id,
                    created_at=now,
                )
            )
            emit_safely(
                self._audit,
                AuditEvent(
                    action=SESSION_RESOLVED,
                    actor_id=agent_id,
                    resource_id=session_id,
                    tenant_id=self._repository.tenant_id,
                    details={"category": resolved_category, "skipped": skip},
                ),
            )
            logger.info("Session %s resolved by %s (%s)", session_id, agent_id, resolved_category)
            return ResolutionResult(session_id=session_id, applied=True, category=resolved_category)

        raise InvalidTransitionError(f"Session {session_id} kept changing; retry later")

    def attach_csat(
        self,
        session_id: UUID,
        score: int,
        feedback: str | None = None,
        *,
        now: dt.datetime | None = None,
    ) -> Resolution:
        """Record a survey answer on an existing resolution."""

        if not 1 <= score <= 5:
            raise InboxValidationError("score must be between 1 and 5.", field="score")
        resolution = self._repository.get_resolution(session_id)
        if resolution is None:
            raise InvalidTransitionError(f"Session {session_id} has not been resolved")
        if resolution.csat_score is not None:
            raise InvalidTransitionError(f"Session {session_id} already has a CSAT response")
        resolution.csat_score = score
        resolution.csat_feedback = (feedback or "").strip() or None
        resolution.csat_submitted_at = now or _utcnow()
        emit_safely(
            self._audit,
            AuditEvent(
                action=SESSION_CSAT_RECORDED,
                actor_id=None,
                resource_id=session_id,
                tenant_id=self._repository.tenant_id,
                details={"score": score},
            ),
        )
        return resolution


__all__ = ["ResolutionWorkflow"]
