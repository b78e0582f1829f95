"""Supervisor bulk operations: transfer and mass re-engagement.

Both are best-effort fan-outs. Each session is attempted on its own and the
outcome is reported per item; one failure never undoes the others.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Sequence
from uuid import UUID

from ..core.config import InboxSettings, get_inbox_settings
from ..models import InboxSession
from .audit import (
    SESSION_REENGAGED,
    SESSION_TRANSFERRED,
    AuditEvent,
    AuditSink,
    LoggingAuditSink,
    emit_safely,
)
from .errors import AgentNotFoundError, InboxValidationError, TeamNotFoundError
from .messaging import MessagingDispatcher
from .models import (
    ReengageError,
    ReengageSummary,
    SessionStatus,
    StaleSelection,
    TransferResult,
    ordered_unique,
)
from .repository import InboxRepository

logger = logging.getLogger(__name__)

_TRANSFER_ATTEMPTS = 3


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _as_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


class BulkOperations:
    def __init__(
        self,
        repository: InboxRepository,
        *,
        dispatcher: MessagingDispatcher | None = None,
        audit_sink: AuditSink | None = None,
        settings: InboxSettings | None = None,
    ) -> None:
        self._repository = repository
        self._dispatcher = dispatcher
        self._audit = audit_sink or LoggingAuditSink()
        self._settings = settings or get_inbox_settings()

    # ------------------------------------------------------------------
    # Bulk transfer

    def bulk_transfer(
        self,
        session_ids: Sequence[UUID],
        *,
        target_agent_id: UUID | None = None,
        target_team_id: UUID | None = None,
        reason: str | None = None,
        actor_id: UUID | None = None,
        now: dt.datetime | None = None,
    ) -> list[TransferResult]:
        """Move sessions to an agent and/or team.

        An agent target makes the session ``assigned`` to that agent (within
        the agent's capacity). A team-only target puts the session back in
        that team's queue as ``unassigned``.
        """

        now = now or _utcnow()
        reason = (reason or "").strip() or None
        if not session_ids:
            raise InboxValidationError("At least one session id is required.", field="session_ids")
        if target_agent_id is None and target_team_id is None:
            raise InboxValidationError(
                "A target agent or team is required.", field="target_agent_id"
            )
        if reason is None and self._settings.transfer_reason_required:
            raise InboxValidationError("A transfer reason is required.", field="reason")

        max_chats: int | None = None
        if target_agent_id is not None:
            profile = self._repository.get_profile(target_agent_id)
            if profile is None or not profile.is_active:
                raise AgentNotFoundError(f"Agent {target_agent_id} not found")
            max_chats = profile.max_concurrent_chats
        if target_team_id is not None:
            team = self._repository.get_team(target_team_id)
            if team is None or not team.is_active:
                raise TeamNotFoundError(f"Team {target_team_id} not found")
            if target_agent_id is not None:
                member = self._repository.get_member(target_team_id, target_agent_id)
                if member is None or not member.is_active:
                    raise InboxValidationError(
                        "Target agent is not a member of the target team.",
                        field="target_agent_id",
                    )

        results = [
            self._transfer_one(
                session_id, target_agent_id, target_team_id, max_chats, reason, actor_id, now
            )
            for session_id in ordered_unique(session_ids)
        ]
        succeeded = sum(1 for r in results if r.success)
        logger.info("Bulk transfer moved %s of %s session(s)", succeeded, len(results))
        return results

    def _transfer_one(
        self,
        session_id: UUID,
        agent_id: UUID | None,
        team_id: UUID | None,
        max_chats: int | None,
        reason: str | None,
        actor_id: UUID | None,
        now: dt.datetime,
    ) -> TransferResult:
        for _ in range(_TRANSFER_ATTEMPTS):
            session = self._repository.get_session(session_id)
            if session is None:
                return TransferResult(session_id=session_id, success=False, error="Session not found")
            if session.status == SessionStatus.RESOLVED.value:
                return TransferResult(
                    session_id=session_id, success=False, error="Session is already resolved"
                )
            entry = {
                "from": str(session.assigned_agent_id) if session.assigned_agent_id else None,
                "fromTeam": str(session.assigned_team_id) if session.assigned_team_id else None,
                "to": str(agent_id) if agent_id else None,
                "toTeam": str(team_id) if team_id else None,
                "reason": reason,
                "by": str(actor_id) if actor_id else None,
                "timestamp": now.isoformat(),
            }
            context = dict(session.context or {})
            context["transfers"] = list(context.get("transfers") or []) + [entry]
            read_version = session.version
            if self._repository.transfer_session(
                session,
                agent_id=agent_id,
                team_id=team_id,
                max_chats=max_chats,
                context=context,
                now=now,
            ):
                emit_safely(
                    self._audit,
                    AuditEvent(
                        action=SESSION_TRANSFERRED,
                        actor_id=actor_id,
                        resource_id=session_id,
                        tenant_id=self._repository.tenant_id,
                        details=entry,
                    ),
                )
                return TransferResult(session_id=session_id, success=True)
            current = self._repository.get_session(session_id)
            if current is not None and current.version == read_version:
                return TransferResult(
                    session_id=session_id, success=False, error="Target agent is at capacity"
                )
        return TransferResult(
            session_id=session_id, success=False, error="Session changed concurrently"
        )

    # ------------------------------------------------------------------
    # Mass re-engagement

    def _selection_window(self, selection: StaleSelection, now: dt.datetime) -> dict[str, dt.datetime]:
        """Validate ``selection`` and return the activity bounds to query."""

        days = selection.older_than_days
        start, end = selection.start_date, selection.end_date
        if (days is not None) == (start is not None or end is not None):
            raise InboxValidationError(
                "Provide either older_than_days or a start/end date range.",
                field="older_than_days",
            )
        if days is not None:
            if days <= 0:
                raise InboxValidationError(
                    "older_than_days must be positive.", field="older_than_days"
                )
            return {"before": now - dt.timedelta(days=days)}
        if start is None or end is None:
            raise InboxValidationError("Both start_date and end_date are required.", field="start_date")
        if _as_utc(start) > _as_utc(end):
            raise InboxValidationError("start_date must not be after end_date.", field="start_date")
        return {"start": _as_utc(start), "end": _as_utc(end)}

    def select_stale(self, selection: StaleSelection, *, now: dt.datetime | None = None) -> list[InboxSession]:
        """Open sessions matching ``selection`` that are past their channel's expiry."""

        now = now or _utcnow()
        candidates = self._repository.stale_candidates(**self._selection_window(selection, now))
        stale: list[InboxSession] = []
        for session in candidates:
            activity = _as_utc(session.last_message_at or session.created_at)
            threshold = dt.timedelta(hours=self._settings.expiry_hours_for(session.channel))
            if now - activity > threshold:
                stale.append(session)
        return stale

    def get_expired_count(self, selection: StaleSelection, *, now: dt.datetime | None = None) -> dict[str, int]:
        return {"count": len(self.select_stale(selection, now=now))}

    def bulk_reengage(
        self,
        selection: StaleSelection,
        *,
        actor_id: UUID | None = None,
        now: dt.datetime | None = None,
    ) -> ReengageSummary:
        """Send the re-engagement template to every stale session's contact.

        At most ``reengage_max_batch`` sessions are attempted per call; the
        rest are reported in ``skipped`` for a follow-up call.
        """

        if self._dispatcher is None:
            raise RuntimeError("No messaging dispatcher configured for re-engagement")
        now = now or _utcnow()
        stale = self.select_stale(selection, now=now)
        sessions = stale[: self._settings.reengage_max_batch]
        template = self._settings.reengagement_template
        summary = ReengageSummary(skipped=len(stale) - len(sessions))
        for session in sessions:
            params: dict[str, Any] = {"body": [session.contact_name or "there"]}
            try:
                response = self._dispatcher.send_template_message(session.contact_id, template, params)
            except Exception as exc:
                logger.warning("Re-engagement send failed for session %s: %s", session.id, exc)
                summary.errors.append(ReengageError(session_id=session.id, message=str(exc)))
                continue
            summary.sent += 1
            context = dict(session.context or {})
            context["reengagedAt"] = now.isoformat()
            context["reengagementMessageId"] = response.get("messageId")
            if not self._repository.update_context(session, context, now):
                logger.info("Session %s changed while re-engaging; context not stamped", session.id)
            emit_safely(
                self._audit,
                AuditEvent(
                    action=SESSION_REENGAGED,
                    actor_id=actor_id,
                    resource_id=session.id,
                    tenant_id=self._repository.tenant_id,
                    details={"template": template, "message_id": response.get("messageId")},
                ),
            )
        logger.info(
            "Re-engagement sent %s message(s), %s error(s), %s skipped",
            summary.sent,
            len(summary.errors),
            summary.skipped,
        )
        return summary


__all__ = ["BulkOperations"]
