"""Audit events emitted by state-changing routing operations."""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol
from uuid import UUID

from ..app_logging import AUDIT_LOGGER_NAME

logger = logging.getLogger(__name__)

SESSION_ASSIGNED = "session.assigned"
SESSION_CLAIMED = "session.claimed"
SESSION_TRANSFERRED = "session.transferred"
SESSION_RESOLVED = "session.resolved"
SESSION_REENGAGED = "session.reengaged"
SESSION_CSAT_RECORDED = "session.csat_recorded"
SESSION_AUTO_REPLIED = "session.auto_replied"
PRESENCE_CHANGED = "presence.changed"
TEAM_UPDATED = "team.updated"


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


@dataclass
class AuditEvent:
    action: str
    actor_id: UUID | None
    resource_id: UUID | str
    tenant_id: UUID
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: dt.datetime = field(default_factory=_utcnow)

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["actor_id"] = str(self.actor_id) if self.actor_id else None
        data["resource_id"] = str(self.resource_id)
        data["tenant_id"] = str(self.tenant_id)
        data["timestamp"] = self.timestamp.isoformat()
        return data


class AuditSink(Protocol):
    """Destination for audit events; persistence lives outside this service."""

    def emit(self, event: AuditEvent) -> None: ...


class LoggingAuditSink:
    """Write audit events to the ``agent_inbox.audit`` logger."""

    def __init__(self, audit_logger: logging.Logger | None = None) -> None:
        self._logger = audit_logger or logging.getLogger(AUDIT_LOGGER_NAME)

    def emit(self, event: AuditEvent) -> None:
        payload = event.as_dict()
        self._logger.info(
            "%s %s by %s", event.action, payload["resource_id"], payload["actor_id"],
            extra={"audit": payload},
        )


def emit_safely(sink: AuditSink, event: AuditEvent) -> None:
    """Deliver ``event`` without letting sink failures reach the caller."""

    try:
        sink.emit(event)
    except Exception:
        logger.exception("Audit sink failed for %s on %s", event.action, event.resource_id)


__all__ = [
    "AuditEvent",
    "AuditSink",
    "LoggingAuditSink",
    "PRESENCE_CHANGED",
    "SESSION_ASSIGNED",
    "SESSION_CLAIMED",
    "SESSION_CSAT_RECORDED",
    "SESSION_REENGAGED",
    "SESSION_RESOLVED",
    "SESSION_TRANSFERRED",
    "TEAM_UPDATED",
    "emit_safely",
]
