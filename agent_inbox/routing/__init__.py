"""Chat assignment and queue management for the agent inbox."""

from .audit import AuditEvent, AuditSink, LoggingAuditSink
from .bulk import BulkOperations
from .engine import AssignmentEngine
from .errors import (
    AgentNotFoundError,
    InboxError,
    InboxValidationError,
    InvalidTransitionError,
    MessagingError,
    NotAssignedError,
    SessionNotFoundError,
    TeamNotFoundError,
)
from .messaging import MessagingDispatcher, WhatsAppTemplateDispatcher
from .presence import PresenceService
from .repository import InboxRepository, SqlAlchemyInboxRepository
from .resolution import ResolutionWorkflow
from .scheduler import QueueAssignmentScheduler
from .service import InboxService
from .stats import QueueStatsAggregator
from .teams import TeamRegistry

__all__ = [
    "AgentNotFoundError",
    "AssignmentEngine",
    "AuditEvent",
    "AuditSink",
    "BulkOperations",
    "InboxError",
    "InboxRepository",
    "InboxService",
    "InboxValidationError",
    "InvalidTransitionError",
    "LoggingAuditSink",
    "MessagingDispatcher",
    "MessagingError",
    "NotAssignedError",
    "PresenceService",
    "QueueAssignmentScheduler",
    "QueueStatsAggregator",
    "ResolutionWorkflow",
    "SessionNotFoundError",
    "SqlAlchemyInboxRepository",
    "TeamNotFoundError",
    "TeamRegistry",
    "WhatsAppTemplateDispatcher",
]
