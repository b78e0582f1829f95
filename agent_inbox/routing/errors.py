"""Exceptions raised by the routing layer.

Contention losses are not errors; they come back as results with
``applied=False`` so callers can re-evaluate the queue.
"""

from __future__ import annotations


class InboxError(RuntimeError):
    """Base class for routing failures scoped to one tenant or session."""


class InboxValidationError(ValueError):
    """Raised when caller input is malformed; never retried automatically."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class SessionNotFoundError(InboxError):
    """Raised when an inbox session could not be located."""


class TeamNotFoundError(InboxError):
    """Raised when a team does not exist in the current tenant."""


class AgentNotFoundError(InboxError):
    """Raised when a user has no active agent profile."""


class NotAssignedError(InboxError):
    """Raised when an agent acts on a session assigned to someone else."""


class InvalidTransitionError(InboxError):
    """Raised when a session is not in a state that allows the transition."""


class MessagingError(InboxError):
    """Raised by messaging dispatchers when a send fails."""


__all__ = [
    "AgentNotFoundError",
    "InboxError",
    "InboxValidationError",
    "InvalidTransitionError",
    "MessagingError",
    "NotAssignedError",
    "SessionNotFoundError",
    "TeamNotFoundError",
]
