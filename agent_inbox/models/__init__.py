"""SQLAlchemy declarative base and the inbox models.

This package exposes a single declarative ``Base`` that every model module
inherits from so ``Base.metadata`` always describes the full schema used by
the routing layer and the migrations.
"""

from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy declarative models."""


# Re-export models so callers can import them via ``from agent_inbox.models
# import InboxSession`` instead of touching private modules.
from .tenant import Organization, User
from .inbox import (
    AgentProfile,
    AssignmentConfig,
    InboxSession,
    Resolution,
    Shift,
    Team,
    TeamMember,
)


__all__ = [
    "AgentProfile",
    "AssignmentConfig",
    "Base",
    "InboxSession",
    "Organization",
    "Resolution",
    "Shift",
    "Team",
    "TeamMember",
    "User",
]
