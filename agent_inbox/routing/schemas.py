"""Pydantic schemas for the inbox and team APIs."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

StrategyName = Literal[
    "round_robin", "manual", "specific_agents", "least_active", "least_assigned", "hybrid"
]


class Message(BaseModel):
    message: str


# ----------------------------------------------------------------------
# Presence


class PresenceUpdate(BaseModel):
    status: Literal["online", "offline", "busy"]
    reason: Literal["available", "busy", "unavailable", "off_shift", "on_leave"] | None = None


class PresenceDetail(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: UUID
    status: str
    presence_reason: str
    max_concurrent_chats: int
    is_active: bool
    status_changed_at: datetime | None = None


class PresenceResponse(BaseModel):
    presence: PresenceDetail
    assigned: int = 0


# ----------------------------------------------------------------------
# Sessions


class InboundRequest(BaseModel):
    contact_id: str = Field(..., min_length=1, max_length=255)
    contact_name: str | None = Field(default=None, max_length=255)
    channel: str = Field(default="whatsapp", max_length=32)
    team_id: UUID | None = None
    priority: int = 0
    context: dict[str, Any] = Field(default_factory=dict)


class SessionDetail(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contact_id: str
    contact_name: str | None = None
    channel: str
    status: str
    assigned_agent_id: UUID | None = None
    assigned_team_id: UUID | None = None
    priority: int
    context: dict[str, Any] = Field(default_factory=dict)
    last_message_at: datetime | None = None
    assigned_at: datetime | None = None
    created_at: datetime


class InboundResponse(BaseModel):
    session: SessionDetail
    created: bool


class SessionList(BaseModel):
    items: list[SessionDetail]
    total: int


class AssignQueueRequest(BaseModel):
    team_id: UUID | None = None


class AgentAssignment(BaseModel):
    agent_id: UUID
    count: int = Field(..., ge=1, le=500)


class AssignToAgentsRequest(BaseModel):
    assignments: list[AgentAssignment] = Field(..., min_length=1, max_length=100)


class AssignToTeamsRequest(BaseModel):
    team_ids: list[UUID] = Field(..., min_length=1, max_length=100)


class AssignQueueResponse(BaseModel):
    assigned: int


class ClaimResponse(BaseModel):
    session_id: UUID
    agent_id: UUID | None = None
    applied: bool
    reason: str | None = None


class TeamQueueStatsPayload(BaseModel):
    team_id: UUID
    queue_size: int
    active_chats: int
    agent_count: int
    avg_wait_time_minutes: float | None = None
    longest_wait_time_minutes: float | None = None
    avg_resolution_time_minutes: float | None = None
    longest_resolution_time_minutes: float | None = None


class QueueStatsResponse(BaseModel):
    items: list[TeamQueueStatsPayload]


class BulkTransferRequest(BaseModel):
    session_ids: list[UUID] = Field(..., min_length=1, max_length=500)
    target_agent_id: UUID | None = None
    target_team_id: UUID | None = None
    reason: str | None = Field(default=None, max_length=1000)


class TransferResultPayload(BaseModel):
    session_id: UUID
    success: bool
    error: str | None = None


class BulkTransferResponse(BaseModel):
    results: list[TransferResultPayload]


class StaleSelectionRequest(BaseModel):
    older_than_days: int | None = Field(default=None, ge=1)
    start_date: datetime | None = None
    end_date: datetime | None = None


class ExpiredCountResponse(BaseModel):
    count: int


class ReengageErrorPayload(BaseModel):
    session_id: UUID
    message: str


class ReengageResponse(BaseModel):
    sent: int
    errors: list[ReengageErrorPayload]
    skipped: int = 0


class ResolveRequest(BaseModel):
    category: str | None = Field(default=None, max_length=64)
    notes: str | None = Field(default=None, max_length=5000)
    fields: dict[str, Any] | None = None
    skip: bool = False


class ResolveResponse(BaseModel):
    session_id: UUID
    applied: bool
    category: str | None = None
    reason: str | None = None


class CsatRequest(BaseModel):
    score: int = Field(..., ge=1, le=5)
    feedback: str | None = Field(default=None, max_length=2000)


# ----------------------------------------------------------------------
# Teams


class TeamCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    routing_strategy: StrategyName = "round_robin"
    is_default: bool = False
    enforce_shifts: bool = False


class TeamDetail(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None = None
    routing_strategy: str
    is_default: bool
    is_active: bool
    enforce_shifts: bool
    wrap_up_form: dict[str, Any] | None = None
    schedule: dict[str, Any] | None = None


class TeamList(BaseModel):
    items: list[TeamDetail]
    total: int


class MemberCreate(BaseModel):
    user_id: UUID
    role: Literal["member", "leader", "manager"] = "member"
    max_concurrent_chats: int | None = Field(default=None, ge=1, le=100)


class MemberDetail(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    team_id: UUID
    user_id: UUID
    role: str
    is_active: bool


class AssignmentConfigUpdate(BaseModel):
    enabled: bool = True
    strategy: StrategyName = "round_robin"
    settings: dict[str, Any] = Field(default_factory=dict)


class AssignmentConfigDetail(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    team_id: UUID | None = None
    enabled: bool
    strategy: str
    settings: dict[str, Any] = Field(default_factory=dict)


class WrapUpOption(BaseModel):
    value: str = Field(..., min_length=1)
    label: str | None = None


class WrapUpFieldPayload(BaseModel):
    id: str = Field(..., min_length=1, max_length=64)
    label: str = Field(..., min_length=1, max_length=255)
    type: Literal["text", "textarea", "select"]
    required: bool = False
    options: list[WrapUpOption] | None = None


class WrapUpFormPayload(BaseModel):
    enabled: bool = True
    mandatory: bool = False
    fields: list[WrapUpFieldPayload] = Field(default_factory=list)


class OpeningWindow(BaseModel):
    start: str = Field(..., pattern=r"^\d{2}:\d{2}$")
    end: str = Field(..., pattern=r"^\d{2}:\d{2}$")


class SchedulePayload(BaseModel):
    enabled: bool = True
    timezone: str = Field(..., min_length=1, max_length=64)
    days: dict[str, list[OpeningWindow]] = Field(default_factory=dict)
    out_of_office_message: str | None = Field(
        default=None, max_length=1000, alias="outOfOfficeMessage"
    )

    model_config = ConfigDict(populate_by_name=True)


class ShiftCreate(BaseModel):
    user_id: UUID
    start_time: datetime
    end_time: datetime


class ShiftDetail(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    team_id: UUID | None = None
    user_id: UUID
    start_time: datetime
    end_time: datetime
