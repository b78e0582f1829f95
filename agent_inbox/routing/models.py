"""Domain types shared by the routing services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, ClassVar, Mapping, Sequence, Union
from uuid import UUID

from .errors import InboxValidationError


class SessionStatus(str, Enum):
    UNASSIGNED = "unassigned"
    ASSIGNED = "assigned"
    RESOLVED = "resolved"


class AgentStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    BUSY = "busy"


class PresenceReason(str, Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    UNAVAILABLE = "unavailable"
    OFF_SHIFT = "off_shift"
    ON_LEAVE = "on_leave"


class RoutingStrategy(str, Enum):
    ROUND_ROBIN = "round_robin"
    MANUAL = "manual"
    SPECIFIC_AGENTS = "specific_agents"
    LEAST_ACTIVE = "least_active"
    LEAST_ASSIGNED = "least_assigned"
    HYBRID = "hybrid"


class TimeWindow(str, Enum):
    """How far back ``least_assigned`` counts an agent's assignments."""

    ALL_TIME = "all_time"
    SHIFT = "shift"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class MemberRole(str, Enum):
    MEMBER = "member"
    LEADER = "leader"
    MANAGER = "manager"


class ResolutionCategory(str, Enum):
    """Fixed categories accepted when a team has no wrap-up form."""

    GENERAL_INQUIRY = "general_inquiry"
    TECHNICAL_SUPPORT = "technical_support"
    BILLING = "billing"
    COMPLAINT = "complaint"
    FEEDBACK = "feedback"
    SALES = "sales"
    OTHER = "other"


# Reasons a caller may pick for each coarse status; the first one is the default.
PRESENCE_REASONS: dict[AgentStatus, tuple[PresenceReason, ...]] = {
    AgentStatus.ONLINE: (PresenceReason.AVAILABLE, PresenceReason.BUSY),
    AgentStatus.BUSY: (PresenceReason.BUSY,),
    AgentStatus.OFFLINE: (
        PresenceReason.UNAVAILABLE,
        PresenceReason.OFF_SHIFT,
        PresenceReason.ON_LEAVE,
    ),
}

# Load-based strategies usable as hybrid tie-breakers, in default priority order.
LOAD_STRATEGIES: tuple[RoutingStrategy, ...] = (
    RoutingStrategy.LEAST_ACTIVE,
    RoutingStrategy.LEAST_ASSIGNED,
)

SHIFT_WINDOW = timedelta(hours=12)

SKIPPED_CATEGORY = "skipped"
CUSTOM_CATEGORY = "custom"


# ----------------------------------------------------------------------
# Wrap-up form descriptors


@dataclass(frozen=True)
class TextField:
    kind: ClassVar[str] = "text"

    id: str
    label: str
    required: bool = False


@dataclass(frozen=True)
class TextAreaField:
    kind: ClassVar[str] = "textarea"

    id: str
    label: str
    required: bool = False


@dataclass(frozen=True)
class SelectOption:
    value: str
    label: str


@dataclass(frozen=True)
class SelectField:
    kind: ClassVar[str] = "select"

    id: str
    label: str
    options: tuple[SelectOption, ...]
    required: bool = False

    def allows(self, value: str) -> bool:
        return any(option.value == value for option in self.options)


WrapUpField = Union[TextField, TextAreaField, SelectField]


@dataclass(frozen=True)
class WrapUpForm:
    """A team's wrap-up configuration.

    ``mandatory`` disables the skip path; ``enabled=False`` (or no form at
    all) puts the team in the fixed-category mode.
    """

    enabled: bool
    mandatory: bool
    fields: tuple[WrapUpField, ...] = ()

    @classmethod
    def parse(cls, raw: Mapping[str, Any] | None) -> "WrapUpForm | None":
        if not raw:
            return None
        fields = tuple(_parse_field(item) for item in raw.get("fields") or [])
        ids = [f.id for f in fields]
        if len(ids) != len(set(ids)):
            raise InboxValidationError("Wrap-up field ids must be unique.", field="fields")
        return cls(
            enabled=bool(raw.get("enabled", True)),
            mandatory=bool(raw.get("mandatory", False)),
            fields=fields,
        )

    def to_dict(self) -> dict[str, Any]:
        items: list[dict[str, Any]] = []
        for f in self.fields:
            item: dict[str, Any] = {
                "id": f.id,
                "label": f.label,
                "type": f.kind,
                "required": f.required,
            }
            if isinstance(f, SelectField):
                item["options"] = [{"value": o.value, "label": o.label} for o in f.options]
            items.append(item)
        return {"enabled": self.enabled, "mandatory": self.mandatory, "fields": items}


def _parse_field(raw: Mapping[str, Any]) -> WrapUpField:
    field_id = str(raw.get("id") or "").strip()
    if not field_id:
        raise InboxValidationError("Wrap-up field requires an id.", field="fields")
    label = str(raw.get("label") or field_id)
    required = bool(raw.get("required", False))
    kind = raw.get("type")
    if kind == TextField.kind:
        return TextField(id=field_id, label=label, required=required)
    if kind == TextAreaField.kind:
        return TextAreaField(id=field_id, label=label, required=required)
    if kind == SelectField.kind:
        options = tuple(_parse_option(option) for option in raw.get("options") or [])
        if not options:
            raise InboxValidationError(
                f"Select field '{field_id}' needs at least one option.", field=field_id
            )
        return SelectField(id=field_id, label=label, options=options, required=required)
    raise InboxValidationError(f"Unsupported wrap-up field type: {kind!r}", field=field_id)


def _parse_option(raw: Any) -> SelectOption:
    if isinstance(raw, str):
        return SelectOption(value=raw, label=raw)
    value = str(raw.get("value") or "").strip()
    if not value:
        raise InboxValidationError("Select options require a value.", field="options")
    return SelectOption(value=value, label=str(raw.get("label") or value))


def validate_wrap_up(form: WrapUpForm, answers: Mapping[str, Any]) -> dict[str, str]:
    """Check ``answers`` against ``form`` and return the cleaned values.

    Unknown field ids are rejected. Blank optional answers are dropped.
    """

    known = {f.id: f for f in form.fields}
    unknown = sorted(set(answers) - set(known))
    if unknown:
        raise InboxValidationError(
            f"Unknown wrap-up fields: {', '.join(unknown)}", field=unknown[0]
        )

    cleaned: dict[str, str] = {}
    for f in form.fields:
        raw_value = answers.get(f.id)
        value = "" if raw_value is None else str(raw_value).strip()
        if not value:
            if f.required:
                raise InboxValidationError(f"'{f.label}' is required.", field=f.id)
            continue
        if isinstance(f, SelectField):
            if not f.allows(value):
                raise InboxValidationError(
                    f"'{value}' is not a valid option for '{f.label}'.", field=f.id
                )
        elif isinstance(f, (TextField, TextAreaField)):
            if len(value) > 5000:
                raise InboxValidationError(f"'{f.label}' is too long.", field=f.id)
        else:  # pragma: no cover - exhaustive over WrapUpField
            raise TypeError(f"Unhandled wrap-up field {f!r}")
        cleaned[f.id] = value
    return cleaned


def summarize_wrap_up(form: WrapUpForm, cleaned: Mapping[str, str]) -> tuple[str, str | None]:
    """Derive the resolution category and notes from configured answers.

    The first answered select field supplies the category and the first
    answered textarea supplies the notes.
    """

    category = CUSTOM_CATEGORY
    notes: str | None = None
    for f in form.fields:
        value = cleaned.get(f.id)
        if not value:
            continue
        if isinstance(f, SelectField) and category == CUSTOM_CATEGORY:
            category = value
        elif isinstance(f, TextAreaField) and notes is None:
            notes = value
    return category, notes


# ----------------------------------------------------------------------
# Operation results


@dataclass
class ClaimResult:
    session_id: UUID
    agent_id: UUID | None
    applied: bool
    reason: str | None = None


@dataclass
class TransferResult:
    session_id: UUID
    success: bool
    error: str | None = None


@dataclass
class ReengageError:
    session_id: UUID
    message: str


@dataclass
class ReengageSummary:
    sent: int = 0
    errors: list[ReengageError] = field(default_factory=list)
    # Stale sessions left out because the batch cap was reached.
    skipped: int = 0


@dataclass
class ResolutionResult:
    session_id: UUID
    applied: bool
    category: str | None = None
    reason: str | None = None


@dataclass
class TeamQueueStats:
    team_id: UUID
    queue_size: int
    active_chats: int
    agent_count: int
    avg_wait_time_minutes: float | None
    longest_wait_time_minutes: float | None
    avg_resolution_time_minutes: float | None
    longest_resolution_time_minutes: float | None


@dataclass(frozen=True)
class StaleSelection:
    """Exactly one of ``older_than_days`` or the date range is set."""

    older_than_days: int | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None


def ordered_unique(values: Sequence[UUID]) -> list[UUID]:
    seen: set[UUID] = set()
    result: list[UUID] = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


def window_start(window: TimeWindow, now: datetime) -> datetime | None:
    """Start of the counting window ending at ``now``; ``None`` means all time."""

    if window is TimeWindow.ALL_TIME:
        return None
    if window is TimeWindow.SHIFT:
        return now - SHIFT_WINDOW
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if window is TimeWindow.DAY:
        return midnight
    if window is TimeWindow.WEEK:
        return midnight - timedelta(days=midnight.weekday())
    return midnight.replace(day=1)


def load_priority(
    strategy: RoutingStrategy, settings: Mapping[str, Any] | None
) -> tuple[RoutingStrategy, ...]:
    """Load metrics compared, in order, when ranking agents for ``strategy``."""

    if strategy in LOAD_STRATEGIES:
        return (strategy,)
    if strategy is not RoutingStrategy.HYBRID:
        return ()
    raw = (settings or {}).get("priority")
    if raw is None:
        return LOAD_STRATEGIES
    if not isinstance(raw, list) or not raw:
        raise InboxValidationError("hybrid settings.priority must be a non-empty list.", field="settings")
    priority: list[RoutingStrategy] = []
    for value in raw:
        try:
            item = RoutingStrategy(value)
        except ValueError:
            item = None
        if item not in LOAD_STRATEGIES:
            raise InboxValidationError(
                f"Unsupported hybrid priority entry: {value!r}", field="settings"
            )
        if item not in priority:
            priority.append(item)
    return tuple(priority)


def load_time_window(settings: Mapping[str, Any] | None) -> TimeWindow:
    raw = (settings or {}).get("timeWindow") or TimeWindow.ALL_TIME.value
    try:
        return TimeWindow(raw)
    except ValueError as exc:
        raise InboxValidationError(f"Unknown time window: {raw!r}", field="settings") from exc
