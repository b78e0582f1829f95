"""Weekly opening hours for teams.

A team's ``schedule`` column holds::

    {
        "enabled": true,
        "timezone": "Africa/Nairobi",
        "days": {"monday": [{"start": "08:00", "end": "17:00"}], ...},
        "outOfOfficeMessage": "We open again at 8am."
    }

Windows are half-open (``start <= now < end``) and read in the team's
timezone. A team without a schedule, or with ``enabled`` false, is always
open. An enabled schedule with a missing or unknown timezone is closed.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import InboxValidationError

logger = logging.getLogger(__name__)

DEFAULT_OUT_OF_OFFICE_MESSAGE = "We are currently closed."

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

_LOOKAHEAD_DAYS = 7


def _minutes(raw: Any, *, day: str, allow_midnight_end: bool = False) -> int:
    text = str(raw or "").strip()
    hours, sep, minutes = text.partition(":")
    if not sep or not hours.isdigit() or not minutes.isdigit() or len(minutes) != 2:
        raise InboxValidationError(f"Invalid time {raw!r} on {day}; use HH:MM.", field="schedule")
    value = int(hours) * 60 + int(minutes)
    limit = 24 * 60 if allow_midnight_end else 24 * 60 - 1
    if int(minutes) > 59 or value > limit:
        raise InboxValidationError(f"Invalid time {raw!r} on {day}; use HH:MM.", field="schedule")
    return value


def _zone(name: str | None) -> ZoneInfo | None:
    if not name or not name.strip():
        return None
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError):
        return None


@dataclass(frozen=True)
class TeamSchedule:
    enabled: bool
    timezone: str | None
    # Weekday index (Monday is 0) to sorted ``(start, end)`` minute windows.
    days: dict[int, tuple[tuple[int, int], ...]] = field(default_factory=dict)
    out_of_office_message: str | None = None

    @classmethod
    def parse(cls, raw: Mapping[str, Any] | None) -> "TeamSchedule | None":
        if not raw:
            return None
        days: dict[int, tuple[tuple[int, int], ...]] = {}
        raw_days = raw.get("days") or {}
        if not isinstance(raw_days, Mapping):
            raise InboxValidationError("schedule.days must be an object.", field="schedule")
        for name, windows in raw_days.items():
            day = str(name).strip().lower()
            if day not in WEEKDAYS:
                raise InboxValidationError(f"Unknown weekday: {name!r}", field="schedule")
            parsed: list[tuple[int, int]] = []
            for window in windows or []:
                start = _minutes(window.get("start"), day=day)
                end = _minutes(window.get("end"), day=day, allow_midnight_end=True)
                if end <= start:
                    raise InboxValidationError(
                        f"Opening window on {day} must end after it starts.", field="schedule"
                    )
                parsed.append((start, end))
            days[WEEKDAYS.index(day)] = tuple(sorted(parsed))
        message = raw.get("outOfOfficeMessage")
        return cls(
            enabled=bool(raw.get("enabled", True)),
            timezone=raw.get("timezone"),
            days=days,
            out_of_office_message=str(message).strip() if message and str(message).strip() else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "timezone": self.timezone,
            "days": {
                WEEKDAYS[index]: [
                    {"start": f"{start // 60:02d}:{start % 60:02d}", "end": f"{end // 60:02d}:{end % 60:02d}"}
                    for start, end in windows
                ]
                for index, windows in sorted(self.days.items())
            },
            "outOfOfficeMessage": self.out_of_office_message,
        }

    @property
    def message(self) -> str:
        return self.out_of_office_message or DEFAULT_OUT_OF_OFFICE_MESSAGE

    def is_open(self, now: dt.datetime) -> bool:
        if not self.enabled:
            return True
        zone = _zone(self.timezone)
        if zone is None:
            logger.warning("Schedule timezone %r is missing or unknown; treating as closed", self.timezone)
            return False
        local = now.astimezone(zone)
        current = local.hour * 60 + local.minute
        return any(start <= current < end for start, end in self.days.get(local.weekday(), ()))

    def next_opening(self, now: dt.datetime) -> dt.datetime | None:
        """First window start after ``now`` within a week, in UTC."""

        zone = _zone(self.timezone)
        if not self.enabled or zone is None:
            return None
        local = now.astimezone(zone)
        current = local.hour * 60 + local.minute
        for offset in range(_LOOKAHEAD_DAYS):
            day = local.date() + dt.timedelta(days=offset)
            for start, _end in self.days.get(day.weekday(), ()):
                if offset == 0 and start <= current:
                    continue
                opening = dt.datetime(day.year, day.month, day.day, tzinfo=zone) + dt.timedelta(
                    minutes=start
                )
                return opening.astimezone(dt.timezone.utc)
        return None


def validate_timezone(name: str | None) -> str:
    if _zone(name) is None:
        raise InboxValidationError(f"Unknown timezone: {name!r}", field="timezone")
    return str(name).strip()


__all__ = [
    "DEFAULT_OUT_OF_OFFICE_MESSAGE",
    "TeamSchedule",
    "WEEKDAYS",
    "validate_timezone",
]
