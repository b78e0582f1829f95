"""Environment-driven settings for the routing layer."""

from __future__ import annotations

import dataclasses
import os
from functools import lru_cache


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _parse_channel_hours(raw: str | None) -> dict[str, float]:
    """Parse ``whatsapp=24,sms=48`` into a mapping of channel to hours."""

    overrides: dict[str, float] = {}
    if not raw:
        return overrides
    for item in raw.split(","):
        channel, sep, value = item.partition("=")
        if not sep:
            raise ValueError(f"Invalid channel expiry entry: {item!r}")
        overrides[channel.strip().lower()] = float(value)
    return overrides


@dataclasses.dataclass(frozen=True)
class InboxSettings:
    """Runtime configuration for assignment, stats and bulk operations."""

    expiry_hours: float = 24.0
    channel_expiry_hours: dict[str, float] = dataclasses.field(default_factory=dict)
    assign_batch_limit: int = 50
    stats_lookback_hours: int = 24
    transfer_reason_required: bool = False
    reengagement_template: str = "reengagement"
    reengage_max_batch: int = 500
    assign_on_online: bool = True
    scheduler_interval_seconds: float = 10.0
    bulk_rate_limit: str = "30/minute"
    whatsapp_api_url: str = "https://graph.facebook.com/v18.0"
    whatsapp_token: str | None = None
    whatsapp_phone_number_id: str | None = None
    whatsapp_template_language: str = "en"

    def expiry_hours_for(self, channel: str | None) -> float:
        if channel:
            return self.channel_expiry_hours.get(channel.lower(), self.expiry_hours)
        return self.expiry_hours


@lru_cache(maxsize=1)
def get_inbox_settings() -> InboxSettings:
    """Load settings from the environment with defaults for development."""

    return InboxSettings(
        expiry_hours=float(os.getenv("INBOX_EXPIRY_HOURS", "24")),
        channel_expiry_hours=_parse_channel_hours(os.getenv("INBOX_CHANNEL_EXPIRY_HOURS")),
        assign_batch_limit=int(os.getenv("INBOX_ASSIGN_BATCH_LIMIT", "50")),
        stats_lookback_hours=int(os.getenv("INBOX_STATS_LOOKBACK_HOURS", "24")),
        transfer_reason_required=_env_bool("INBOX_TRANSFER_REASON_REQUIRED", False),
        reengagement_template=os.getenv("INBOX_REENGAGEMENT_TEMPLATE", "reengagement"),
        reengage_max_batch=int(os.getenv("INBOX_REENGAGE_MAX_BATCH", "500")),
        assign_on_online=_env_bool("INBOX_ASSIGN_ON_ONLINE", True),
        scheduler_interval_seconds=float(os.getenv("INBOX_SCHEDULER_INTERVAL_SECONDS", "10")),
        bulk_rate_limit=os.getenv("INBOX_BULK_RATE_LIMIT", "30/minute"),
        whatsapp_api_url=os.getenv("WHATSAPP_API_URL", "https://graph.facebook.com/v18.0"),
        whatsapp_token=os.getenv("WHATSAPP_TOKEN") or None,
        whatsapp_phone_number_id=os.getenv("WHATSAPP_PHONE_NUMBER_ID") or None,
        whatsapp_template_language=os.getenv("WHATSAPP_TEMPLATE_LANGUAGE", "en"),
    )


def reset_inbox_settings_cache() -> None:
    """Clear cached settings; useful in tests when env vars change."""

    get_inbox_settings.cache_clear()


__all__ = ["InboxSettings", "get_inbox_settings", "reset_inbox_settings_cache"]
