"""Shared SlowAPI limiter for rate limited endpoints."""

from __future__ import annotations

from fastapi import Request
from slowapi import Limiter

from .config import get_inbox_settings


def get_client_ip(request: Request) -> str:
    """Extract a best-effort client IP for rate limiting.

    Prefer ``X-Forwarded-For`` (first hop) if present, otherwise use the
    socket peer address.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def bulk_rate_limit() -> str:
    return get_inbox_settings().bulk_rate_limit


limiter = Limiter(key_func=get_client_ip)

__all__ = ["bulk_rate_limit", "get_client_ip", "limiter"]
