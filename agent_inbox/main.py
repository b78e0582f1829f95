"""FastAPI application wiring for Agent Inbox.

- Configures logging, CORS (optional for the agent console), Prometheus
  metrics and rate limiting.
- Mounts the inbox and team routers.
- Optionally runs the background assignment scheduler when
  ``INBOX_SCHEDULER_ENABLED`` is true.
"""

import logging
import os

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .core.limits import limiter
from .core.tenant_middleware import TenantContextMiddleware
from .models.session import get_session_factory
from .routers import inbox, teams
from .routing.messaging import WhatsAppTemplateDispatcher
from .routing.scheduler import QueueAssignmentScheduler

load_dotenv()

logger = logging.getLogger(__name__)

app = FastAPI(title="Agent Inbox", version=__version__)
init_logging(app)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)
app.add_middleware(TenantContextMiddleware)
# Optional CORS for the agent console
console_origins = os.getenv("AGENT_CONSOLE_ORIGINS")
if console_origins:
    origins = [o.strip() for o in console_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
app.include_router(inbox.router)
app.include_router(teams.router)

# Expose Prometheus metrics
Instrumentator().instrument(app).expose(
    app, include_in_schema=False, endpoint="/api/metrics"
)

_scheduler: QueueAssignmentScheduler | None = None


@app.on_event("startup")
def start_scheduler() -> None:
    """Start the periodic assignment pass when enabled."""
    global _scheduler
    if os.getenv("INBOX_SCHEDULER_ENABLED", "false").lower() != "true":
        return
    _scheduler = QueueAssignmentScheduler(
        get_session_factory(), dispatcher=WhatsAppTemplateDispatcher()
    )
    _scheduler.start()


@app.on_event("shutdown")
def stop_scheduler() -> None:
    global _scheduler
    if _scheduler is not None:
        _scheduler.stop()
        _scheduler = None
        logger.info("Assignment scheduler stopped")


@app.get("/api/health")
async def health():
    """Liveness and readiness check with a minimal JSON body."""
    return {"status": "ok"}


@app.get("/api/version")
async def version():
    """Return version information for the application."""
    return {
        "version": __version__,
        "build_date": __build_date__,
        "commit_sha": __commit_sha__,
    }
