import dataclasses
import datetime as dt
import pathlib
import sys
import uuid
from dataclasses import dataclass, field
from typing import Any

import pytest
from fastapi import FastAPI, Request
from sqlalchemy.orm import Session, sessionmaker

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from agent_inbox.app_logging import init_logging
from agent_inbox.core.config import InboxSettings, reset_inbox_settings_cache
from agent_inbox.models import (
    AgentProfile,
    AssignmentConfig,
    Base,
    InboxSession,
    Organization,
    Team,
    TeamMember,
    User,
)
from agent_inbox.models.session import get_sessionmaker, reset_session_factory
from agent_inbox.routing.audit import AuditEvent
from agent_inbox.routing.errors import MessagingError
from agent_inbox.routing.repository import SqlAlchemyInboxRepository
from agent_inbox.routing.service import InboxService
from agent_inbox.security import create_access_token, reset_jwt_settings_cache

NOW = dt.datetime(2026, 3, 2, 12, 0, tzinfo=dt.timezone.utc)


class RecordingAuditSink:
    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    def emit(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self) -> list[str]:
        return [event.action for event in self.events]


class FakeDispatcher:
    """Messaging double that fails for the configured contact ids."""

    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.sent: list[tuple[str, str, dict[str, Any]]] = []
        self.texts: list[tuple[str, str]] = []

    def send_template_message(self, contact_id, template_id, params):
        if contact_id in self.failing:
            raise MessagingError(f"delivery to {contact_id} failed")
        self.sent.append((contact_id, template_id, dict(params)))
        return {"messageId": f"wamid.{len(self.sent)}"}

    def send_text_message(self, contact_id, text):
        if contact_id in self.failing:
            raise MessagingError(f"delivery to {contact_id} failed")
        self.texts.append((contact_id, text))
        return {"messageId": f"wamid.text.{len(self.texts)}"}


@dataclass
class InboxFixture:
    """Seeded tenant plus helpers for building routing scenarios."""

    factory: sessionmaker[Session]
    session: Session
    tenant_id: uuid.UUID
    audit: RecordingAuditSink
    settings: InboxSettings = field(default_factory=InboxSettings)
    _counter: int = 0

    def _next(self) -> int:
        self._counter += 1
        return self._counter

    @property
    def repository(self) -> SqlAlchemyInboxRepository:
        return SqlAlchemyInboxRepository(self.session, tenant_id=self.tenant_id)

    def service(self, dispatcher: Any = None, **overrides: Any) -> InboxService:
        settings = dataclasses.replace(self.settings, **overrides)
        return InboxService(
            self.repository, dispatcher=dispatcher, audit_sink=self.audit, settings=settings
        )

    def user(self, role: str = "agent", permissions: str = "", *, name: str | None = None) -> User:
        n = self._next()
        user = User(
            organization_id=self.tenant_id,
            email=f"user{n}-{uuid.uuid4().hex[:6]}@tenant.example",
            name=name or f"User {n}",
            role=role,
            permissions=permissions,
        )
        self.session.add(user)
        self.session.flush()
        return user

    def team(
        self,
        name: str | None = None,
        *,
        strategy: str = "round_robin",
        is_default: bool = False,
        enforce_shifts: bool = False,
        config: bool = True,
        wrap_up_form: dict[str, Any] | None = None,
    ) -> Team:
        team = Team(
            tenant_id=self.tenant_id,
            name=name or f"Team {self._next()}",
            routing_strategy=strategy,
            is_default=is_default,
            enforce_shifts=enforce_shifts,
            wrap_up_form=wrap_up_form,
        )
        self.session.add(team)
        self.session.flush()
        if config:
            self.session.add(
                AssignmentConfig(
                    tenant_id=self.tenant_id, team_id=team.id, enabled=True, strategy=strategy
                )
            )
            self.session.flush()
        return team

    def agent(
        self,
        *teams: Team,
        status: str = "online",
        max_chats: int = 3,
        user_id: uuid.UUID | None = None,
    ) -> User:
        if user_id is not None:
            user = self.session.get(User, user_id)
        else:
            user = self.user("agent")
        reason = {"online": "available", "busy": "busy"}.get(status, "unavailable")
        self.session.add(
            AgentProfile(
                user_id=user.id,
                tenant_id=self.tenant_id,
                status=status,
                presence_reason=reason,
                max_concurrent_chats=max_chats,
            )
        )
        for team in teams:
            self.session.add(
                TeamMember(tenant_id=self.tenant_id, team_id=team.id, user_id=user.id)
            )
        self.session.flush()
        return user

    def inbox_session(
        self,
        team: Team | None = None,
        *,
        created_at: dt.datetime | None = None,
        last_message_at: dt.datetime | None = None,
        priority: int = 0,
        agent: User | None = None,
        status: str | None = None,
        channel: str = "whatsapp",
        contact_id: str | None = None,
        contact_name: str | None = None,
        assigned_at: dt.datetime | None = None,
    ) -> InboxSession:
        n = self._next()
        created_at = created_at or NOW - dt.timedelta(minutes=60 - n)
        if agent is not None and assigned_at is None:
            assigned_at = created_at
        record = InboxSession(
            tenant_id=self.tenant_id,
            contact_id=contact_id or f"+1555000{n:04d}",
            contact_name=contact_name,
            channel=channel,
            status=status or ("assigned" if agent else "unassigned"),
            assigned_agent_id=agent.id if agent else None,
            assigned_team_id=team.id if team else None,
            priority=priority,
            context={},
            last_message_at=last_message_at or created_at,
            assigned_at=assigned_at,
            first_assigned_at=assigned_at,
            created_at=created_at,
            updated_at=created_at,
        )
        self.session.add(record)
        self.session.flush()
        return record

    def reload(self, record: Any) -> Any:
        self.session.flush()
        self.session.expire_all()
        return self.session.get(type(record), record.id)


def _sqlite_factory(path: pathlib.Path) -> sessionmaker[Session]:
    factory = get_sessionmaker(f"sqlite+pysqlite:///{path}")
    Base.metadata.create_all(factory.kw["bind"])
    return factory


@pytest.fixture
def inbox(tmp_path: pathlib.Path):
    factory = _sqlite_factory(tmp_path / "inbox.db")
    session = factory()
    organization = Organization(name="Tenant", subdomain=f"tenant-{uuid.uuid4().hex[:6]}")
    session.add(organization)
    session.flush()

    yield InboxFixture(
        factory=factory,
        session=session,
        tenant_id=organization.id,
        audit=RecordingAuditSink(),
    )

    session.close()
    factory.kw["bind"].dispose()


@dataclass
class ApiContext:
    factory: sessionmaker[Session]
    tenant_id: uuid.UUID
    users: dict[str, uuid.UUID]
    tokens: dict[str, str]

    def header(self, name: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.tokens[name]}"}

    def session(self) -> Session:
        return self.factory()


@pytest.fixture
def api(monkeypatch: pytest.MonkeyPatch, tmp_path: pathlib.Path):
    """SQLite-backed app state with a supervisor, two agents and a default team."""

    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("TENANT_TOKEN_SECRET", "super-secret-key")
    monkeypatch.setenv("TENANT_TOKEN_AUDIENCE", "agent-inbox")
    monkeypatch.setenv("TENANT_TOKEN_ISSUER", "auth.agent-inbox")
    monkeypatch.setenv("TENANT_TOKEN_ALGORITHM", "HS256")
    monkeypatch.setenv("INBOX_BULK_RATE_LIMIT", "1000/minute")
    monkeypatch.delenv("INBOX_SCHEDULER_ENABLED", raising=False)
    reset_jwt_settings_cache()
    reset_inbox_settings_cache()

    factory = _sqlite_factory(tmp_path / "api.db")
    reset_session_factory(factory)

    users: dict[str, uuid.UUID] = {}
    tokens: dict[str, str] = {}
    with factory.begin() as session:
        organization = Organization(name="Tenant", subdomain="tenant")
        session.add(organization)
        session.flush()
        team = Team(
            tenant_id=organization.id, name="Support", routing_strategy="round_robin", is_default=True
        )
        session.add(team)
        session.flush()
        session.add(
            AssignmentConfig(
                tenant_id=organization.id, team_id=team.id, enabled=True, strategy="round_robin"
            )
        )
        accounts = {
            "supervisor": ("supervisor", "teams.manage,session.bulk_transfer"),
            "admin": ("admin", ""),
            "agent1": ("agent", ""),
            "agent2": ("agent", ""),
            "viewer": ("viewer", ""),
        }
        for key, (role, permissions) in accounts.items():
            user = User(
                organization_id=organization.id,
                email=f"{key}@tenant.example",
                name=key.title(),
                role=role,
                permissions=permissions,
            )
            session.add(user)
            session.flush()
            users[key] = user.id
            tokens[key], _ = create_access_token(user)
            if role == "agent":
                session.add(
                    AgentProfile(
                        user_id=user.id,
                        tenant_id=organization.id,
                        max_concurrent_chats=2,
                    )
                )
                session.add(
                    TeamMember(tenant_id=organization.id, team_id=team.id, user_id=user.id)
                )
        users["team"] = team.id
        tenant_id = organization.id

    yield ApiContext(factory=factory, tenant_id=tenant_id, users=users, tokens=tokens)

    reset_session_factory(None)
    reset_inbox_settings_cache()
    reset_jwt_settings_cache()
    factory.kw["bind"].dispose()


@pytest.fixture
def app_factory(monkeypatch):
    def _create_app(log_dir: str, log_request_bodies: bool = False):
        """Create a FastAPI app with logging initialised."""
        monkeypatch.setenv("LOG_DIR", str(log_dir))
        if log_request_bodies:
            monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
        app = FastAPI()

        @app.post("/echo")
        async def echo(request: Request):
            return await request.json()

        init_logging(app)
        return app

    return _create_app
