"""Utility CLI to bootstrap a demo organization with a staffed default team."""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from sqlalchemy import select
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session

from agent_inbox.models import Base, Organization, User
from agent_inbox.models.session import get_sessionmaker
from agent_inbox.routing.repository import SqlAlchemyInboxRepository
from agent_inbox.routing.service import InboxService

logger = logging.getLogger("tools.bootstrap_demo")

DEFAULT_ORG_NAME = "Demo Organization"
DEFAULT_ORG_SUBDOMAIN = "demo"
DEFAULT_SUPERVISOR_EMAIL = "supervisor@example.com"
DEFAULT_AGENT_EMAILS = ("agent1@example.com", "agent2@example.com")
DEFAULT_TEAM_NAME = "Support"


def _safe_url(db_url: str) -> str:
    """Return ``db_url`` with any password redacted for logging."""

    try:
        parsed = make_url(db_url)
    except Exception:  # pragma: no cover - unparsable URLs are logged verbatim
        return db_url
    if parsed.password is None:
        return db_url
    return parsed.set(password="***").render_as_string(hide_password=False)


def _ensure_user(session: Session, org: Organization, email: str, role: str, permissions: str) -> User:
    user = session.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if user is not None:
        logger.info("User %s already exists (id=%s)", user.email, user.id)
        return user
    user = User(
        organization_id=org.id,
        email=email,
        name=email.split("@", 1)[0].title(),
        role=role,
        permissions=permissions,
    )
    session.add(user)
    session.flush()
    logger.info("Created user %s (id=%s)", user.email, user.id)
    return user


def ensure_demo_entities(
    session: Session,
    *,
    organization_name: str = DEFAULT_ORG_NAME,
    organization_subdomain: str = DEFAULT_ORG_SUBDOMAIN,
    supervisor_email: str = DEFAULT_SUPERVISOR_EMAIL,
    agent_emails: tuple[str, ...] = DEFAULT_AGENT_EMAILS,
    team_name: str = DEFAULT_TEAM_NAME,
) -> tuple[Organization, bool]:
    """Ensure the demo organization, its users and a default team exist.

    Returns the organization and whether it was created by this call. The
    team gets a round-robin assignment config and every agent is added as a
    member with an offline agent profile.
    """

    subdomain = organization_subdomain.strip().lower()
    org = session.execute(
        select(Organization).where(Organization.subdomain == subdomain)
    ).scalar_one_or_none()
    if org is not None:
        logger.info("Organization %s already exists (id=%s)", org.subdomain, org.id)
        return org, False

    org = Organization(name=organization_name.strip(), subdomain=subdomain)
    session.add(org)
    session.flush()
    logger.info("Created organization %s (id=%s)", org.subdomain, org.id)

    supervisor = _ensure_user(
        session,
        org,
        supervisor_email.strip().lower(),
        "supervisor",
        "teams.manage,session.bulk_transfer",
    )
    service = InboxService(SqlAlchemyInboxRepository(session, tenant_id=org.id))
    team = service.teams.create_team(team_name, is_default=True, actor_id=supervisor.id)
    service.teams.set_assignment_config(
        team.id, enabled=True, strategy="round_robin", actor_id=supervisor.id
    )
    for email in agent_emails:
        agent = _ensure_user(session, org, email.strip().lower(), "agent", "")
        service.teams.add_member(team.id, agent.id, actor_id=supervisor.id)
        service.presence.ensure_profile(agent.id)
    return org, True


def main() -> None:
    """Script entrypoint for ensuring the demo organization exists."""

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        raise RuntimeError("DATABASE_URL environment variable is required")

    logger.info("Ensuring schema on %s", _safe_url(db_url))
    SessionLocal = get_sessionmaker(database_url=db_url)
    Base.metadata.create_all(SessionLocal.kw["bind"])

    with SessionLocal() as session:
        org, created = ensure_demo_entities(session)
        session.commit()

    logger.info("Organization %s (%s)", "created" if created else "existing", org.subdomain)


if __name__ == "__main__":  # pragma: no cover - CLI execution
    main()
