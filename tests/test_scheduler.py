import time
import uuid

from agent_inbox.core.config import InboxSettings
from agent_inbox.models import Organization
from agent_inbox.routing.scheduler import QueueAssignmentScheduler
from agent_inbox.routing.service import InboxService

from conftest import InboxFixture, RecordingAuditSink


def _seed_tenant(inbox: InboxFixture, name: str):
    """Add another organization with one online agent and one waiting session."""

    organization = Organization(name=name, subdomain=f"{name.lower()}-{uuid.uuid4().hex[:6]}")
    inbox.session.add(organization)
    inbox.session.flush()
    other = InboxFixture(
        factory=inbox.factory,
        session=inbox.session,
        tenant_id=organization.id,
        audit=inbox.audit,
    )
    team = other.team()
    agent = other.agent(team)
    waiting = other.inbox_session(team)
    return organization.id, agent, waiting


def test_run_once_assigns_per_tenant(inbox):
    first_id, first_agent, first_waiting = _seed_tenant(inbox, "Acme")
    second_id, second_agent, second_waiting = _seed_tenant(inbox, "Globex")
    inbox.session.commit()

    scheduler = QueueAssignmentScheduler(inbox.factory, settings=inbox.settings)
    results = scheduler.run_once()

    assert results == {first_id: 1, second_id: 1}
    assert inbox.reload(first_waiting).assigned_agent_id == first_agent.id
    assert inbox.reload(second_waiting).assigned_agent_id == second_agent.id
    assert scheduler.run_once() == {}


def test_failing_tenant_does_not_block_others(inbox, caplog):
    broken_id, _, broken_waiting = _seed_tenant(inbox, "Broken")
    healthy_id, healthy_agent, healthy_waiting = _seed_tenant(inbox, "Healthy")
    inbox.session.commit()

    def service_factory(repository):
        if repository.tenant_id == broken_id:
            raise RuntimeError("tenant database offline")
        return InboxService(repository, audit_sink=RecordingAuditSink(), settings=inbox.settings)

    scheduler = QueueAssignmentScheduler(inbox.factory, service_factory=service_factory)
    with caplog.at_level("ERROR", logger="agent_inbox.routing.scheduler"):
        results = scheduler.run_once()

    assert results == {healthy_id: 1}
    assert inbox.reload(broken_waiting).status == "unassigned"
    assert inbox.reload(healthy_waiting).assigned_agent_id == healthy_agent.id
    assert any(str(broken_id) in record.getMessage() for record in caplog.records)


def test_start_and_stop(inbox):
    _, agent, waiting = _seed_tenant(inbox, "Loop")
    inbox.session.commit()
    settings = InboxSettings(scheduler_interval_seconds=0.05)
    scheduler = QueueAssignmentScheduler(inbox.factory, settings=settings)

    scheduler.start()
    try:
        assert scheduler.running
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            if inbox.reload(waiting).assigned_agent_id == agent.id:
                break
            time.sleep(0.05)
    finally:
        scheduler.stop()

    assert not scheduler.running
    assert inbox.reload(waiting).assigned_agent_id == agent.id
