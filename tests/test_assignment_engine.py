import datetime as dt
import logging
import uuid
from collections import Counter

import pytest

from agent_inbox.models import AssignmentConfig, InboxSession
from agent_inbox.routing.engine import DEFAULT_NO_AGENT_MESSAGE, rotate
from agent_inbox.routing.errors import (
    AgentNotFoundError,
    InboxValidationError,
    InvalidTransitionError,
    SessionNotFoundError,
    TeamNotFoundError,
)
from agent_inbox.routing.repository import SqlAlchemyInboxRepository
from agent_inbox.routing.schedule import DEFAULT_OUT_OF_OFFICE_MESSAGE

from conftest import NOW, FakeDispatcher


def _assignees(inbox, sessions):
    inbox.session.flush()
    inbox.session.expire_all()
    return [inbox.session.get(InboxSession, s.id).assigned_agent_id for s in sessions]


def test_capacity_and_offline_agent_scenario(inbox):
    team = inbox.team()
    a1 = inbox.agent(team, max_chats=2)
    inbox.agent(team, max_chats=1, status="offline")
    s1, s2, s3 = (inbox.inbox_session(team) for _ in range(3))

    result = inbox.service().assign_queue(team.id)

    assert result == {"assigned": 2}
    assert _assignees(inbox, [s1, s2, s3]) == [a1.id, a1.id, None]
    assert inbox.reload(s3).status == "unassigned"


def test_round_robin_spreads_a_batch_evenly(inbox):
    team = inbox.team()
    agents = [inbox.agent(team, max_chats=10) for _ in range(3)]
    sessions = [inbox.inbox_session(team) for _ in range(7)]

    assert inbox.service().assign_queue(team.id) == {"assigned": 7}

    counts = Counter(_assignees(inbox, sessions))
    assert sorted(counts.values()) == [2, 2, 3]
    assert set(counts) == {a.id for a in agents}
    ordered = sorted((a.id for a in agents), key=str)
    assert _assignees(inbox, sessions)[:3] == ordered


def test_rotation_cursor_persists_between_passes(inbox):
    team = inbox.team()
    agents = sorted((inbox.agent(team, max_chats=10) for _ in range(3)), key=lambda a: str(a.id))
    first = inbox.inbox_session(team)
    inbox.service().assign_queue(team.id)
    second = inbox.inbox_session(team)
    inbox.service().assign_queue(team.id)
    third = inbox.inbox_session(team)
    inbox.service().assign_queue(team.id)

    assert _assignees(inbox, [first, second, third]) == [a.id for a in agents]
    assert inbox.reload(team).rotation_cursor == agents[2].id


def test_priority_then_longest_wait_first(inbox):
    team = inbox.team()
    agent = inbox.agent(team, max_chats=1)
    older = inbox.inbox_session(team)
    urgent = inbox.inbox_session(team, priority=5)

    inbox.service().assign_queue(team.id)

    assert _assignees(inbox, [older, urgent]) == [None, agent.id]


def test_specific_agents_restricts_candidates(inbox):
    team = inbox.team(strategy="specific_agents", config=False)
    inbox.agent(team)
    chosen = inbox.agent(team)
    inbox.service().teams.set_assignment_config(
        team.id, enabled=True, strategy="specific_agents", settings={"agentIds": [str(chosen.id)]}
    )
    sessions = [inbox.inbox_session(team) for _ in range(2)]

    assert inbox.service().assign_queue(team.id) == {"assigned": 2}
    assert _assignees(inbox, sessions) == [chosen.id, chosen.id]


def test_manual_and_disabled_configs_assign_nothing(inbox):
    manual = inbox.team(strategy="manual")
    disabled = inbox.team(config=False)
    inbox.session.add(
        AssignmentConfig(tenant_id=inbox.tenant_id, team_id=disabled.id, enabled=False)
    )
    unconfigured = inbox.team(config=False)
    for team in (manual, disabled, unconfigured):
        inbox.agent(team)
        inbox.inbox_session(team)

    assert inbox.service().assign_queue() == {"assigned": 0}


def test_tenant_config_falls_back_to_team_strategy(inbox):
    team = inbox.team(config=False)
    agent = inbox.agent(team)
    waiting = inbox.inbox_session(team)
    inbox.service().teams.set_assignment_config(None, enabled=True, strategy="manual")

    assert inbox.service().assign_queue(team.id) == {"assigned": 1}
    assert inbox.reload(waiting).assigned_agent_id == agent.id


def test_default_team_adopts_unteamed_sessions(inbox):
    team = inbox.team(is_default=True)
    agent = inbox.agent(team)
    orphan = inbox.inbox_session(None)

    assert inbox.service().assign_queue() == {"assigned": 1}

    reloaded = inbox.reload(orphan)
    assert reloaded.assigned_agent_id == agent.id
    assert reloaded.assigned_team_id == team.id


def test_batch_limit_caps_a_pass(inbox):
    team = inbox.team()
    inbox.agent(team, max_chats=10)
    for _ in range(4):
        inbox.inbox_session(team)

    service = inbox.service(assign_batch_limit=3)
    assert service.assign_queue(team.id) == {"assigned": 3}
    assert service.assign_queue(team.id) == {"assigned": 1}


def test_assign_queue_unknown_team(inbox):
    with pytest.raises(TeamNotFoundError):
        inbox.service().assign_queue(uuid.uuid4())


def test_assignment_is_audited(inbox):
    team = inbox.team()
    agent = inbox.agent(team)
    waiting = inbox.inbox_session(team)

    inbox.service().assign_queue(team.id)

    event = inbox.audit.events[-1]
    assert event.action == "session.assigned"
    assert event.resource_id == waiting.id
    assert event.details["agent_id"] == str(agent.id)


# ----------------------------------------------------------------------
# Conditional claims


def test_concurrent_claims_only_one_wins(inbox):
    team = inbox.team()
    a1 = inbox.agent(team)
    a2 = inbox.agent(team)
    waiting = inbox.inbox_session(team)
    inbox.session.commit()

    first, second = inbox.factory(), inbox.factory()
    try:
        repo1 = SqlAlchemyInboxRepository(first, tenant_id=inbox.tenant_id)
        repo2 = SqlAlchemyInboxRepository(second, tenant_id=inbox.tenant_id)
        assert repo1.claim_session(waiting.id, a1.id, team.id, 3, NOW) is True
        first.commit()
        assert repo2.claim_session(waiting.id, a2.id, team.id, 3, NOW) is False
        second.commit()
    finally:
        first.close()
        second.close()

    assert inbox.reload(waiting).assigned_agent_id == a1.id


def test_capacity_guard_rejects_claim_over_limit(inbox):
    team = inbox.team()
    agent = inbox.agent(team, max_chats=1)
    s1 = inbox.inbox_session(team)
    s2 = inbox.inbox_session(team)
    repo = inbox.repository

    assert repo.claim_session(s1.id, agent.id, team.id, 1, NOW)
    assert not repo.claim_session(s2.id, agent.id, team.id, 1, NOW)
    assert repo.active_session_counts([agent.id]) == {agent.id: 1}


def test_manual_claim(inbox):
    team = inbox.team(strategy="manual")
    agent = inbox.agent(team)
    waiting = inbox.inbox_session(team)

    result = inbox.service().claim_session(waiting.id, agent.id)

    assert result.applied is True
    assert result.agent_id == agent.id
    assert inbox.reload(waiting).status == "assigned"
    assert inbox.audit.actions()[-1] == "session.claimed"


def test_manual_claim_of_taken_session_reports_current_owner(inbox):
    team = inbox.team()
    owner = inbox.agent(team)
    other = inbox.agent(team)
    taken = inbox.inbox_session(team, agent=owner)
    service = inbox.service()

    same = service.claim_session(taken.id, owner.id)
    lost = service.claim_session(taken.id, other.id)

    assert (same.applied, same.reason) == (True, "already_assigned")
    assert (lost.applied, lost.agent_id, lost.reason) == (False, owner.id, "already_assigned")


def test_manual_claim_errors(inbox):
    team = inbox.team()
    offline = inbox.agent(team, status="offline")
    online = inbox.agent(team)
    waiting = inbox.inbox_session(team)
    done = inbox.inbox_session(team, agent=online, status="resolved")
    service = inbox.service()

    with pytest.raises(SessionNotFoundError):
        service.claim_session(uuid.uuid4(), online.id)
    with pytest.raises(InvalidTransitionError):
        service.claim_session(done.id, online.id)
    with pytest.raises(InvalidTransitionError):
        service.claim_session(waiting.id, offline.id)


def test_rotate_orders_after_cursor():
    ids = sorted((uuid.uuid4() for _ in range(3)), key=str)

    assert rotate(ids, None, sorted_by_id=True) == ids
    assert rotate(ids, ids[0], sorted_by_id=True) == [ids[1], ids[2], ids[0]]
    assert rotate(ids[1:], ids[0], sorted_by_id=True) == [ids[1], ids[2]]
    assert rotate(ids[:2], ids[2], sorted_by_id=False) == ids[:2]


# ----------------------------------------------------------------------
# Allow-list rotation


def _allow_list(inbox, team, agents):
    inbox.service().teams.set_assignment_config(
        team.id,
        enabled=True,
        strategy="specific_agents",
        settings={"agentIds": [str(a.id) for a in agents]},
    )


def test_allow_list_rotation_survives_a_full_agent(inbox):
    team = inbox.team(strategy="specific_agents", config=False)
    a = inbox.agent(team, max_chats=5)
    b = inbox.agent(team, max_chats=1)
    c = inbox.agent(team, max_chats=5)
    _allow_list(inbox, team, [a, b, c])
    sessions = [inbox.inbox_session(team) for _ in range(3)]

    assert inbox.service().assign_queue(team.id) == {"assigned": 3}
    assert _assignees(inbox, sessions) == [a.id, b.id, c.id]


def test_allow_list_resumes_after_an_unavailable_cursor_agent(inbox):
    team = inbox.team(strategy="specific_agents", config=False)
    a = inbox.agent(team, max_chats=5)
    b = inbox.agent(team, max_chats=5, status="offline")
    c = inbox.agent(team, max_chats=5)
    _allow_list(inbox, team, [a, b, c])
    team.rotation_cursor = b.id
    inbox.session.flush()
    waiting = inbox.inbox_session(team)

    inbox.service().assign_queue(team.id)

    assert inbox.reload(waiting).assigned_agent_id == c.id


# ----------------------------------------------------------------------
# Load-based strategies


def test_least_active_evens_out_current_load(inbox):
    team = inbox.team(strategy="least_active")
    busy = inbox.agent(team, max_chats=5)
    idle = inbox.agent(team, max_chats=5)
    light = inbox.agent(team, max_chats=5)
    for _ in range(2):
        inbox.inbox_session(team, agent=busy)
    inbox.inbox_session(team, agent=light)
    sessions = [inbox.inbox_session(team) for _ in range(3)]

    assert inbox.service().assign_queue(team.id) == {"assigned": 3}

    assert _assignees(inbox, sessions)[0] == idle.id
    assert Counter(_assignees(inbox, sessions)) == {idle.id: 2, light.id: 1}
    assert inbox.repository.active_session_counts([busy.id, idle.id, light.id]) == {
        busy.id: 2,
        idle.id: 2,
        light.id: 2,
    }


@pytest.mark.parametrize("window, expected", [("day", "yesterday"), ("all_time", "light")])
def test_least_assigned_counts_inside_the_time_window(inbox, window, expected):
    team = inbox.team(strategy="least_assigned", config=False)
    agents = {
        "today": inbox.agent(team, max_chats=5),
        "yesterday": inbox.agent(team, max_chats=5),
        "light": inbox.agent(team, max_chats=5),
    }
    for _ in range(3):
        inbox.inbox_session(
            team, agent=agents["today"], status="resolved", assigned_at=NOW - dt.timedelta(hours=1)
        )
        inbox.inbox_session(
            team,
            created_at=NOW - dt.timedelta(hours=30),
            agent=agents["yesterday"],
            status="resolved",
        )
    inbox.inbox_session(
        team, agent=agents["light"], status="resolved", assigned_at=NOW - dt.timedelta(hours=2)
    )
    inbox.service().teams.set_assignment_config(
        team.id, enabled=True, strategy="least_assigned", settings={"timeWindow": window}
    )
    waiting = inbox.inbox_session(team)

    inbox.service().engine.assign_queue(team.id, now=NOW)

    assert inbox.reload(waiting).assigned_agent_id == agents[expected].id


@pytest.mark.parametrize(
    "priority, expected",
    [(None, "resolved_twice"), (["least_assigned", "least_active"], "one_open")],
)
def test_hybrid_compares_metrics_in_priority_order(inbox, priority, expected):
    team = inbox.team(strategy="hybrid", config=False)
    agents = {
        "resolved_twice": inbox.agent(team, max_chats=5),
        "one_open": inbox.agent(team, max_chats=5),
        "resolved_thrice": inbox.agent(team, max_chats=5),
    }
    for _ in range(2):
        inbox.inbox_session(team, agent=agents["resolved_twice"], status="resolved")
    for _ in range(3):
        inbox.inbox_session(team, agent=agents["resolved_thrice"], status="resolved")
    inbox.inbox_session(team, agent=agents["one_open"])
    settings = {} if priority is None else {"priority": priority}
    inbox.service().teams.set_assignment_config(
        team.id, enabled=True, strategy="hybrid", settings=settings
    )
    waiting = inbox.inbox_session(team)

    inbox.service().assign_queue(team.id)

    assert inbox.reload(waiting).assigned_agent_id == agents[expected].id


def test_load_ties_rotate_between_passes(inbox):
    team = inbox.team(strategy="least_active")
    agents = sorted((inbox.agent(team, max_chats=5) for _ in range(2)), key=lambda a: str(a.id))
    first = inbox.inbox_session(team)
    inbox.service().assign_queue(team.id)
    inbox.service().resolve_session(first.id, agents[0].id, category="other")
    second = inbox.inbox_session(team)
    inbox.service().assign_queue(team.id)

    assert _assignees(inbox, [first, second]) == [agents[0].id, agents[1].id]


# ----------------------------------------------------------------------
# No-agent fallback


def _waterfall(inbox, **waterfall):
    inbox.service().teams.set_assignment_config(
        None, enabled=True, strategy="round_robin", settings={"waterfall": waterfall}
    )


def test_no_agent_reply_is_sent_once_per_session(inbox):
    team = inbox.team()
    inbox.agent(team, status="offline")
    sessions = [inbox.inbox_session(team) for _ in range(2)]
    _waterfall(inbox, noAgentAction="reply", noAgentMessage="Hang tight, we are on it.")
    dispatcher = FakeDispatcher()
    service = inbox.service(dispatcher=dispatcher)

    assert service.assign_queue(team.id) == {"assigned": 0}
    assert service.assign_queue(team.id) == {"assigned": 0}

    assert dispatcher.texts == [(s.contact_id, "Hang tight, we are on it.") for s in sessions]
    assert all(inbox.reload(s).context.get("noAgentNotifiedAt") for s in sessions)
    assert inbox.audit.actions().count("session.auto_replied") == 2


def test_no_agent_reply_uses_default_text_once_agents_fill_up(inbox):
    team = inbox.team()
    agent = inbox.agent(team, max_chats=1)
    placed = inbox.inbox_session(team)
    overflow = inbox.inbox_session(team)
    _waterfall(inbox, noAgentAction="reply")
    dispatcher = FakeDispatcher()

    assert inbox.service(dispatcher=dispatcher).assign_queue(team.id) == {"assigned": 1}

    assert inbox.reload(placed).assigned_agent_id == agent.id
    assert dispatcher.texts == [(overflow.contact_id, DEFAULT_NO_AGENT_MESSAGE)]


def test_no_agent_action_queue_stays_silent(inbox):
    team = inbox.team()
    inbox.inbox_session(team)
    _waterfall(inbox, noAgentAction="queue", noAgentMessage="unused")
    dispatcher = FakeDispatcher()

    inbox.service(dispatcher=dispatcher).assign_queue(team.id)

    assert dispatcher.texts == []


def test_no_agent_reply_failure_is_logged_and_retried_later(inbox, caplog):
    team = inbox.team()
    waiting = inbox.inbox_session(team, contact_id="+15550009999")
    _waterfall(inbox, noAgentAction="reply")
    failing = FakeDispatcher(failing={"+15550009999"})

    with caplog.at_level(logging.WARNING, logger="agent_inbox.routing.engine"):
        assert inbox.service(dispatcher=failing).assign_queue(team.id) == {"assigned": 0}

    assert "no_agent reply" in caplog.text
    assert "noAgentNotifiedAt" not in inbox.reload(waiting).context
    healthy = FakeDispatcher()
    inbox.service(dispatcher=healthy).assign_queue(team.id)
    assert healthy.texts == [("+15550009999", DEFAULT_NO_AGENT_MESSAGE)]


# ----------------------------------------------------------------------
# Team schedules

WEEKDAY_HOURS = {"start": "09:00", "end": "17:00"}


def _scheduled_team(inbox, days, **extra):
    team = inbox.team()
    team.schedule = {"enabled": True, "timezone": "UTC", "days": days, **extra}
    inbox.session.flush()
    return team


def test_open_team_assigns_as_usual(inbox):
    team = _scheduled_team(inbox, {"monday": [WEEKDAY_HOURS]})
    agent = inbox.agent(team)
    waiting = inbox.inbox_session(team)

    assert inbox.service().engine.assign_queue(team.id, now=NOW) == {"assigned": 1}
    assert inbox.reload(waiting).assigned_agent_id == agent.id


def test_closed_team_sends_out_of_office_and_throttles_it(inbox):
    team = _scheduled_team(
        inbox, {"monday": [WEEKDAY_HOURS]}, outOfOfficeMessage="Back on Monday at 9."
    )
    inbox.agent(team)
    waiting = inbox.inbox_session(team)
    dispatcher = FakeDispatcher()
    engine = inbox.service(dispatcher=dispatcher).engine
    evening = NOW + dt.timedelta(hours=6)

    assert engine.assign_queue(team.id, now=evening) == {"assigned": 0}
    engine.assign_queue(team.id, now=evening + dt.timedelta(hours=1))
    engine.assign_queue(team.id, now=evening + dt.timedelta(hours=25))

    assert dispatcher.texts == [(waiting.contact_id, "Back on Monday at 9.")] * 2
    reloaded = inbox.reload(waiting)
    assert reloaded.status == "unassigned"
    assert reloaded.context["oooLastSentAt"] == (evening + dt.timedelta(hours=25)).isoformat()


def test_closed_team_opening_soon_stays_quiet(inbox):
    team = _scheduled_team(inbox, {"monday": [WEEKDAY_HOURS], "tuesday": [WEEKDAY_HOURS]})
    inbox.agent(team)
    inbox.inbox_session(team)
    dispatcher = FakeDispatcher()

    result = inbox.service(dispatcher=dispatcher).engine.assign_queue(
        team.id, now=NOW + dt.timedelta(hours=6)
    )

    assert result == {"assigned": 0}
    assert dispatcher.texts == []


def test_unknown_timezone_closes_the_team(inbox):
    team = _scheduled_team(inbox, {"monday": [WEEKDAY_HOURS]})
    team.schedule = {**team.schedule, "timezone": "Mars/Olympus_Mons"}
    inbox.session.flush()
    inbox.agent(team)
    waiting = inbox.inbox_session(team)
    dispatcher = FakeDispatcher()

    assert inbox.service(dispatcher=dispatcher).engine.assign_queue(team.id, now=NOW) == {
        "assigned": 0
    }
    assert dispatcher.texts == [(waiting.contact_id, DEFAULT_OUT_OF_OFFICE_MESSAGE)]


# ----------------------------------------------------------------------
# Supervisor-directed assignment


def test_assign_to_agents_takes_sessions_in_queue_order(inbox):
    team = inbox.team(strategy="manual")
    roomy = inbox.agent(team, max_chats=3, status="offline")
    tight = inbox.agent(team, max_chats=1)
    s1, s2, s3, s4 = (inbox.inbox_session(None) for _ in range(4))

    result = inbox.service().assign_to_agents([(roomy.id, 2), (tight.id, 2)])

    assert result == {"assigned": 3}
    assert _assignees(inbox, [s1, s2, s3, s4]) == [roomy.id, roomy.id, tight.id, None]
    assert inbox.reload(s1).assigned_team_id == team.id
    assert inbox.audit.events[-1].details["strategy"] == "supervisor"


def test_assign_to_agents_validation(inbox):
    team = inbox.team()
    agent = inbox.agent(team)
    service = inbox.service()

    with pytest.raises(InboxValidationError):
        service.assign_to_agents([])
    with pytest.raises(InboxValidationError):
        service.assign_to_agents([(agent.id, 0)])
    with pytest.raises(AgentNotFoundError):
        service.assign_to_agents([(uuid.uuid4(), 1)])


def test_assign_to_teams_deals_sessions_round_robin(inbox):
    staffed = inbox.team("Alpha")
    agent = inbox.agent(staffed, max_chats=5)
    manual = inbox.team("Beta", strategy="manual")
    sessions = [inbox.inbox_session(None) for _ in range(4)]

    result = inbox.service().assign_to_teams([staffed.id, manual.id])

    assert result == {"assigned": 2}
    assert _assignees(inbox, sessions) == [agent.id, None, agent.id, None]
    teams = [inbox.reload(s).assigned_team_id for s in sessions]
    assert teams == [staffed.id, manual.id, staffed.id, manual.id]
    with pytest.raises(TeamNotFoundError):
        inbox.service().assign_to_teams([uuid.uuid4()])
