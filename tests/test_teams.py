import datetime as dt
import uuid

import pytest

from agent_inbox.routing.errors import (
    AgentNotFoundError,
    InboxValidationError,
    TeamNotFoundError,
)

from conftest import NOW


def test_create_team_and_move_default(inbox):
    teams = inbox.service().teams
    first = teams.create_team("Billing", is_default=True)
    second = teams.create_team(" Sales ", routing_strategy="manual", is_default=True)

    assert second.name == "Sales"
    assert second.routing_strategy == "manual"
    assert inbox.reload(first).is_default is False
    assert inbox.reload(second).is_default is True
    assert [t.name for t in teams.list_teams()] == ["Billing", "Sales"]
    assert inbox.audit.actions() == ["team.updated", "team.updated"]


def test_create_team_validation(inbox):
    teams = inbox.service().teams
    teams.create_team("Billing")

    with pytest.raises(InboxValidationError):
        teams.create_team("Billing")
    with pytest.raises(InboxValidationError):
        teams.create_team("   ")
    with pytest.raises(InboxValidationError):
        teams.create_team("Ops", routing_strategy="least_busy")


def test_membership_lifecycle(inbox):
    team = inbox.team()
    user = inbox.user("agent")
    teams = inbox.service().teams

    member = teams.add_member(team.id, user.id, role="leader")
    assert (member.role, member.is_active) == ("leader", True)

    teams.remove_member(team.id, user.id)
    assert inbox.reload(member).is_active is False
    with pytest.raises(AgentNotFoundError):
        teams.remove_member(team.id, user.id)

    again = teams.add_member(team.id, user.id)
    assert again.id == member.id
    assert (again.role, again.is_active) == ("member", True)


def test_add_member_errors(inbox):
    team = inbox.team()
    user = inbox.user("agent")
    teams = inbox.service().teams

    with pytest.raises(TeamNotFoundError):
        teams.add_member(uuid.uuid4(), user.id)
    with pytest.raises(AgentNotFoundError):
        teams.add_member(team.id, uuid.uuid4())
    with pytest.raises(InboxValidationError):
        teams.add_member(team.id, user.id, role="owner")


def test_removed_member_keeps_assigned_sessions(inbox):
    team = inbox.team()
    agent = inbox.agent(team)
    record = inbox.inbox_session(team, agent=agent)

    inbox.service().teams.remove_member(team.id, agent.id)

    assert inbox.reload(record).assigned_agent_id == agent.id


def test_assignment_config_upsert(inbox):
    team = inbox.team(config=False)
    teams = inbox.service().teams

    created = teams.set_assignment_config(team.id, enabled=True, strategy="round_robin")
    updated = teams.set_assignment_config(team.id, enabled=False, strategy="manual")
    tenant = teams.set_assignment_config(None, enabled=True, strategy="round_robin")

    assert updated.id == created.id
    assert (updated.enabled, updated.strategy) == (False, "manual")
    assert tenant.team_id is None
    assert tenant.id != created.id


def test_specific_agents_config_requires_agent_ids(inbox):
    team = inbox.team(config=False)
    agent = inbox.agent(team)
    teams = inbox.service().teams

    with pytest.raises(InboxValidationError):
        teams.set_assignment_config(team.id, enabled=True, strategy="specific_agents")
    with pytest.raises(InboxValidationError):
        teams.set_assignment_config(
            team.id, enabled=True, strategy="specific_agents", settings={"agentIds": ["nope"]}
        )
    config = teams.set_assignment_config(
        team.id, enabled=True, strategy="specific_agents", settings={"agentIds": [agent.id]}
    )
    assert config.settings == {"agentIds": [str(agent.id)]}
    with pytest.raises(TeamNotFoundError):
        teams.set_assignment_config(uuid.uuid4(), enabled=True, strategy="manual")


@pytest.mark.parametrize(
    "strategy, settings",
    [
        ("hybrid", {"priority": []}),
        ("hybrid", {"priority": ["round_robin"]}),
        ("least_assigned", {"timeWindow": "fortnight"}),
    ],
)
def test_load_strategy_settings_are_validated(inbox, strategy, settings):
    team = inbox.team(config=False)

    with pytest.raises(InboxValidationError):
        inbox.service().teams.set_assignment_config(
            team.id, enabled=True, strategy=strategy, settings=settings
        )


def test_waterfall_settings_live_on_the_tenant_config(inbox):
    team = inbox.team(config=False)
    teams = inbox.service().teams
    waterfall = {"waterfall": {"noAgentAction": "reply", "noAgentMessage": "Busy"}}

    with pytest.raises(InboxValidationError):
        teams.set_assignment_config(team.id, enabled=True, strategy="round_robin", settings=waterfall)
    with pytest.raises(InboxValidationError):
        teams.set_assignment_config(
            None,
            enabled=True,
            strategy="round_robin",
            settings={"waterfall": {"noAgentAction": "transfer"}},
        )
    config = teams.set_assignment_config(None, enabled=True, strategy="round_robin", settings=waterfall)
    assert config.team_id is None
    assert config.settings == waterfall


def test_schedule_is_normalised_and_cleared(inbox):
    team = inbox.team()
    teams = inbox.service().teams

    schedule = teams.set_schedule(
        team.id,
        {
            "timezone": "Africa/Nairobi",
            "days": {"Friday": [{"start": "13:00", "end": "17:00"}, {"start": "08:00", "end": "12:00"}]},
        },
    )

    assert schedule is not None
    assert inbox.reload(team).schedule == {
        "enabled": True,
        "timezone": "Africa/Nairobi",
        "days": {
            "friday": [{"start": "08:00", "end": "12:00"}, {"start": "13:00", "end": "17:00"}]
        },
        "outOfOfficeMessage": None,
    }
    assert teams.set_schedule(team.id, None) is None
    assert inbox.reload(team).schedule is None
    assert inbox.audit.events[-1].details == {"change": "schedule", "enabled": False}


@pytest.mark.parametrize(
    "raw",
    [
        {"timezone": "Nowhere/City", "days": {}},
        {"timezone": "UTC", "days": {"funday": []}},
        {"timezone": "UTC", "days": {"monday": [{"start": "9am", "end": "17:00"}]}},
        {"timezone": "UTC", "days": {"monday": [{"start": "17:00", "end": "09:00"}]}},
    ],
)
def test_schedule_rejects_bad_input(inbox, raw):
    team = inbox.team()

    with pytest.raises(InboxValidationError):
        inbox.service().teams.set_schedule(team.id, raw)


def test_wrap_up_form_is_normalised(inbox):
    team = inbox.team()
    teams = inbox.service().teams

    form = teams.set_wrap_up_form(
        team.id,
        {
            "mandatory": True,
            "fields": [
                {"id": "reason", "type": "select", "options": ["a", {"value": "b", "label": "B"}]},
                {"id": "notes", "label": "Notes", "type": "textarea"},
            ],
        },
    )

    assert form.enabled and form.mandatory
    stored = inbox.reload(team).wrap_up_form
    assert stored["fields"][0] == {
        "id": "reason",
        "label": "reason",
        "type": "select",
        "required": False,
        "options": [{"value": "a", "label": "a"}, {"value": "b", "label": "B"}],
    }

    assert teams.set_wrap_up_form(team.id, None) is None
    assert inbox.reload(team).wrap_up_form is None


@pytest.mark.parametrize(
    "raw",
    [
        {"fields": [{"type": "text"}]},
        {"fields": [{"id": "x", "type": "checkbox"}]},
        {"fields": [{"id": "x", "type": "select", "options": []}]},
        {"fields": [{"id": "x", "type": "text"}, {"id": "x", "type": "textarea"}]},
    ],
)
def test_wrap_up_form_rejects_bad_fields(inbox, raw):
    team = inbox.team()

    with pytest.raises(InboxValidationError):
        inbox.service().teams.set_wrap_up_form(team.id, raw)


def test_add_shift(inbox):
    team = inbox.team()
    user = inbox.user("agent")
    teams = inbox.service().teams
    start = NOW.replace(tzinfo=None)

    shift = teams.add_shift(user.id, start, start + dt.timedelta(hours=8), team_id=team.id)
    assert shift.start_time.tzinfo is not None

    with pytest.raises(InboxValidationError):
        teams.add_shift(user.id, NOW, NOW)
    with pytest.raises(AgentNotFoundError):
        teams.add_shift(uuid.uuid4(), NOW, NOW + dt.timedelta(hours=1))
