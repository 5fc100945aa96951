# SPDX-FileCopyrightText: 2025 DB Systel GmbH
#
# SPDX-License-Identifier: Apache-2.0

"""Tests for applying GitHub team mappings"""

import pytest

from gh_role_sync._access import Actor
from gh_role_sync._errors import AuthorizationError
from gh_role_sync._models import GithubTeamMapping
from gh_role_sync._ranking import ProjectRole, SyncMode, WorkspaceRole
from gh_role_sync._stats import MAX_UNMATCHED_USERS_TEAM_MAPPING
from gh_role_sync._team_mapping import apply_github_team_mappings

from .conftest import INSTALLATION_ID, not_found, project_roles, server_error, workspace_roles

_team_ids = iter(range(1000, 100000))


def add_mapping(acme, slug, target_type, target_key, role, **kwargs):
    mapping = GithubTeamMapping(
        workspace_id=acme.id,
        github_team_id=kwargs.pop("team_id", next(_team_ids)),
        github_org_login=kwargs.pop("org", "acme"),
        github_team_slug=slug,
        target_type=target_type,
        target_key=target_key,
        role=role,
        **kwargs,
    )
    acme.session.add(mapping)
    acme.session.commit()
    return mapping


@pytest.fixture
def devs(acme, github):
    """Team acme/devs with the linked users octo-one (u1) and octo-two (u2)"""
    for user_id, login, github_id in (("u1", "octo-one", 1), ("u2", "octo-two", 2)):
        acme.link(user_id, login, github_id)
    github.team_members["acme/devs"] = [{"id": 1, "login": "octo-one"}, {"id": 2, "login": "Octo-Two"}]


def run(deps, acme, **kwargs):
    return apply_github_team_mappings(deps, acme.id, INSTALLATION_ID, "membership", **kwargs)


def test_workspace_mapping(deps, session, acme, devs, recorder):
    acme.member("u2", WorkspaceRole.MEMBER)
    add_mapping(acme, "devs", "workspace", "acme", "ADMIN")

    result = run(deps, acme, correlation_id="c-1")

    assert (result.added, result.updated, result.removed) == (1, 1, 0)
    assert workspace_roles(session, acme.id) == {"u1": WorkspaceRole.ADMIN, "u2": WorkspaceRole.ADMIN}
    assert sorted(recorder.actions()) == [
        "access.workspace_member.added",
        "access.workspace_member.upgraded",
        "github.team_mappings.applied",
    ]
    added = recorder.by_action("access.workspace_member.added")[0]
    assert added.actor_user_id == "system:github-webhook"
    assert added.correlation_id == "c-1"
    assert added.target["evidence"] == {
        "installation_id": str(INSTALLATION_ID),
        "event_type": "membership",
        "mapping_source": "github_team_mapping",
    }


def test_project_mapping(deps, session, acme, devs):
    platform = acme.project("platform")
    add_mapping(acme, "devs", "project", "platform", "WRITER")

    result = run(deps, acme)

    assert result.added == 2
    assert result.users_matched == 2
    assert result.mappings_processed == 1
    assert project_roles(session, platform) == {"u1": ProjectRole.WRITER, "u2": ProjectRole.WRITER}
    # No workspace mapping, so workspace roles are not touched
    assert workspace_roles(session, acme.id) == {}


def test_highest_role_wins_and_teams_are_fetched_once(deps, session, acme, devs, github):
    platform = acme.project("platform")
    github.team_members["acme/leads"] = [{"id": 1, "login": "octo-one"}]
    add_mapping(acme, "devs", "project", "platform", "READER", priority=10)
    add_mapping(acme, "leads", "project", "platform", "MAINTAINER", priority=20)
    add_mapping(acme, "DEVS", "workspace", "acme", "MEMBER", org="Acme", priority=30)

    result = run(deps, acme)

    assert project_roles(session, platform) == {"u1": ProjectRole.MAINTAINER, "u2": ProjectRole.READER}
    assert result.teams_fetched == 2
    assert github.calls[("team_members", "acme/devs")] == 1


def test_missing_target_project(deps, session, acme, devs):
    platform = acme.project("platform")
    add_mapping(acme, "devs", "project", "deleted-project", "WRITER")
    add_mapping(acme, "devs", "project", "platform", "READER")

    result = run(deps, acme)

    assert result.target_errors == [
        {
            "target_type": "project",
            "target_key": "deleted-project",
            "error": "Target project not found in workspace",
        }
    ]
    assert project_roles(session, platform) == {"u1": ProjectRole.READER, "u2": ProjectRole.READER}


def test_failing_team_is_isolated(deps, session, acme, devs, github):
    platform = acme.project("platform")
    add_mapping(acme, "gone", "project", "platform", "MAINTAINER")
    add_mapping(acme, "devs", "project", "platform", "READER")
    github.fail("team_members", "acme/gone", not_found())

    result = run(deps, acme)

    assert result.team_errors == [
        {"team_slug": "gone", "org_login": "acme", "error": "GitHub API error 404: Not Found"}
    ]
    assert result.added == 2


def test_add_and_remove_is_limited_to_mapped_projects(
    deps, session, acme, devs, github, workspace_config
):
    workspace_config["acme"] = {"github_webhook_sync_mode": "add_and_remove"}
    platform = acme.project("platform")
    other = acme.project("other")
    acme.link("u3", "octo-three", 3)
    acme.project_member(platform, "u3", ProjectRole.WRITER)
    acme.project_member(other, "u3", ProjectRole.WRITER)
    acme.project_member(platform, "manual", ProjectRole.READER)
    add_mapping(acme, "devs", "project", "platform", "READER")

    result = run(deps, acme)

    assert result.mode == SyncMode.ADD_AND_REMOVE
    assert result.removed == 1
    assert project_roles(session, platform) == {
        "u1": ProjectRole.READER,
        "u2": ProjectRole.READER,
        "manual": ProjectRole.READER,
    }
    assert project_roles(session, other) == {"u3": ProjectRole.WRITER}


def test_failing_team_lowers_and_removes_nothing_in_its_targets(
    deps, session, acme, devs, github, workspace_config
):
    workspace_config["acme"] = {"github_webhook_sync_mode": "add_and_remove"}
    platform = acme.project("platform")
    other = acme.project("other")
    acme.link("u3", "octo-three", 3)
    acme.member("u3", WorkspaceRole.MEMBER)
    acme.project_member(platform, "u1", ProjectRole.MAINTAINER)
    acme.project_member(platform, "u3", ProjectRole.MAINTAINER)
    acme.project_member(other, "u3", ProjectRole.WRITER)
    add_mapping(acme, "leads", "project", "platform", "MAINTAINER")
    add_mapping(acme, "leads", "workspace", "acme", "MEMBER")
    add_mapping(acme, "devs", "project", "platform", "READER")
    add_mapping(acme, "devs", "project", "other", "READER")
    github.fail("team_members", "acme/leads", server_error())

    result = run(deps, acme)

    assert [error["team_slug"] for error in result.team_errors] == ["leads"]
    assert (result.added, result.updated, result.removed) == (3, 0, 1)
    # Targets of the failed team only gain roles
    assert project_roles(session, platform) == {
        "u1": ProjectRole.MAINTAINER,
        "u2": ProjectRole.READER,
        "u3": ProjectRole.MAINTAINER,
    }
    assert workspace_roles(session, acme.id) == {"u3": WorkspaceRole.MEMBER}
    # Projects of teams that answered still converge
    assert project_roles(session, other) == {"u1": ProjectRole.READER, "u2": ProjectRole.READER}


def test_workspace_admins_are_not_lowered(deps, session, acme, devs, workspace_config):
    workspace_config["acme"] = {"github_webhook_sync_mode": "add_and_remove"}
    acme.member("u1", WorkspaceRole.OWNER)
    acme.link("u3", "octo-three", 3)
    acme.member("u3", WorkspaceRole.ADMIN)
    acme.link("u4", "octo-four", 4)
    acme.member("u4", WorkspaceRole.MEMBER)
    add_mapping(acme, "devs", "workspace", "acme", "MEMBER")

    result = run(deps, acme)

    assert workspace_roles(session, acme.id) == {
        "u1": WorkspaceRole.OWNER,
        "u2": WorkspaceRole.MEMBER,
        "u3": WorkspaceRole.ADMIN,
    }
    assert result.protected_skipped == 2
    assert result.removed == 1


def test_add_only_keeps_higher_roles(deps, session, acme, devs):
    platform = acme.project("platform")
    acme.project_member(platform, "u1", ProjectRole.OWNER)
    acme.project_member(platform, "u3", ProjectRole.WRITER)
    add_mapping(acme, "devs", "project", "platform", "READER")

    result = run(deps, acme)

    assert (result.added, result.updated, result.removed) == (1, 0, 0)
    assert project_roles(session, platform) == {
        "u1": ProjectRole.OWNER,
        "u2": ProjectRole.READER,
        "u3": ProjectRole.WRITER,
    }


def test_installation_and_enabled_filters(deps, session, acme, devs, github):
    platform = acme.project("platform")
    add_mapping(acme, "devs", "project", "platform", "WRITER", provider_installation_id=999)
    add_mapping(acme, "devs", "project", "platform", "MAINTAINER", enabled=False)

    result = run(deps, acme)

    assert result.mappings_processed == 0
    assert project_roles(session, platform) == {}
    assert not github.calls


def test_disabled_by_settings(deps, session, acme, devs, github, workspace_config, recorder):
    workspace_config["acme"] = {"github_team_mapping_enabled": False}
    acme.project("platform")
    add_mapping(acme, "devs", "project", "platform", "WRITER")

    result = run(deps, acme)

    assert result.added == 0
    assert not github.calls
    assert not recorder.events


def test_unmatched_members_are_capped(deps, acme, devs, github):
    acme.project("platform")
    github.team_members["acme/devs"] += [
        {"id": 100 + i, "login": f"bot-{i}"} for i in range(MAX_UNMATCHED_USERS_TEAM_MAPPING + 1)
    ]
    add_mapping(acme, "devs", "project", "platform", "READER")

    result = run(deps, acme)

    assert result.skipped_unmatched == MAX_UNMATCHED_USERS_TEAM_MAPPING + 1
    assert len(result.unmatched_users) == MAX_UNMATCHED_USERS_TEAM_MAPPING
    assert result.unmatched_users[0] == {"github_login": "bot-0", "github_user_id": 100, "team_slug": "devs"}


def test_summary_audit(deps, acme, devs, recorder):
    acme.project("platform")
    add_mapping(acme, "devs", "project", "platform", "READER")

    run(deps, acme, correlation_id="c-2")

    summary = recorder.by_action("github.team_mappings.applied")[0]
    assert summary.correlation_id == "c-2"
    assert summary.target["installation_id"] == str(INSTALLATION_ID)
    assert summary.target["event_type"] == "membership"
    assert summary.target["added"] == 2
    assert summary.target["mode"] == "add_only"


def test_human_actor_must_be_admin(deps, acme, devs):
    add_mapping(acme, "devs", "workspace", "acme", "MEMBER")
    acme.member("u1", WorkspaceRole.MEMBER)

    with pytest.raises(AuthorizationError):
        run(deps, acme, actor=Actor("u1"))
