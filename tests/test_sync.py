# SPDX-FileCopyrightText: 2025 DB Systel GmbH
#
# SPDX-License-Identifier: Apache-2.0

"""Tests for the direct permission sync and its preview"""

import pytest

from gh_role_sync._access import Actor, SYSTEM_CLI_ACTOR
from gh_role_sync._errors import AuthorizationError, NotFoundError, ValidationError
from gh_role_sync._models import GithubPermissionCache, GithubTeamMembersCache
from gh_role_sync._ranking import GithubPermission, ProjectRole, SyncMode, WorkspaceRole
from gh_role_sync._stats import MAX_UNMATCHED_USERS_SYNC
from gh_role_sync._sync import get_github_permission_preview, sync_github_permissions

from .conftest import WorkspaceBuilder, not_found, project_roles, rate_limited, server_error


@pytest.fixture
def platform(acme, github):
    """acme/platform: octo-one reads directly, platform-team (octo-one and
    octo-two) may write"""
    project_id = acme.project("platform")
    acme.repo("acme/platform", 100, project_id)
    for user_id, login, github_id in (("u1", "octo-one", 1), ("u2", "octo-two", 2)):
        acme.member(user_id)
        acme.link(user_id, login, github_id)

    github.collaborators["acme/platform"] = [{"id": 1, "login": "octo-one", "permission": "read"}]
    github.repo_teams["acme/platform"] = [
        {"team_id": 7, "team_slug": "platform-team", "org_login": "acme", "permission": "write"}
    ]
    github.team_members["acme/platform-team"] = [
        {"id": 1, "login": "octo-one"},
        {"id": 2, "login": "octo-two"},
    ]
    return project_id


def _only_reads(github, login="octo-one", github_id=1):
    github.collaborators["acme/platform"] = [{"id": github_id, "login": login, "permission": "read"}]
    github.repo_teams["acme/platform"] = []


def test_adds_members_with_highest_permission(deps, session, recorder, platform):
    result = sync_github_permissions(deps, SYSTEM_CLI_ACTOR, "acme", correlation_id="c-1")

    assert result.added == 2
    assert result.updated == 0 and result.removed == 0
    assert result.repos_processed == 1
    assert result.users_matched == 2
    assert project_roles(session, platform) == {"u1": ProjectRole.WRITER, "u2": ProjectRole.WRITER}

    added = recorder.by_action("access.project_member.added")
    assert len(added) == 2
    target = added[0].target
    assert target["source"] == "github"
    assert target["old_role"] is None and target["new_role"] == "WRITER"
    assert target["workspace_key"] == "acme" and target["project_key"] == "platform"
    assert target["correlation_id"] == "c-1"
    assert target["evidence"] == {"mode": "add_only", "dry_run": False}
    assert added[0].project_id == platform


def test_downgrade_in_add_and_remove(deps, session, github, acme, platform):
    acme.project_member(platform, "u1", ProjectRole.WRITER)
    _only_reads(github)

    result = sync_github_permissions(deps, SYSTEM_CLI_ACTOR, "acme", mode_override="add_and_remove")

    assert result.updated == 1
    assert result.mode == SyncMode.ADD_AND_REMOVE
    assert project_roles(session, platform)["u1"] == ProjectRole.READER


def test_workspace_owner_is_protected(deps, session, github, acme, platform, recorder):
    acme.member("owner", WorkspaceRole.OWNER)
    acme.link("owner", "octo-boss", 9)
    acme.project_member(platform, "owner", ProjectRole.WRITER)
    _only_reads(github, "octo-boss", 9)

    result = sync_github_permissions(deps, SYSTEM_CLI_ACTOR, "acme", mode_override="add_and_remove")

    assert result.updated == 0
    assert result.protected_skipped == 1
    assert project_roles(session, platform)["owner"] == ProjectRole.WRITER
    assert not recorder.by_action("access.project_member.downgraded")


def test_project_owner_is_not_removed(deps, session, github, acme, platform):
    acme.project_member(platform, "u2", ProjectRole.OWNER)
    _only_reads(github)

    result = sync_github_permissions(deps, SYSTEM_CLI_ACTOR, "acme", mode_override="add_and_remove")

    assert result.removed == 0
    assert result.protected_skipped == 1
    assert project_roles(session, platform)["u2"] == ProjectRole.OWNER


def test_removes_linked_users_without_access(deps, session, github, acme, platform, recorder):
    acme.project_member(platform, "u2", ProjectRole.READER)
    acme.member("manual")
    acme.project_member(platform, "manual", ProjectRole.WRITER)
    _only_reads(github)

    result = sync_github_permissions(deps, SYSTEM_CLI_ACTOR, "acme", mode_override="add_and_remove")

    assert result.removed == 1
    assert project_roles(session, platform) == {"u1": ProjectRole.READER, "manual": ProjectRole.WRITER}
    assert recorder.by_action("access.project_member.removed")[0].target["target_user_id"] == "u2"


def test_add_only_keeps_higher_roles(deps, session, github, acme, platform):
    acme.project_member(platform, "u1", ProjectRole.MAINTAINER)
    acme.project_member(platform, "u2", ProjectRole.READER)
    _only_reads(github)

    result = sync_github_permissions(deps, SYSTEM_CLI_ACTOR, "acme")

    assert (result.added, result.updated, result.removed) == (0, 0, 0)
    assert project_roles(session, platform) == {"u1": ProjectRole.MAINTAINER, "u2": ProjectRole.READER}


def test_second_run_changes_nothing(deps, session, platform, recorder):
    sync_github_permissions(deps, SYSTEM_CLI_ACTOR, "acme", mode_override="add_and_remove")
    recorder.events.clear()

    result = sync_github_permissions(deps, SYSTEM_CLI_ACTOR, "acme", mode_override="add_and_remove")

    assert (result.added, result.updated, result.removed) == (0, 0, 0)
    assert recorder.actions() == ["github.permissions.computed", "github.permissions.applied"]


def test_workspace_setting_selects_mode_and_mapping(deps, session, github, acme, platform, workspace_config):
    workspace_config["acme"] = {
        "github_permission_sync_mode": "add_and_remove",
        "github_role_mapping": {"write": "maintainer", "read": "reader"},
    }
    acme.project_member(platform, "u1", ProjectRole.OWNER)

    result = sync_github_permissions(deps, SYSTEM_CLI_ACTOR, "acme")

    assert result.mode == SyncMode.ADD_AND_REMOVE
    assert project_roles(session, platform) == {"u1": ProjectRole.OWNER, "u2": ProjectRole.MAINTAINER}


def test_matches_by_login_when_github_id_is_unknown(deps, session, github, acme, platform):
    acme.member("u3")
    acme.link("u3", "Octo-Three")
    github.collaborators["acme/platform"].append({"id": 3, "login": "OCTO-THREE", "permission": "maintain"})

    sync_github_permissions(deps, SYSTEM_CLI_ACTOR, "acme")

    assert project_roles(session, platform)["u3"] == ProjectRole.MAINTAINER


def test_unmatched_users_are_reported(deps, github, platform):
    github.collaborators["acme/platform"].append({"id": 42, "login": "stranger", "permission": "admin"})

    result = sync_github_permissions(deps, SYSTEM_CLI_ACTOR, "acme")

    assert result.skipped_unmatched == 1
    assert result.unmatched_users == [
        {
            "repo_full_name": "acme/platform",
            "github_login": "stranger",
            "github_user_id": 42,
            "permission": "admin",
        }
    ]


def test_unmatched_users_list_is_capped(deps, github, platform):
    github.collaborators["acme/platform"] = [
        {"id": 1000 + i, "login": f"bot-{i}", "permission": "read"}
        for i in range(MAX_UNMATCHED_USERS_SYNC + 5)
    ]

    result = sync_github_permissions(deps, SYSTEM_CLI_ACTOR, "acme", dry_run=True)

    assert result.skipped_unmatched == MAX_UNMATCHED_USERS_SYNC + 5
    assert len(result.unmatched_users) == MAX_UNMATCHED_USERS_SYNC


def test_failing_repo_is_isolated(deps, session, github, acme, platform):
    web = acme.project("web")
    acme.repo("acme/web", 200, web)
    acme.project_member(web, "u2", ProjectRole.READER)
    github.fail("collaborators", "acme/web", not_found())

    result = sync_github_permissions(deps, SYSTEM_CLI_ACTOR, "acme", mode_override="add_and_remove")

    assert result.repos_processed == 1
    assert result.repo_errors == [
        {"repo_full_name": "acme/web", "error": "GitHub API error 404: Not Found"}
    ]
    assert result.added == 2
    # Memberships of the failed project stay untouched
    assert project_roles(session, web) == {"u2": ProjectRole.READER}


def test_project_with_one_failing_repo_is_left_unchanged(deps, session, github, acme, platform):
    acme.repo("acme/platform-docs", 101, platform)
    acme.project_member(platform, "u2", ProjectRole.MAINTAINER)
    github.collaborators["acme/platform"] = [{"id": 1, "login": "octo-one", "permission": "write"}]
    github.repo_teams["acme/platform"] = []
    # acme/platform-docs is the only repository giving octo-two access
    github.fail("collaborators", "acme/platform-docs", server_error())

    result = sync_github_permissions(deps, SYSTEM_CLI_ACTOR, "acme", mode_override="add_and_remove")

    assert result.repos_processed == 1
    assert [error["repo_full_name"] for error in result.repo_errors] == ["acme/platform-docs"]
    assert (result.added, result.updated, result.removed) == (0, 0, 0)
    assert project_roles(session, platform) == {"u2": ProjectRole.MAINTAINER}

    # Once the repository answers again, the project converges
    github.collaborators["acme/platform-docs"] = [{"id": 2, "login": "octo-two", "permission": "admin"}]
    result = sync_github_permissions(deps, SYSTEM_CLI_ACTOR, "acme", mode_override="add_and_remove")

    assert result.repo_errors == []
    assert project_roles(session, platform) == {"u1": ProjectRole.WRITER, "u2": ProjectRole.MAINTAINER}


def test_two_repos_of_one_project_merge(deps, session, github, acme, platform):
    acme.repo("acme/platform-docs", 101, platform)
    github.collaborators["acme/platform-docs"] = [{"id": 2, "login": "octo-two", "permission": "admin"}]

    sync_github_permissions(deps, SYSTEM_CLI_ACTOR, "acme")

    assert project_roles(session, platform) == {"u1": ProjectRole.WRITER, "u2": ProjectRole.MAINTAINER}


def test_filters(deps, session, github, acme, platform):
    web = acme.project("web")
    acme.repo("acme/web", 200, web)
    github.collaborators["acme/web"] = [{"id": 1, "login": "octo-one", "permission": "admin"}]

    result = sync_github_permissions(deps, SYSTEM_CLI_ACTOR, "acme", repos=["ACME/Web"])

    assert result.repos_processed == 1
    assert project_roles(session, web) == {"u1": ProjectRole.MAINTAINER}
    assert project_roles(session, platform) == {}

    result = sync_github_permissions(deps, SYSTEM_CLI_ACTOR, "acme", project_key_prefix="plat")
    assert result.repos_processed == 1
    assert len(project_roles(session, platform)) == 2


def test_dry_run_writes_no_roles(deps, session, platform, recorder):
    result = sync_github_permissions(deps, SYSTEM_CLI_ACTOR, "acme", dry_run=True)

    assert result.dry_run
    assert result.added == 2
    assert project_roles(session, platform) == {}
    assert session.query(GithubPermissionCache).count() == 0
    # Team data fetched during a dry-run is still cached
    assert session.query(GithubTeamMembersCache).count() == 1
    assert recorder.actions() == ["github.permissions.computed"]
    assert recorder.events[0].target["dry_run"] is True
    assert recorder.events[0].target["added"] == 2


def test_dry_run_counts_match_a_live_run(deps, session, acme, platform):
    acme.project_member(platform, "u1", ProjectRole.MAINTAINER)
    acme.member("u3")
    acme.link("u3", "octo-three", 3)
    acme.project_member(platform, "u3", ProjectRole.READER)
    acme.member("owner", WorkspaceRole.OWNER)
    acme.link("owner", "octo-boss", 9)
    acme.project_member(platform, "owner", ProjectRole.WRITER)
    before = project_roles(session, platform)

    dry = sync_github_permissions(
        deps, SYSTEM_CLI_ACTOR, "acme", dry_run=True, mode_override="add_and_remove"
    )
    assert project_roles(session, platform) == before

    live = sync_github_permissions(deps, SYSTEM_CLI_ACTOR, "acme", mode_override="add_and_remove")

    def counts(result):
        return (result.added, result.updated, result.removed, result.protected_skipped)

    assert counts(dry) == counts(live) == (1, 1, 1, 1)
    assert project_roles(session, platform) == {
        "u1": ProjectRole.WRITER,
        "u2": ProjectRole.WRITER,
        "owner": ProjectRole.WRITER,
    }


def test_summary_audits(deps, session, platform, recorder):
    sync_github_permissions(
        deps, SYSTEM_CLI_ACTOR, "acme", repos=["acme/platform"], correlation_id="c-9"
    )

    computed = recorder.by_action("github.permissions.computed")[0]
    assert computed.correlation_id == "c-9"
    assert computed.target["repos_filter"] == ["acme/platform"]
    assert computed.target["github_cache_ttl_seconds"] == 900
    assert computed.target["repo_errors"] == []

    applied = recorder.by_action("github.permissions.applied")[0]
    assert applied.target["added"] == 2
    assert applied.target["mode"] == "add_only"
    assert "unmatched_users" not in applied.target

    permissions = {row.github_user_id: row.permission for row in session.query(GithubPermissionCache)}
    assert permissions == {1: GithubPermission.WRITE, 2: GithubPermission.WRITE}


def test_rate_limit_warnings_are_deduplicated(deps, github, platform):
    github.throttle("collaborators", "acme/platform", times=2)

    result = sync_github_permissions(deps, SYSTEM_CLI_ACTOR, "acme")

    assert result.added == 2
    assert result.rate_limit_warnings == ["list collaborators of acme/platform: HTTP 403 rate limit hit"]


def test_rate_limited_repo_is_reported_as_error(deps, session, github, platform):
    github.fail("collaborators", "acme/platform", rate_limited())

    result = sync_github_permissions(deps, SYSTEM_CLI_ACTOR, "acme")

    assert result.repos_processed == 0
    assert result.repo_errors[0]["repo_full_name"] == "acme/platform"
    assert len(result.rate_limit_warnings) == 1
    assert project_roles(session, platform) == {}


def test_team_cache_is_reused_between_runs(deps, github, platform):
    sync_github_permissions(deps, SYSTEM_CLI_ACTOR, "acme", dry_run=True)
    sync_github_permissions(deps, SYSTEM_CLI_ACTOR, "acme", dry_run=True)

    assert github.calls[("collaborators", "acme/platform")] == 2
    assert github.calls[("repo_teams", "acme/platform")] == 1
    assert github.calls[("team_members", "acme/platform-team")] == 1


def test_requires_workspace_admin(deps, acme, platform):
    with pytest.raises(AuthorizationError):
        sync_github_permissions(deps, Actor("u1"), "acme")

    acme.member("boss", WorkspaceRole.ADMIN)
    result = sync_github_permissions(deps, Actor("boss"), "acme", dry_run=True)
    assert result.added == 2


def test_unknown_workspace(deps):
    with pytest.raises(NotFoundError):
        sync_github_permissions(deps, SYSTEM_CLI_ACTOR, "nope")


def test_missing_installation(deps, session, github):
    WorkspaceBuilder(session, key="acme", installation_id=None)

    with pytest.raises(NotFoundError, match="installation"):
        sync_github_permissions(deps, SYSTEM_CLI_ACTOR, "acme")
    assert not github.calls


def test_missing_app_credentials(deps, platform):
    deps.app_private_key = ""

    with pytest.raises(ValidationError):
        sync_github_permissions(deps, SYSTEM_CLI_ACTOR, "acme")


def test_preview(deps, session, github, platform):
    github.collaborators["acme/platform"].append({"id": 42, "login": "stranger", "permission": "admin"})

    preview = get_github_permission_preview(deps, SYSTEM_CLI_ACTOR, "acme", "ACME/platform")

    assert preview.repo_full_name == "acme/platform"
    assert preview.project_key == "platform"
    assert [(row["github_login"], row["mapped_project_role"]) for row in preview.computed_permissions] == [
        ("stranger", None),
        ("octo-one", ProjectRole.WRITER),
        ("octo-two", ProjectRole.WRITER),
    ]
    assert preview.unmatched_users == [
        {"github_user_id": 42, "github_login": "stranger", "permission": GithubPermission.ADMIN}
    ]
    assert project_roles(session, platform) == {}


def test_preview_of_unlinked_repo(deps, platform):
    with pytest.raises(NotFoundError, match="Linked GitHub repo not found"):
        get_github_permission_preview(deps, SYSTEM_CLI_ACTOR, "acme", "acme/elsewhere")
