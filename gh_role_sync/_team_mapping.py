# SPDX-FileCopyrightText: 2025 DB Systel GmbH
#
# SPDX-License-Identifier: Apache-2.0

"""Grant workspace and project roles to members of mapped GitHub teams"""

import logging

from ._access import SYSTEM_WEBHOOK_ACTOR, Actor, assert_workspace_admin
from ._apply import (
    AuditEvent,
    ChangeSet,
    apply_project_changes,
    apply_workspace_changes,
    build_access_audit_target,
    classify_project_changes,
    classify_workspace_changes,
    emit_audit,
    resolve_access_audit_action,
)
from ._gh_api import report_rate_limits
from ._helpers import error_message
from ._models import GithubTeamMapping
from ._ranking import (
    ProjectRole,
    SyncMode,
    WorkspaceRole,
    compare_role_rank,
    compare_workspace_role_rank,
    normalize_github_login,
)
from ._stats import TeamMappingResult
from ._store import RoleStore
from ._sync import ISOLATED_ERRORS, SyncDeps, UserMatcher, issue_installation_token

TARGET_WORKSPACE = "workspace"
TARGET_PROJECT = "project"


def team_key(mapping: GithubTeamMapping) -> str:
    """Case-insensitive identity of the team a mapping refers to"""
    return f"{mapping.github_org_login.lower()}/{mapping.github_team_slug.lower()}"


def mapping_workspace_role(role: str) -> WorkspaceRole | None:
    """The workspace role of a mapping, None if it's not one"""
    try:
        return WorkspaceRole(str(role).upper())
    except ValueError:
        return None


def mapping_project_role(role: str) -> ProjectRole | None:
    """The project role of a mapping, None if it's not one"""
    try:
        return ProjectRole(str(role).upper())
    except ValueError:
        return None


def _fetch_team_members(
    deps: SyncDeps, token: str, mappings: list[GithubTeamMapping], result: TeamMappingResult
) -> tuple[dict[str, list[dict]], set[str]]:
    """Fetch the members of every distinct team once. A failing team is
    recorded, contributes no members and is returned in the set of failed
    team keys"""
    members_by_team: dict[str, list[dict]] = {}
    failed_teams: set[str] = set()
    for mapping in mappings:
        key = team_key(mapping)
        if key in members_by_team:
            continue
        try:
            members_by_team[key] = report_rate_limits(
                deps.client,
                lambda m=mapping: deps.client.list_team_members(
                    token, m.github_org_login, m.github_team_slug
                ),
                f"list members of team {key}",
            )
        except ISOLATED_ERRORS as exc:
            logging.warning("Could not fetch members of team %s: %s", key, exc)
            members_by_team[key] = []
            failed_teams.add(key)
            result.team_errors.append(
                {
                    "team_slug": mapping.github_team_slug,
                    "org_login": mapping.github_org_login,
                    "error": error_message(exc),
                }
            )
    return members_by_team, failed_teams


def apply_github_team_mappings(  # pylint: disable=too-many-arguments, too-many-locals, too-many-branches, too-many-statements
    deps: SyncDeps,
    workspace_id: str,
    installation_id: int,
    event_type: str,
    correlation_id: str | None = None,
    actor: Actor = SYSTEM_WEBHOOK_ACTOR,
) -> TeamMappingResult:
    """Converge workspace and project roles with the membership of the GitHub
    teams mapped in this workspace, typically after a webhook event.

    Project memberships are only touched in projects that a mapping of this
    run points to. Existing workspace OWNERs and ADMINs are never downgraded
    or removed. Where a mapped team could not be fetched, its targets only
    gain roles in this run.
    """
    store = RoleStore(deps.session)
    workspace = store.get_workspace(workspace_id)
    assert_workspace_admin(store, actor, workspace.id)
    settings = deps.settings.get(workspace.key)
    mode = settings.webhook_sync_mode
    result = TeamMappingResult(mode=mode)

    if not settings.team_mapping_enabled:
        logging.info("GitHub team mapping is disabled for workspace '%s'", workspace.key)
        return result

    mappings = store.list_team_mappings(workspace.id, installation_id, enabled_only=True)
    if not mappings:
        logging.info("No GitHub team mapping applies to workspace '%s'", workspace.key)
        return result

    token = issue_installation_token(deps, installation_id)
    matcher = UserMatcher(store.list_user_links(workspace.id))
    members_by_team, failed_teams = _fetch_team_members(deps, token, mappings, result)

    project_ids = store.project_ids_by_keys(
        workspace.id,
        {m.target_key for m in mappings if m.target_type == TARGET_PROJECT},
    )
    has_workspace_mapping = any(m.target_type == TARGET_WORKSPACE for m in mappings)

    desired_workspace: dict[str, WorkspaceRole] = {}
    desired_project: dict[tuple[str, str], ProjectRole] = {}
    project_scope: set[str] = set()
    # Targets of failed teams, where roles may be granted but not lowered
    incomplete_projects: set[str] = set()
    incomplete_workspace = False
    matched_users: set[str] = set()

    for mapping in mappings:
        project_id = None
        if mapping.target_type == TARGET_PROJECT:
            project_id = project_ids.get(mapping.target_key)
            if project_id is None:
                result.target_errors.append(
                    {
                        "target_type": TARGET_PROJECT,
                        "target_key": mapping.target_key,
                        "error": "Target project not found in workspace",
                    }
                )
                continue
            project_scope.add(project_id)

        if team_key(mapping) in failed_teams:
            if project_id is None:
                incomplete_workspace = True
            else:
                incomplete_projects.add(project_id)

        for member in members_by_team.get(team_key(mapping), []):
            login = normalize_github_login(member.get("login"))
            github_user_id = member.get("id")
            user_id = matcher.match(github_user_id, login)
            if user_id is None:
                result.add_unmatched_user(login, github_user_id, mapping.github_team_slug)
                continue
            matched_users.add(user_id)

            if mapping.target_type == TARGET_WORKSPACE:
                if (ws_role := mapping_workspace_role(mapping.role)) is None:
                    continue
                current_ws = desired_workspace.get(user_id)
                if current_ws is None or compare_workspace_role_rank(ws_role, current_ws) > 0:
                    desired_workspace[user_id] = ws_role
            elif project_id is not None:
                if (project_role := mapping_project_role(mapping.role)) is None:
                    continue
                current = desired_project.get((project_id, user_id))
                if current is None or compare_role_rank(project_role, current) > 0:
                    desired_project[(project_id, user_id)] = project_role

    workspace_changes = ChangeSet()
    if has_workspace_mapping:
        workspace_changes = classify_workspace_changes(
            desired_workspace,
            store.list_workspace_members(workspace.id, matcher.linked_user_ids),
            SyncMode.ADD_ONLY if incomplete_workspace else mode,
        )
    protected_users = store.protected_user_ids(workspace.id)
    project_changes = ChangeSet()
    for scope, scope_mode in (
        (project_scope - incomplete_projects, mode),
        (project_scope & incomplete_projects, SyncMode.ADD_ONLY),
    ):
        project_changes.extend(
            classify_project_changes(
                {key: role for key, role in desired_project.items() if key[0] in scope},
                store.list_project_members(scope, matcher.linked_user_ids),
                scope_mode,
                protected_users,
                matcher.linked_user_ids,
            )
        )

    with store.transaction():
        apply_workspace_changes(store, workspace.id, workspace_changes)
        apply_project_changes(store, project_changes)

    total = ChangeSet()
    total.extend(workspace_changes)
    total.extend(project_changes)
    result.mappings_processed = len(mappings)
    result.teams_fetched = len(members_by_team)
    result.users_matched = len(matched_users)
    result.added = len(total.to_add)
    result.updated = len(total.to_update)
    result.removed = len(total.to_remove)
    result.protected_skipped = total.protected_skipped
    logging.info(
        "Applied GitHub team mappings in workspace '%s': %s added, %s updated, %s removed",
        workspace.key,
        result.added,
        result.updated,
        result.removed,
    )

    evidence = {
        "installation_id": str(installation_id),
        "event_type": event_type,
        "mapping_source": "github_team_mapping",
    }
    project_keys = store.project_keys_by_ids(project_scope)
    for kind, changes in (("workspace", workspace_changes), ("project", project_changes)):
        for change in changes.all_changes():
            action = resolve_access_audit_action(kind, change.old_role, change.new_role)
            if action is None:
                continue
            emit_audit(
                deps.recorder,
                AuditEvent(
                    workspace_id=workspace.id,
                    workspace_key=workspace.key,
                    project_id=change.project_id,
                    actor_user_id=actor.user_id,
                    action=action,
                    correlation_id=correlation_id,
                    target=build_access_audit_target(
                        source="github",
                        target_user_id=change.user_id,
                        old_role=change.old_role,
                        new_role=change.new_role,
                        workspace_key=workspace.key,
                        project_key=project_keys.get(change.project_id or ""),
                        correlation_id=correlation_id,
                        evidence=evidence,
                    ),
                ),
            )

    emit_audit(
        deps.recorder,
        AuditEvent(
            workspace_id=workspace.id,
            workspace_key=workspace.key,
            actor_user_id=actor.user_id,
            action="github.team_mappings.applied",
            correlation_id=correlation_id,
            target={
                "workspace_key": workspace.key,
                "installation_id": str(installation_id),
                "event_type": event_type,
            }
            | result.to_dict(),
        ),
    )

    return result
