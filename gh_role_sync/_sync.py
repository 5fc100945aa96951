# SPDX-FileCopyrightText: 2025 DB Systel GmbH
#
# SPDX-License-Identifier: Apache-2.0

"""Synchronise project roles with the permissions users have on the linked
GitHub repositories"""

import logging
from dataclasses import dataclass
from typing import Any

import requests
from github import GithubException
from sqlalchemy.orm import Session

from ._access import Actor, assert_workspace_admin
from ._apply import (
    AuditEvent,
    AuditRecorder,
    apply_project_changes,
    build_access_audit_target,
    classify_project_changes,
    emit_audit,
    resolve_access_audit_action,
)
from ._compute import ComputedPermission, compute_repo_permissions, list_target_repos
from ._config import SettingsProvider
from ._errors import NotFoundError, RoleSyncError, ValidationError
from ._helpers import error_message
from ._models import GithubUserLink
from ._ranking import (
    GITHUB_PERMISSION_RANK,
    ProjectRole,
    SyncMode,
    compare_role_rank,
    map_github_permission_to_project_role,
    normalize_github_login,
)
from ._stats import PreviewResult, SyncResult, dedupe
from ._store import RoleStore

# Failures that only affect a single repository or team
ISOLATED_ERRORS = (GithubException, requests.exceptions.RequestException, RoleSyncError)


@dataclass
class SyncDeps:
    """Collaborators of one engine invocation"""

    session: Session
    client: Any
    settings: SettingsProvider
    recorder: AuditRecorder
    app_id: str | int = ""
    app_private_key: str = ""


def issue_installation_token(deps: SyncDeps, installation_id: int) -> str:
    """Authenticate as the GitHub App and get a token for the installation"""
    if not deps.app_id or not deps.app_private_key:
        raise ValidationError(
            "GitHub App ID and private key must be configured to sync permissions."
        )
    jwt = deps.client.issue_github_app_jwt(deps.app_id, deps.app_private_key)
    return deps.client.issue_installation_access_token(jwt, installation_id)


class UserMatcher:
    """Resolves GitHub identities to internal users via GithubUserLink rows.
    The numeric GitHub ID wins, the normalized login is the fallback"""

    def __init__(self, links: list[GithubUserLink]):
        self.by_id: dict[int, str] = {}
        self.by_login: dict[str, str] = {}
        self.linked_user_ids: set[str] = set()
        for link in links:
            self.linked_user_ids.add(link.user_id)
            self.by_login[normalize_github_login(link.github_login)] = link.user_id
            if link.github_user_id is not None:
                self.by_id[int(link.github_user_id)] = link.user_id

    def match(self, github_user_id: int | None, github_login: str | None) -> str | None:
        """Internal user ID of a GitHub user, None if not linked"""
        if github_user_id is not None and (user_id := self.by_id.get(int(github_user_id))):
            return user_id
        if login := normalize_github_login(github_login):
            return self.by_login.get(login)
        return None


def sync_github_permissions(  # pylint: disable=too-many-arguments, too-many-locals, too-many-statements
    deps: SyncDeps,
    actor: Actor,
    workspace_key: str,
    dry_run: bool = False,
    repos: list[str] | None = None,
    project_key_prefix: str | None = None,
    mode_override: SyncMode | str | None = None,
    correlation_id: str | None = None,
) -> SyncResult:
    """Converge the project roles of a workspace with the GitHub permissions on
    the repositories linked to its projects.

    Repositories that fail are reported in `repo_errors` and their projects
    are left alone. Only memberships of linked users are ever changed. In
    dry-run mode, the result and the summary audit entry show what would have
    happened, but no role is written.
    """
    store = RoleStore(deps.session)
    workspace = store.get_workspace_by_key(workspace_key)
    assert_workspace_admin(store, actor, workspace.id)
    settings = deps.settings.get(workspace.key)

    installation_id = store.get_installation_id(workspace.id)
    if installation_id is None:
        raise NotFoundError("GitHub installation is not connected for this workspace.")

    target_repos = list_target_repos(store, workspace.id, repos, project_key_prefix)
    token = issue_installation_token(deps, installation_id)

    mode = SyncMode(mode_override) if mode_override else settings.sync_mode
    policy = settings.role_mapping
    ttl = settings.cache_ttl_seconds
    logging.info(
        "Syncing GitHub permissions of %s repositories in workspace '%s' (mode: %s, dry-run: %s)",
        len(target_repos),
        workspace.key,
        mode.value,
        dry_run,
    )

    matcher = UserMatcher(store.list_user_links(workspace.id))
    protected_users = store.protected_user_ids(workspace.id)

    result = SyncResult(workspace_key=workspace.key, dry_run=dry_run, mode=mode)
    rate_limit_warnings: list[str] = []
    desired: dict[tuple[str, str], ProjectRole] = {}
    project_keys: dict[str, str] = {}
    failed_projects: set[str] = set()
    matched_users: set[str] = set()
    observations: list[tuple[int, ComputedPermission]] = []

    for repo in target_repos:
        project = repo.linked_project
        try:
            computed = compute_repo_permissions(
                deps.client, store, token, repo, ttl, rate_limit_warnings
            )
        except ISOLATED_ERRORS as exc:
            logging.warning("Could not compute permissions of %s: %s", repo.full_name, exc)
            result.add_repo_error(repo.full_name, error_message(exc))
            failed_projects.add(project.id)
            continue

        result.repos_processed += 1
        project_keys[project.id] = project.key

        for row in computed:
            observations.append((repo.github_repo_id, row))
            user_id = matcher.match(row.github_user_id, row.github_login)
            if user_id is None:
                result.add_unmatched_user(
                    repo.full_name, row.github_login, row.github_user_id, row.permission.value
                )
                continue

            matched_users.add(user_id)
            role = map_github_permission_to_project_role(row.permission, policy)
            current = desired.get((project.id, user_id))
            if current is None or compare_role_rank(role, current) > 0:
                desired[(project.id, user_id)] = role

    # Only projects whose repositories were all computed take part in the diff
    diff_projects = set(project_keys) - failed_projects
    for project_id in failed_projects & set(project_keys):
        logging.warning(
            "Leaving project '%s' unchanged, some of its repositories failed",
            project_keys[project_id],
        )
    changes = classify_project_changes(
        {key: role for key, role in desired.items() if key[0] in diff_projects},
        store.list_project_members(diff_projects),
        mode,
        protected_users,
        matcher.linked_user_ids,
    )

    result.users_matched = len(matched_users)
    result.added = len(changes.to_add)
    result.updated = len(changes.to_update)
    result.removed = len(changes.to_remove)
    result.protected_skipped = changes.protected_skipped
    result.rate_limit_warnings = dedupe(rate_limit_warnings)

    if not dry_run:
        with store.transaction():
            apply_project_changes(store, changes)
            for github_repo_id, row in observations:
                store.upsert_permission_cache(
                    workspace.id, github_repo_id, row.github_user_id, row.permission
                )
        logging.info(
            "Applied GitHub permissions in workspace '%s': %s added, %s updated, %s removed",
            workspace.key,
            result.added,
            result.updated,
            result.removed,
        )

        for change in changes.all_changes():
            action = resolve_access_audit_action("project", change.old_role, change.new_role)
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
                        project_key=project_keys.get(change.project_id),  # type: ignore[arg-type]
                        correlation_id=correlation_id,
                        evidence={"mode": mode.value, "dry_run": False},
                    ),
                ),
            )

    summary = result.to_dict()
    emit_audit(
        deps.recorder,
        AuditEvent(
            workspace_id=workspace.id,
            workspace_key=workspace.key,
            actor_user_id=actor.user_id,
            action="github.permissions.computed",
            correlation_id=correlation_id,
            target=summary
            | {
                "repos_filter": dedupe([str(r).strip() for r in repos or [] if str(r).strip()]),
                "project_key_prefix": str(project_key_prefix or "").strip() or None,
                "github_cache_ttl_seconds": ttl,
                "correlation_id": correlation_id,
            },
        ),
    )
    if not dry_run:
        emit_audit(
            deps.recorder,
            AuditEvent(
                workspace_id=workspace.id,
                workspace_key=workspace.key,
                actor_user_id=actor.user_id,
                action="github.permissions.applied",
                correlation_id=correlation_id,
                target={
                    key: summary[key]
                    for key in (
                        "workspace_key",
                        "mode",
                        "repos_processed",
                        "users_matched",
                        "added",
                        "updated",
                        "removed",
                        "protected_skipped",
                    )
                },
            ),
        )

    return result


def get_github_permission_preview(
    deps: SyncDeps, actor: Actor, workspace_key: str, repo: str
) -> PreviewResult:
    """Show the computed permissions of one linked repository and which
    project role each matched user would get. Nothing is written to the
    role store"""
    store = RoleStore(deps.session)
    workspace = store.get_workspace_by_key(workspace_key)
    assert_workspace_admin(store, actor, workspace.id)
    settings = deps.settings.get(workspace.key)

    repo_name = str(repo or "").strip()
    links = list_target_repos(store, workspace.id, repos=[repo_name]) if repo_name else []
    if not links:
        raise NotFoundError("Linked GitHub repo not found for permission preview.")
    repo_link = links[0]

    installation_id = store.get_installation_id(workspace.id)
    if installation_id is None:
        raise NotFoundError("GitHub installation is not connected for this workspace.")
    token = issue_installation_token(deps, installation_id)

    rate_limit_warnings: list[str] = []
    computed = compute_repo_permissions(
        deps.client, store, token, repo_link, settings.cache_ttl_seconds, rate_limit_warnings
    )
    matcher = UserMatcher(store.list_user_links(workspace.id))

    rows = []
    for row in computed:
        user_id = matcher.match(row.github_user_id, row.github_login)
        rows.append(
            {
                "github_user_id": row.github_user_id,
                "github_login": row.github_login,
                "permission": row.permission,
                "matched_user_id": user_id,
                "mapped_project_role": (
                    map_github_permission_to_project_role(row.permission, settings.role_mapping)
                    if user_id
                    else None
                ),
            }
        )

    # Highest permission first, then by GitHub user ID
    rows.sort(key=lambda r: (-GITHUB_PERMISSION_RANK[r["permission"]], r["github_user_id"]))

    return PreviewResult(
        workspace_key=workspace.key,
        repo_full_name=repo_link.full_name,
        project_key=repo_link.linked_project.key,
        computed_permissions=rows,
        unmatched_users=[
            {
                "github_user_id": row["github_user_id"],
                "github_login": row["github_login"],
                "permission": row["permission"],
            }
            for row in rows
            if not row["matched_user_id"]
        ],
        rate_limit_warnings=dedupe(rate_limit_warnings),
    )
