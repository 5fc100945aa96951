# SPDX-FileCopyrightText: 2025 DB Systel GmbH
#
# SPDX-License-Identifier: Apache-2.0

"""Compute the effective GitHub permission of every user on a repository"""

import logging
from dataclasses import dataclass
from typing import Any

from ._cache import get_repo_teams_cached, get_team_members_cached
from ._errors import ValidationError
from ._gh_api import report_rate_limits
from ._models import GithubRepoLink
from ._ranking import (
    GithubPermission,
    derive_collaborator_permission,
    max_github_permission,
    normalize_github_login,
    normalize_github_permission,
    parse_owner_repo,
)
from ._store import RoleStore


@dataclass
class ComputedPermission:
    """Effective permission of one GitHub user on one repository"""

    github_user_id: int
    github_login: str | None
    permission: GithubPermission


def list_target_repos(
    store: RoleStore,
    workspace_id: str,
    repos: list[str] | None = None,
    project_key_prefix: str | None = None,
) -> list[GithubRepoLink]:
    """Active repository links bound to a project, optionally reduced to some
    repository names (case-insensitive) and/or a project key prefix"""
    prefix = str(project_key_prefix or "").strip()
    repo_filter = {str(repo).strip().lower() for repo in repos or [] if str(repo).strip()}

    targets = []
    for link in store.list_linked_repos(workspace_id):
        if link.linked_project is None:
            continue
        if prefix and not link.linked_project.key.startswith(prefix):
            continue
        if repo_filter and link.full_name.lower() not in repo_filter:
            continue
        targets.append(link)

    return targets


def _merge(
    computed: dict[int, ComputedPermission],
    github_user_id: int,
    github_login: str | None,
    permission: GithubPermission,
) -> None:
    """Record an observation, keeping the highest permission and the first known login"""
    if existing := computed.get(github_user_id):
        existing.permission = max_github_permission(existing.permission, permission)
        existing.github_login = existing.github_login or github_login
    else:
        computed[github_user_id] = ComputedPermission(github_user_id, github_login, permission)


def compute_repo_permissions(  # pylint: disable=too-many-arguments
    client: Any,
    store: RoleStore,
    token: str,
    repo: GithubRepoLink,
    ttl_seconds: int,
    rate_limit_warnings: list[str] | None = None,
) -> list[ComputedPermission]:
    """Merge direct collaborator permissions and permissions granted through
    teams into one row per GitHub user.

    Collaborators are always fetched live. Repository teams and their members
    go through the TTL cache. Errors of the GitHub calls propagate.
    """
    parsed = parse_owner_repo(repo.full_name)
    if parsed is None:
        raise ValidationError(f"Invalid repository full name: {repo.full_name}")
    owner, name = parsed

    computed: dict[int, ComputedPermission] = {}

    collaborators = report_rate_limits(
        client,
        lambda: client.list_repository_collaborators_with_permissions(token, owner, name),
        f"list collaborators of {repo.full_name}",
        rate_limit_warnings,
    )
    for collaborator in collaborators:
        permission = derive_collaborator_permission(collaborator)
        try:
            github_user_id = int(collaborator.get("id"))
        except (TypeError, ValueError):
            continue
        if permission is None or github_user_id <= 0:
            continue
        login = normalize_github_login(collaborator.get("login")) or None
        _merge(computed, github_user_id, login, permission)

    teams = get_repo_teams_cached(
        client,
        store.repo_teams_cache,
        token,
        workspace_id=repo.workspace_id,
        github_repo_id=repo.github_repo_id,
        owner=owner,
        repo=name,
        ttl_seconds=ttl_seconds,
        rate_limit_warnings=rate_limit_warnings,
    )
    for team in teams:
        permission = normalize_github_permission(team["permission"])
        if permission is None:
            continue
        members = get_team_members_cached(
            client,
            store.team_members_cache,
            token,
            workspace_id=repo.workspace_id,
            org_login=team["org_login"],
            team_slug=team["team_slug"],
            ttl_seconds=ttl_seconds,
            rate_limit_warnings=rate_limit_warnings,
        )
        for member in members:
            _merge(computed, member["id"], member["login"], permission)

    logging.debug(
        "Computed %s permissions for %s from %s collaborators and %s teams",
        len(computed),
        repo.full_name,
        len(collaborators),
        len(teams),
    )
    return list(computed.values())
