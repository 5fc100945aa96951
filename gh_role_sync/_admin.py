# SPDX-FileCopyrightText: 2025 DB Systel GmbH
#
# SPDX-License-Identifier: Apache-2.0

"""Administration of GitHub user links and team mappings, and status views"""

import logging
from typing import Any

from slugify import slugify

from ._access import Actor, assert_workspace_admin
from ._apply import AuditEvent, emit_audit
from ._cache import MAX_CACHE_TTL_SECONDS, MIN_CACHE_TTL_SECONDS
from ._errors import NotFoundError, ValidationError
from ._gh_api import report_rate_limits
from ._models import (
    GithubPermissionCache,
    GithubRepoTeamsCache,
    GithubTeamMapping,
    GithubTeamMembersCache,
    GithubUserLink,
    Workspace,
)
from ._ranking import normalize_github_login
from ._store import RoleStore
from ._sync import ISOLATED_ERRORS, SyncDeps, issue_installation_token
from ._team_mapping import (
    TARGET_PROJECT,
    TARGET_WORKSPACE,
    mapping_project_role,
    mapping_workspace_role,
)

MIN_MAPPING_PRIORITY = 0
MAX_MAPPING_PRIORITY = 100000
DEFAULT_MAPPING_PRIORITY = 100


def _admin_context(deps: SyncDeps, actor: Actor, workspace_key: str) -> tuple[RoleStore, Workspace]:
    store = RoleStore(deps.session)
    workspace = store.get_workspace_by_key(workspace_key)
    assert_workspace_admin(store, actor, workspace.id)
    return store, workspace


def _audit(deps: SyncDeps, actor: Actor, workspace: Workspace, action: str, target: dict) -> None:
    emit_audit(
        deps.recorder,
        AuditEvent(
            workspace_id=workspace.id,
            workspace_key=workspace.key,
            actor_user_id=actor.user_id,
            action=action,
            target={"workspace_key": workspace.key} | target,
        ),
    )


# --------------------------------------------------------------------------
# User links
# --------------------------------------------------------------------------
def _user_link_to_dict(link: GithubUserLink) -> dict:
    return {
        "user_id": link.user_id,
        "github_login": link.github_login,
        "github_user_id": link.github_user_id,
        "created_at": link.created_at.isoformat() if link.created_at else None,
    }


def _resolve_github_user_id(deps: SyncDeps, store: RoleStore, workspace_id: str, login: str):
    """Numeric GitHub ID of a login. None if it cannot be looked up, in which
    case matching falls back to the login"""
    installation_id = store.get_installation_id(workspace_id)
    if installation_id is None or not deps.app_id or not deps.app_private_key:
        return None
    try:
        token = issue_installation_token(deps, installation_id)
        user = report_rate_limits(
            deps.client,
            lambda: deps.client.get_github_user_by_login(token, login),
            f"look up user {login}",
        )
    except ISOLATED_ERRORS as exc:
        logging.warning("Could not look up GitHub user '%s': %s", login, exc)
        return None
    return int(user["id"]) if user and user.get("id") else None


def link_github_user(
    deps: SyncDeps, actor: Actor, workspace_key: str, user_id: str, github_login: str
) -> dict:
    """Link an internal user to a GitHub login, replacing an earlier link of
    the same user"""
    store, workspace = _admin_context(deps, actor, workspace_key)
    login = normalize_github_login(github_login)
    if not login:
        raise ValidationError("github_login is required.")
    if store.get_workspace_role(workspace.id, user_id) is None:
        raise NotFoundError("User is not a workspace member.")
    existing_by_login = store.get_user_link_by_login(workspace.id, login)
    if existing_by_login is not None and existing_by_login.user_id != user_id:
        raise ValidationError("github_login is already linked to another user.")

    github_user_id = _resolve_github_user_id(deps, store, workspace.id, login)

    with store.transaction():
        link = store.get_user_link(workspace.id, user_id)
        if link is None:
            link = GithubUserLink(workspace_id=workspace.id, user_id=user_id)
            deps.session.add(link)
        link.github_login = login
        link.github_user_id = github_user_id
    logging.info("Linked user '%s' to GitHub login '%s'", user_id, login)

    result = _user_link_to_dict(link)
    _audit(deps, actor, workspace, "github.user_link.created", result)
    return result


def unlink_github_user(deps: SyncDeps, actor: Actor, workspace_key: str, user_id: str) -> dict:
    """Remove the GitHub link of an internal user"""
    store, workspace = _admin_context(deps, actor, workspace_key)
    link = store.get_user_link(workspace.id, user_id)
    if link is None:
        raise NotFoundError("GitHub user link not found.")
    result = _user_link_to_dict(link)

    with store.transaction():
        deps.session.delete(link)
    logging.info("Removed GitHub link of user '%s'", user_id)

    _audit(deps, actor, workspace, "github.user_link.deleted", result)
    return result | {"deleted": True}


def list_github_user_links(deps: SyncDeps, actor: Actor, workspace_key: str) -> list[dict]:
    """All GitHub user links of a workspace"""
    store, workspace = _admin_context(deps, actor, workspace_key)
    return [_user_link_to_dict(link) for link in store.list_user_links(workspace.id)]


# --------------------------------------------------------------------------
# Team mappings
# --------------------------------------------------------------------------
def _mapping_to_dict(mapping: GithubTeamMapping) -> dict:
    return {
        "id": mapping.id,
        "provider_installation_id": mapping.provider_installation_id,
        "github_team_id": mapping.github_team_id,
        "github_org_login": mapping.github_org_login,
        "github_team_slug": mapping.github_team_slug,
        "target_type": mapping.target_type,
        "target_key": mapping.target_key,
        "role": mapping.role,
        "priority": mapping.priority,
        "enabled": mapping.enabled,
    }


def _parse_numeric_id(value: Any, field_name: str) -> int:
    normalized = str(value if value is not None else "").strip()
    if not normalized.isdigit():
        raise ValidationError(f"{field_name} must be numeric.")
    return int(normalized)


def _normalize_slug(value: Any, field_name: str) -> str:
    """Lower-case slug as GitHub builds it, keeping underscores"""
    normalized = slugify(str(value or "").strip().lstrip("@"), regex_pattern=r"[^-a-z0-9_]+")
    if not normalized:
        raise ValidationError(f"{field_name} is required.")
    return normalized


def clamp_priority(priority: Any) -> int:
    """Mapping priority within the allowed range, lower runs first"""
    try:
        value = int(priority)
    except (TypeError, ValueError):
        return DEFAULT_MAPPING_PRIORITY
    return max(MIN_MAPPING_PRIORITY, min(MAX_MAPPING_PRIORITY, value))


def create_github_team_mapping(  # pylint: disable=too-many-arguments, too-many-locals
    deps: SyncDeps,
    actor: Actor,
    workspace_key: str,
    github_team_id: int | str,
    github_org_login: str,
    github_team_slug: str,
    target_type: str,
    target_key: str,
    role: str,
    priority: int | None = None,
    enabled: bool = True,
    provider_installation_id: int | str | None = None,
) -> dict:
    """Create a rule granting members of a GitHub team a workspace or project role"""
    store, workspace = _admin_context(deps, actor, workspace_key)

    team_id = _parse_numeric_id(github_team_id, "github_team_id")
    org_login = _normalize_slug(github_org_login, "github_org_login")
    team_slug = _normalize_slug(github_team_slug, "github_team_slug")
    target_type = str(target_type or "").strip().lower()
    target_key = str(target_key or "").strip()
    if target_type not in (TARGET_WORKSPACE, TARGET_PROJECT):
        raise ValidationError("target_type must be 'workspace' or 'project'.")
    if not target_key:
        raise ValidationError("target_key is required.")

    if target_type == TARGET_WORKSPACE:
        if (ws_role := mapping_workspace_role(role)) is None:
            raise ValidationError("Workspace mappings require role OWNER/ADMIN/MEMBER.")
        role_value = ws_role.value
    else:
        if (project_role := mapping_project_role(role)) is None:
            raise ValidationError("Project mappings require role OWNER/MAINTAINER/WRITER/READER.")
        role_value = project_role.value
        if not store.project_ids_by_keys(workspace.id, [target_key]):
            raise ValidationError("Project target_key does not exist in workspace.")

    installation = None
    if provider_installation_id not in (None, ""):
        installation = _parse_numeric_id(provider_installation_id, "provider_installation_id")

    if store.find_team_mapping(workspace.id, team_id, target_type, target_key) is not None:
        raise ValidationError("A mapping of this team onto this target already exists.")

    with store.transaction():
        mapping = GithubTeamMapping(
            workspace_id=workspace.id,
            provider_installation_id=installation,
            github_team_id=team_id,
            github_org_login=org_login,
            github_team_slug=team_slug,
            target_type=target_type,
            target_key=target_key,
            role=role_value,
            priority=clamp_priority(DEFAULT_MAPPING_PRIORITY if priority is None else priority),
            enabled=enabled,
        )
        deps.session.add(mapping)
    logging.info(
        "Created mapping of team %s/%s onto %s '%s' as %s",
        org_login,
        team_slug,
        target_type,
        target_key,
        role_value,
    )

    result = _mapping_to_dict(mapping)
    _audit(deps, actor, workspace, "github.team_mapping.created", result)
    return result


def list_github_team_mappings(deps: SyncDeps, actor: Actor, workspace_key: str) -> list[dict]:
    """All team mappings of a workspace in the order they are applied"""
    store, workspace = _admin_context(deps, actor, workspace_key)
    return [_mapping_to_dict(mapping) for mapping in store.list_team_mappings(workspace.id)]


def delete_github_team_mapping(
    deps: SyncDeps, actor: Actor, workspace_key: str, mapping_id: str
) -> dict:
    """Delete a team mapping. Roles granted through it are kept"""
    store, workspace = _admin_context(deps, actor, workspace_key)
    mapping = store.get_team_mapping(workspace.id, mapping_id)
    result = _mapping_to_dict(mapping)
    with store.transaction():
        deps.session.delete(mapping)

    _audit(deps, actor, workspace, "github.team_mapping.deleted", result)
    return result | {"deleted": True}


def set_github_team_mapping_enabled(
    deps: SyncDeps, actor: Actor, workspace_key: str, mapping_id: str, enabled: bool
) -> dict:
    """Enable or disable a team mapping"""
    store, workspace = _admin_context(deps, actor, workspace_key)
    mapping = store.get_team_mapping(workspace.id, mapping_id)
    with store.transaction():
        mapping.enabled = enabled

    result = _mapping_to_dict(mapping)
    _audit(deps, actor, workspace, "github.team_mapping.updated", result)
    return result


# --------------------------------------------------------------------------
# Status
# --------------------------------------------------------------------------
def get_github_cache_status(deps: SyncDeps, actor: Actor, workspace_key: str) -> dict:
    """Size and age of the GitHub caches of a workspace"""
    store, workspace = _admin_context(deps, actor, workspace_key)
    settings = deps.settings.get(workspace.key)

    status: dict[str, Any] = {
        "workspace_key": workspace.key,
        "cache_ttl_seconds": settings.cache_ttl_seconds,
        "cache_ttl_range": [MIN_CACHE_TTL_SECONDS, MAX_CACHE_TTL_SECONDS],
    }
    for name, model in (
        ("repo_teams_cache", GithubRepoTeamsCache),
        ("team_members_cache", GithubTeamMembersCache),
        ("permission_cache", GithubPermissionCache),
    ):
        count, latest = store.cache_table_status(model, workspace.id)
        status[name] = {
            "entries": count,
            "latest_updated_at": latest.isoformat() if latest else None,
        }
    return status


def get_github_permission_status(deps: SyncDeps, actor: Actor, workspace_key: str) -> dict:
    """Effective GitHub settings of a workspace and the summary of the last sync"""
    store, workspace = _admin_context(deps, actor, workspace_key)
    settings = deps.settings.get(workspace.key)
    last = store.last_audit_entry(workspace.id, "github.permissions.computed")

    return {
        "workspace_key": workspace.key,
        "installation_id": store.get_installation_id(workspace.id),
        "settings": settings.to_dict(),
        "last_sync": (
            {
                "at": last.created_at.isoformat() if last.created_at else None,
                "actor_user_id": last.actor_user_id,
                "correlation_id": last.correlation_id,
                "summary": last.target,
            }
            if last
            else None
        ),
    }
