# SPDX-FileCopyrightText: 2025 DB Systel GmbH
#
# SPDX-License-Identifier: Apache-2.0

"""TTL cache in front of the rate-limited GitHub team endpoints"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from ._gh_api import report_rate_limits
from ._ranking import normalize_github_login, normalize_github_permission
from ._store import CacheKey, CacheRepository

DEFAULT_CACHE_TTL_SECONDS = 900
MIN_CACHE_TTL_SECONDS = 30
MAX_CACHE_TTL_SECONDS = 86400


def clamp_ttl(seconds: Any) -> int:
    """Effective TTL in seconds: the default if unset or invalid, otherwise
    clamped to the allowed range"""
    try:
        ttl = int(seconds)
    except (TypeError, ValueError):
        return DEFAULT_CACHE_TTL_SECONDS
    if ttl <= 0:
        return DEFAULT_CACHE_TTL_SECONDS
    return max(MIN_CACHE_TTL_SECONDS, min(MAX_CACHE_TTL_SECONDS, ttl))


def is_fresh(updated_at: datetime | None, ttl_seconds: int, now: datetime | None = None) -> bool:
    """Whether a cache row written at `updated_at` is younger than the TTL"""
    if updated_at is None:
        return False
    if now is None:
        now = datetime.now(timezone.utc)
    # Some databases, e.g. SQLite, do not keep the timezone
    if updated_at.tzinfo is None:
        updated_at = updated_at.replace(tzinfo=timezone.utc)
    return now - updated_at < timedelta(seconds=ttl_seconds)


def get_or_refresh(
    repository: CacheRepository,
    key: CacheKey,
    ttl_seconds: int,
    fetch: Callable[[], Any],
    now: datetime | None = None,
) -> Any:
    """Return the cached payload if fresh, otherwise fetch, store and return it.
    A failing fetch propagates and leaves the existing row untouched"""
    payload, updated_at, found = repository.get(key)
    if found and is_fresh(updated_at, ttl_seconds, now):
        logging.debug("Cache hit for %s", key)
        return payload

    logging.debug("Cache miss or stale entry for %s, fetching from GitHub", key)
    payload = fetch()
    repository.put(key, payload)
    return payload


def _normalize_repo_teams(rows: Any) -> list[dict]:
    """Keep only well-formed team rows of a repository"""
    teams = []
    for row in rows or []:
        if not isinstance(row, dict):
            continue
        permission = normalize_github_permission(row.get("permission"))
        slug = str(row.get("team_slug") or "").strip()
        org_login = str(row.get("org_login") or "").strip()
        if permission is None or not slug or not org_login:
            logging.debug("Discarding malformed repository team row: %s", row)
            continue
        teams.append(
            {
                "team_id": row.get("team_id"),
                "team_slug": slug,
                "org_login": org_login,
                "permission": permission.value,
            }
        )
    return teams


def _normalize_team_members(rows: Any) -> list[dict]:
    """Keep only team member rows with a numeric ID and a login"""
    members = []
    for row in rows or []:
        if not isinstance(row, dict):
            continue
        login = normalize_github_login(row.get("login"))
        try:
            user_id = int(row.get("id"))  # type: ignore[arg-type]
        except (TypeError, ValueError):
            user_id = 0
        if not login or user_id <= 0:
            logging.debug("Discarding malformed team member row: %s", row)
            continue
        members.append({"id": user_id, "login": login})
    return members


def get_repo_teams_cached(  # pylint: disable=too-many-arguments
    client: Any,
    repository: CacheRepository,
    token: str,
    workspace_id: str,
    github_repo_id: int,
    owner: str,
    repo: str,
    ttl_seconds: int,
    rate_limit_warnings: list[str] | None = None,
) -> list[dict]:
    """Teams with access to a repository, served from the cache while fresh"""

    def fetch() -> list[dict]:
        return _normalize_repo_teams(
            report_rate_limits(
                client,
                lambda: client.list_repository_teams(token, owner, repo),
                f"list teams of {owner}/{repo}",
                rate_limit_warnings,
            )
        )

    key = CacheKey(workspace_id=workspace_id, github_repo_id=github_repo_id)
    return _normalize_repo_teams(get_or_refresh(repository, key, ttl_seconds, fetch))


def get_team_members_cached(  # pylint: disable=too-many-arguments
    client: Any,
    repository: CacheRepository,
    token: str,
    workspace_id: str,
    org_login: str,
    team_slug: str,
    ttl_seconds: int,
    rate_limit_warnings: list[str] | None = None,
) -> list[dict]:
    """Members of an organisation team, served from the cache while fresh"""

    def fetch() -> list[dict]:
        return _normalize_team_members(
            report_rate_limits(
                client,
                lambda: client.list_team_members(token, org_login, team_slug),
                f"list members of team {org_login}/{team_slug}",
                rate_limit_warnings,
            )
        )

    key = CacheKey(workspace_id=workspace_id, org_login=org_login, team_slug=team_slug)
    return _normalize_team_members(get_or_refresh(repository, key, ttl_seconds, fetch))
