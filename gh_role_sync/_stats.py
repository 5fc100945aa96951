# SPDX-FileCopyrightText: 2025 DB Systel GmbH
#
# SPDX-License-Identifier: Apache-2.0

"""Dataclasses holding the outcome of a run, and their output"""

import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from ._helpers import dict_to_pretty_string
from ._ranking import SyncMode

MAX_UNMATCHED_USERS_SYNC = 1000
MAX_UNMATCHED_USERS_TEAM_MAPPING = 500


def _jsonable(value: Any) -> Any:
    """Turn enums into their values, recursively"""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_jsonable(item) for item in value]
    return value


def dedupe(items: list[str]) -> list[str]:
    """Remove duplicates while keeping the order"""
    return list(dict.fromkeys(items))


@dataclass
class SyncResult:  # pylint: disable=too-many-instance-attributes
    """Outcome of a direct permission sync"""

    workspace_key: str
    dry_run: bool = False
    mode: SyncMode = SyncMode.ADD_ONLY
    repos_processed: int = 0
    users_matched: int = 0
    added: int = 0
    updated: int = 0
    removed: int = 0
    protected_skipped: int = 0
    skipped_unmatched: int = 0
    rate_limit_warnings: list[str] = field(default_factory=list)
    unmatched_users: list[dict] = field(default_factory=list)
    repo_errors: list[dict] = field(default_factory=list)

    def add_unmatched_user(
        self, repo_full_name: str, github_login: str | None, github_user_id: int, permission: str
    ) -> None:
        """A GitHub user without link to an internal user"""
        self.skipped_unmatched += 1
        if len(self.unmatched_users) < MAX_UNMATCHED_USERS_SYNC:
            self.unmatched_users.append(
                {
                    "repo_full_name": repo_full_name,
                    "github_login": github_login,
                    "github_user_id": github_user_id,
                    "permission": permission,
                }
            )

    def add_repo_error(self, repo_full_name: str, error: str) -> None:
        """A repository could not be processed"""
        self.repo_errors.append({"repo_full_name": repo_full_name, "error": error})

    def to_dict(self) -> dict:
        """Plain dict, e.g. for JSON output"""
        return _jsonable(asdict(self))

    def print_changes(self, output: str) -> None:
        """Print the result, either in pretty format or as JSON"""
        if output == "json":
            print(json.dumps(self.to_dict(), indent=2))
            return

        text = _header(f"GitHub permission sync of workspace {self.workspace_key}")
        if self.dry_run:
            text += "⚠️ Dry-run mode, no changes executed\n\n"
        text += (
            f"Mode: {self.mode.value}\n"
            f"Repositories processed: {self.repos_processed}\n"
            f"Users matched: {self.users_matched}\n"
            f"➕ Added: {self.added}\n"
            f"🔄 Updated: {self.updated}\n"
            f"❌ Removed: {self.removed}\n"
        )
        if self.protected_skipped:
            text += f"🔒 Protected, not changed: {self.protected_skipped}\n"
        if self.skipped_unmatched:
            text += f"⚠️ Unmatched GitHub users: {self.skipped_unmatched}\n"
            for user in self.unmatched_users:
                text += (
                    f"  - {user['github_login'] or user['github_user_id']} "
                    f"({user['permission']} on {user['repo_full_name']})\n"
                )
        text += _list_section("⏳ Rate limit warnings", self.rate_limit_warnings)
        text += _list_section(
            "❌ Repository errors",
            [f"{error['repo_full_name']}: {error['error']}" for error in self.repo_errors],
        )
        print(text.strip())


@dataclass
class PreviewResult:
    """Computed permissions of one repository, without applying anything"""

    workspace_key: str
    repo_full_name: str
    project_key: str | None
    computed_permissions: list[dict] = field(default_factory=list)
    unmatched_users: list[dict] = field(default_factory=list)
    rate_limit_warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Plain dict, e.g. for JSON output"""
        return _jsonable(asdict(self))

    def print_changes(self, output: str) -> None:
        """Print the result, either in pretty format or as JSON"""
        if output == "json":
            print(json.dumps(self.to_dict(), indent=2))
            return

        text = _header(f"Permission preview of {self.repo_full_name} ({self.project_key})")
        for row in self.computed_permissions:
            who = row["github_login"] or row["github_user_id"]
            if row["matched_user_id"]:
                text += (
                    f"🔹 {who}: {row['permission']} → {row['mapped_project_role']} "
                    f"for user {row['matched_user_id']}\n"
                )
            else:
                text += f"⚠️ {who}: {row['permission']}, not linked to any user\n"
        text += _list_section("⏳ Rate limit warnings", self.rate_limit_warnings)
        print(text.strip())


@dataclass
class TeamMappingResult:  # pylint: disable=too-many-instance-attributes
    """Outcome of applying GitHub team mappings"""

    mode: SyncMode = SyncMode.ADD_ONLY
    mappings_processed: int = 0
    teams_fetched: int = 0
    users_matched: int = 0
    added: int = 0
    updated: int = 0
    removed: int = 0
    protected_skipped: int = 0
    skipped_unmatched: int = 0
    unmatched_users: list[dict] = field(default_factory=list)
    team_errors: list[dict] = field(default_factory=list)
    target_errors: list[dict] = field(default_factory=list)

    def add_unmatched_user(self, github_login: str, github_user_id: int, team_slug: str) -> None:
        """A team member without link to an internal user"""
        self.skipped_unmatched += 1
        if len(self.unmatched_users) < MAX_UNMATCHED_USERS_TEAM_MAPPING:
            self.unmatched_users.append(
                {
                    "github_login": github_login,
                    "github_user_id": github_user_id,
                    "team_slug": team_slug,
                }
            )

    def to_dict(self) -> dict:
        """Plain dict, e.g. for JSON output"""
        return _jsonable(asdict(self))

    def print_changes(self, output: str) -> None:
        """Print the result, either in pretty format or as JSON"""
        if output == "json":
            print(json.dumps(self.to_dict(), indent=2))
            return

        text = _header("GitHub team mappings applied")
        text += (
            f"Mode: {self.mode.value}\n"
            f"Mappings processed: {self.mappings_processed}\n"
            f"Teams fetched: {self.teams_fetched}\n"
            f"Users matched: {self.users_matched}\n"
            f"➕ Added: {self.added}\n"
            f"🔄 Updated: {self.updated}\n"
            f"❌ Removed: {self.removed}\n"
        )
        if self.protected_skipped:
            text += f"🔒 Protected, not changed: {self.protected_skipped}\n"
        if self.skipped_unmatched:
            text += f"⚠️ Unmatched GitHub users: {self.skipped_unmatched}\n"
        text += _list_section(
            "❌ Team errors",
            [f"{e['org_login']}/{e['team_slug']}: {e['error']}" for e in self.team_errors],
        )
        text += _list_section(
            "❌ Target errors",
            [f"{e['target_type']} {e['target_key']}: {e['error']}" for e in self.target_errors],
        )
        print(text.strip())


def _header(title: str) -> str:
    line = f"#{(len(title) + 1) * '-'}\n"
    return f"{line}# {title}\n{line}\n"


def _list_section(title: str, items: list[str]) -> str:
    if not items:
        return ""
    return f"\n{title}:\n" + "".join(f"  - {item}\n" for item in items)


def print_plain(data: Any, output: str) -> None:
    """Print the data of admin commands, either in pretty format or as JSON"""
    data = _jsonable(data)
    if output == "json":
        print(json.dumps(data, indent=2, default=str))
    elif isinstance(data, list):
        print("\n".join(dict_to_pretty_string(item) for item in data).strip() or "Nothing found")
    else:
        print(dict_to_pretty_string(data).strip())
