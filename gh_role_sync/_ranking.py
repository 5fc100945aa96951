# SPDX-FileCopyrightText: 2025 DB Systel GmbH
#
# SPDX-License-Identifier: Apache-2.0

"""Ranking of GitHub permission levels and canonical workspace/project roles"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


class GithubPermission(str, Enum):
    """Permission level of a user on a GitHub repository"""

    ADMIN = "admin"
    MAINTAIN = "maintain"
    WRITE = "write"
    TRIAGE = "triage"
    READ = "read"


class ProjectRole(str, Enum):
    """Canonical role of a user inside a project"""

    OWNER = "OWNER"
    MAINTAINER = "MAINTAINER"
    WRITER = "WRITER"
    READER = "READER"


class WorkspaceRole(str, Enum):
    """Canonical role of a user inside a workspace"""

    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


class SyncMode(str, Enum):
    """How far the role store is converged towards the GitHub state"""

    ADD_ONLY = "add_only"
    ADD_AND_REMOVE = "add_and_remove"


GITHUB_PERMISSION_RANK = {
    GithubPermission.ADMIN: 4,
    GithubPermission.MAINTAIN: 3,
    GithubPermission.WRITE: 2,
    GithubPermission.TRIAGE: 1,
    GithubPermission.READ: 0,
}
PROJECT_ROLE_RANK = {
    ProjectRole.OWNER: 3,
    ProjectRole.MAINTAINER: 2,
    ProjectRole.WRITER: 1,
    ProjectRole.READER: 0,
}
WORKSPACE_ROLE_RANK = {
    WorkspaceRole.OWNER: 2,
    WorkspaceRole.ADMIN: 1,
    WorkspaceRole.MEMBER: 0,
}

# The REST API still reports some permissions with their legacy names
_PERMISSION_ALIASES = {"push": "write", "pull": "read"}

DEFAULT_GITHUB_ROLE_MAPPING: Mapping[GithubPermission, ProjectRole] = MappingProxyType(
    {
        GithubPermission.ADMIN: ProjectRole.MAINTAINER,
        GithubPermission.MAINTAIN: ProjectRole.MAINTAINER,
        GithubPermission.WRITE: ProjectRole.WRITER,
        GithubPermission.TRIAGE: ProjectRole.READER,
        GithubPermission.READ: ProjectRole.READER,
    }
)


def compare_github_permission(left: GithubPermission, right: GithubPermission) -> int:
    """Negative if left is lower than right, 0 if equal, positive if higher"""
    return GITHUB_PERMISSION_RANK[left] - GITHUB_PERMISSION_RANK[right]


def compare_role_rank(left: ProjectRole, right: ProjectRole) -> int:
    """Compare two project roles, see compare_github_permission()"""
    return PROJECT_ROLE_RANK[left] - PROJECT_ROLE_RANK[right]


def compare_workspace_role_rank(left: WorkspaceRole, right: WorkspaceRole) -> int:
    """Compare two workspace roles, see compare_github_permission()"""
    return WORKSPACE_ROLE_RANK[left] - WORKSPACE_ROLE_RANK[right]


def max_github_permission(left: GithubPermission, right: GithubPermission) -> GithubPermission:
    """Return the higher of two permissions, preferring the left one on a tie"""
    return left if compare_github_permission(left, right) >= 0 else right


def normalize_github_login(login: str | None) -> str:
    """Lower-case a GitHub login and strip leading '@' characters"""
    return str(login or "").strip().lstrip("@").lower()


def normalize_github_permission(value: Any) -> GithubPermission | None:
    """Turn a raw permission string into a GithubPermission, or None if unknown"""
    normalized = str(value or "").strip().lower()
    normalized = _PERMISSION_ALIASES.get(normalized, normalized)
    try:
        return GithubPermission(normalized)
    except ValueError:
        return None


def derive_collaborator_permission(collaborator: Mapping[str, Any]) -> GithubPermission | None:
    """Find the effective permission of a repository collaborator.

    GitHub reports it in up to three shapes. `role_name` is the most precise
    one as it also knows maintain and triage, then the plain `permission`
    string, and last the boolean `permissions` object.
    """
    for key in ("role_name", "permission"):
        if permission := normalize_github_permission(collaborator.get(key)):
            return permission

    flags = collaborator.get("permissions") or {}
    for flag, permission in (
        ("admin", GithubPermission.ADMIN),
        ("maintain", GithubPermission.MAINTAIN),
        ("push", GithubPermission.WRITE),
        ("triage", GithubPermission.TRIAGE),
        ("pull", GithubPermission.READ),
    ):
        if flags.get(flag):
            return permission

    return None


def parse_owner_repo(full_name: str) -> tuple[str, str] | None:
    """Split 'owner/repo' into its two parts. Returns None if malformed"""
    parts = str(full_name or "").strip().strip("/").split("/")
    if len(parts) != 2:
        return None
    owner, repo = (part.strip() for part in parts)
    if not owner or not repo:
        return None
    return owner, repo


@dataclass(frozen=True)
class RoleMappingPolicy:
    """Which project role a GitHub permission level grants. Loaded once per
    run from the workspace settings"""

    table: Mapping[GithubPermission, ProjectRole] = field(
        default_factory=lambda: DEFAULT_GITHUB_ROLE_MAPPING
    )

    @classmethod
    def from_config(cls, mapping: Mapping[str, str] | None) -> "RoleMappingPolicy":
        """Build a policy from e.g. {"admin": "maintainer", ...}. Unknown
        permissions or roles are ignored. If nothing valid remains, the default
        table is used"""
        table: dict[GithubPermission, ProjectRole] = {}
        for raw_permission, raw_role in (mapping or {}).items():
            permission = normalize_github_permission(raw_permission)
            try:
                role = ProjectRole(str(raw_role or "").strip().upper())
            except ValueError:
                continue
            if permission is not None:
                table[permission] = role

        if not table:
            return cls()

        return cls(table=MappingProxyType(table))

    def as_config(self) -> dict[str, str]:
        """Inverse of from_config()"""
        return {permission.value: role.value.lower() for permission, role in self.table.items()}


def map_github_permission_to_project_role(
    permission: GithubPermission, policy: RoleMappingPolicy
) -> ProjectRole:
    """Map a GitHub permission to a project role. Fails closed to READER"""
    return policy.table.get(permission, ProjectRole.READER)
