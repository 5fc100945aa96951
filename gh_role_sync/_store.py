# SPDX-FileCopyrightText: 2025 DB Systel GmbH
#
# SPDX-License-Identifier: Apache-2.0

"""Access to the identity and role store and the GitHub cache tables"""

import logging
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import create_engine, delete, func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from ._errors import NotFoundError
from ._models import (
    AuditLogEntry,
    Base,
    GithubInstallation,
    GithubPermissionCache,
    GithubRepoLink,
    GithubRepoTeamsCache,
    GithubTeamMapping,
    GithubTeamMembersCache,
    GithubUserLink,
    Project,
    ProjectMember,
    Workspace,
    WorkspaceMember,
    utcnow,
)
from ._ranking import GithubPermission, ProjectRole, WorkspaceRole

PROTECTED_WORKSPACE_ROLES = (WorkspaceRole.OWNER, WorkspaceRole.ADMIN)


def create_session_factory(database_url: str, echo: bool = False) -> sessionmaker:
    """Create the engine for a database URL, make sure all tables exist and
    return a session factory bound to it"""
    engine: Engine = create_engine(database_url, echo=echo, future=True)
    Base.metadata.create_all(engine)
    logging.debug("Database tables ensured for %s", engine.url.render_as_string())
    return sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)


def _upsert(session: Session, model: Any, values: dict[str, Any], update_fields: list[str]):
    """Insert a row or update it if its primary key exists. Uses the native
    ON CONFLICT statement where the dialect has one so that concurrent runs
    never produce duplicates"""
    dialect = session.get_bind().dialect.name
    if dialect in ("postgresql", "sqlite"):
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert  # pylint: disable=import-outside-toplevel
        else:
            from sqlalchemy.dialects.sqlite import insert  # pylint: disable=import-outside-toplevel

        index_elements = [column.name for column in model.__table__.primary_key.columns]
        stmt = insert(model).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={field: stmt.excluded[field] for field in update_fields},
        )
        session.execute(stmt)
    else:
        session.merge(model(**values))


@dataclass
class CacheKey:
    """Natural key of a cache row"""

    workspace_id: str
    github_repo_id: int | None = None
    org_login: str = ""
    team_slug: str = ""


class CacheRepository:
    """get/put access to one of the two TTL cache tables"""

    def __init__(self, session: Session, model: Any):
        self.session = session
        self.model = model

    def _key_values(self, key: CacheKey) -> dict[str, Any]:
        if self.model is GithubRepoTeamsCache:
            return {"workspace_id": key.workspace_id, "github_repo_id": key.github_repo_id}
        return {
            "workspace_id": key.workspace_id,
            "org_login": key.org_login.lower(),
            "team_slug": key.team_slug.lower(),
        }

    def get(self, key: CacheKey) -> tuple[Any, datetime | None, bool]:
        """Return (payload, updated_at, found)"""
        conditions = [getattr(self.model, col) == val for col, val in self._key_values(key).items()]
        row = self.session.execute(
            select(self.model.payload, self.model.updated_at).where(*conditions)
        ).first()
        if row is None:
            return None, None, False
        return row.payload, row.updated_at, True

    def put(self, key: CacheKey, payload: Any) -> None:
        """Store the payload for the key, replacing an existing row"""
        values = self._key_values(key) | {"payload": payload, "updated_at": utcnow()}
        _upsert(self.session, self.model, values, update_fields=["payload", "updated_at"])
        # Cache rows outlive the run, also dry-runs and failed applies
        self.session.commit()


class RoleStore:  # pylint: disable=too-many-public-methods
    """Queries and writes on the role store, bound to one SQLAlchemy session"""

    def __init__(self, session: Session):
        self.session = session
        self.repo_teams_cache = CacheRepository(session, GithubRepoTeamsCache)
        self.team_members_cache = CacheRepository(session, GithubTeamMembersCache)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Unit of work: commit everything written inside, or nothing"""
        try:
            yield self.session
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    # --------------------------------------------------------------------------
    # Workspaces and projects
    # --------------------------------------------------------------------------
    def get_workspace_by_key(self, workspace_key: str) -> Workspace:
        """Get a workspace by its key or raise NotFoundError"""
        workspace = self.session.scalars(
            select(Workspace).where(Workspace.key == workspace_key)
        ).first()
        if workspace is None:
            raise NotFoundError(f"Workspace '{workspace_key}' not found.")
        return workspace

    def get_workspace(self, workspace_id: str) -> Workspace:
        """Get a workspace by its ID or raise NotFoundError"""
        workspace = self.session.get(Workspace, workspace_id)
        if workspace is None:
            raise NotFoundError(f"Workspace with ID '{workspace_id}' not found.")
        return workspace

    def get_installation_id(self, workspace_id: str) -> int | None:
        """ID of the GitHub App installation connected to the workspace"""
        return self.session.scalars(
            select(GithubInstallation.installation_id).where(
                GithubInstallation.workspace_id == workspace_id
            )
        ).first()

    def project_ids_by_keys(self, workspace_id: str, keys: Iterable[str]) -> dict[str, str]:
        """Map project keys of a workspace to their IDs. Unknown keys are missing"""
        keys = list(keys)
        if not keys:
            return {}
        rows = self.session.execute(
            select(Project.key, Project.id).where(
                Project.workspace_id == workspace_id, Project.key.in_(keys)
            )
        )
        return {row.key: row.id for row in rows}

    def project_keys_by_ids(self, project_ids: Iterable[str]) -> dict[str, str]:
        """Map project IDs to their keys"""
        project_ids = list(project_ids)
        if not project_ids:
            return {}
        rows = self.session.execute(
            select(Project.id, Project.key).where(Project.id.in_(project_ids))
        )
        return {row.id: row.key for row in rows}

    # --------------------------------------------------------------------------
    # Links
    # --------------------------------------------------------------------------
    def list_linked_repos(self, workspace_id: str) -> list[GithubRepoLink]:
        """Active repository links that point to a project, by full name"""
        return list(
            self.session.scalars(
                select(GithubRepoLink)
                .where(
                    GithubRepoLink.workspace_id == workspace_id,
                    GithubRepoLink.is_active.is_(True),
                    GithubRepoLink.linked_project_id.is_not(None),
                )
                .order_by(GithubRepoLink.full_name)
            ).unique()
        )

    def list_user_links(self, workspace_id: str) -> list[GithubUserLink]:
        """All GitHub user links of a workspace"""
        return list(
            self.session.scalars(
                select(GithubUserLink)
                .where(GithubUserLink.workspace_id == workspace_id)
                .order_by(GithubUserLink.github_login)
            )
        )

    def get_user_link(self, workspace_id: str, user_id: str) -> GithubUserLink | None:
        """GitHub link of an internal user"""
        return self.session.scalars(
            select(GithubUserLink).where(
                GithubUserLink.workspace_id == workspace_id, GithubUserLink.user_id == user_id
            )
        ).first()

    def get_user_link_by_login(self, workspace_id: str, github_login: str) -> GithubUserLink | None:
        """Link of a normalized GitHub login"""
        return self.session.scalars(
            select(GithubUserLink).where(
                GithubUserLink.workspace_id == workspace_id,
                GithubUserLink.github_login == github_login,
            )
        ).first()

    # --------------------------------------------------------------------------
    # Memberships
    # --------------------------------------------------------------------------
    def get_workspace_role(self, workspace_id: str, user_id: str) -> WorkspaceRole | None:
        """Workspace role of a user, None if not a member"""
        return self.session.scalars(
            select(WorkspaceMember.role).where(
                WorkspaceMember.workspace_id == workspace_id, WorkspaceMember.user_id == user_id
            )
        ).first()

    def protected_user_ids(self, workspace_id: str) -> set[str]:
        """Users that are workspace OWNER or ADMIN"""
        return set(
            self.session.scalars(
                select(WorkspaceMember.user_id).where(
                    WorkspaceMember.workspace_id == workspace_id,
                    WorkspaceMember.role.in_(PROTECTED_WORKSPACE_ROLES),
                )
            )
        )

    def list_workspace_members(
        self, workspace_id: str, user_ids: Iterable[str]
    ) -> dict[str, WorkspaceRole]:
        """Workspace roles of the given users"""
        user_ids = list(user_ids)
        if not user_ids:
            return {}
        rows = self.session.execute(
            select(WorkspaceMember.user_id, WorkspaceMember.role).where(
                WorkspaceMember.workspace_id == workspace_id,
                WorkspaceMember.user_id.in_(user_ids),
            )
        )
        return {row.user_id: row.role for row in rows}

    def list_project_members(
        self, project_ids: Iterable[str], user_ids: Iterable[str] | None = None
    ) -> dict[tuple[str, str], ProjectRole]:
        """Project roles keyed by (project_id, user_id), optionally only for some users"""
        project_ids = list(project_ids)
        if not project_ids:
            return {}
        stmt = select(ProjectMember.project_id, ProjectMember.user_id, ProjectMember.role).where(
            ProjectMember.project_id.in_(project_ids)
        )
        if user_ids is not None:
            stmt = stmt.where(ProjectMember.user_id.in_(list(user_ids)))
        return {(row.project_id, row.user_id): row.role for row in self.session.execute(stmt)}

    def upsert_project_member(self, project_id: str, user_id: str, role: ProjectRole) -> None:
        """Add a project member, or set the role if already present"""
        _upsert(
            self.session,
            ProjectMember,
            {"project_id": project_id, "user_id": user_id, "role": role},
            update_fields=["role"],
        )

    def update_project_member(self, project_id: str, user_id: str, role: ProjectRole) -> None:
        """Change the role of an existing project member"""
        self.session.execute(
            update(ProjectMember)
            .where(ProjectMember.project_id == project_id, ProjectMember.user_id == user_id)
            .values(role=role)
        )

    def delete_project_member(self, project_id: str, user_id: str) -> None:
        """Remove a project member"""
        self.session.execute(
            delete(ProjectMember).where(
                ProjectMember.project_id == project_id, ProjectMember.user_id == user_id
            )
        )

    def upsert_workspace_member(self, workspace_id: str, user_id: str, role: WorkspaceRole):
        """Add a workspace member, or set the role if already present"""
        _upsert(
            self.session,
            WorkspaceMember,
            {"workspace_id": workspace_id, "user_id": user_id, "role": role},
            update_fields=["role"],
        )

    def update_workspace_member(self, workspace_id: str, user_id: str, role: WorkspaceRole):
        """Change the role of an existing workspace member"""
        self.session.execute(
            update(WorkspaceMember)
            .where(WorkspaceMember.workspace_id == workspace_id, WorkspaceMember.user_id == user_id)
            .values(role=role)
        )

    def delete_workspace_member(self, workspace_id: str, user_id: str) -> None:
        """Remove a workspace member"""
        self.session.execute(
            delete(WorkspaceMember).where(
                WorkspaceMember.workspace_id == workspace_id, WorkspaceMember.user_id == user_id
            )
        )

    # --------------------------------------------------------------------------
    # Team mappings
    # --------------------------------------------------------------------------
    def list_team_mappings(
        self, workspace_id: str, installation_id: int | None = None, enabled_only: bool = False
    ) -> list[GithubTeamMapping]:
        """Team mappings of a workspace ordered by priority. If an installation
        is given, only mappings for it or for any installation are returned"""
        stmt = select(GithubTeamMapping).where(GithubTeamMapping.workspace_id == workspace_id)
        if enabled_only:
            stmt = stmt.where(GithubTeamMapping.enabled.is_(True))
        if installation_id is not None:
            stmt = stmt.where(
                GithubTeamMapping.provider_installation_id.is_(None)
                | (GithubTeamMapping.provider_installation_id == installation_id)
            )
        stmt = stmt.order_by(
            GithubTeamMapping.priority,
            GithubTeamMapping.github_org_login,
            GithubTeamMapping.github_team_slug,
        )
        return list(self.session.scalars(stmt))

    def get_team_mapping(self, workspace_id: str, mapping_id: str) -> GithubTeamMapping:
        """Get a team mapping of the workspace or raise NotFoundError"""
        mapping = self.session.scalars(
            select(GithubTeamMapping).where(
                GithubTeamMapping.workspace_id == workspace_id, GithubTeamMapping.id == mapping_id
            )
        ).first()
        if mapping is None:
            raise NotFoundError(f"GitHub team mapping '{mapping_id}' not found.")
        return mapping

    def find_team_mapping(
        self, workspace_id: str, github_team_id: int, target_type: str, target_key: str
    ) -> GithubTeamMapping | None:
        """The mapping of a team onto a target, if any"""
        return self.session.scalars(
            select(GithubTeamMapping).where(
                GithubTeamMapping.workspace_id == workspace_id,
                GithubTeamMapping.github_team_id == github_team_id,
                GithubTeamMapping.target_type == target_type,
                GithubTeamMapping.target_key == target_key,
            )
        ).first()

    # --------------------------------------------------------------------------
    # Audit log
    # --------------------------------------------------------------------------
    def last_audit_entry(self, workspace_id: str, action: str) -> AuditLogEntry | None:
        """Most recent audit entry with an action in a workspace"""
        return self.session.scalars(
            select(AuditLogEntry)
            .where(AuditLogEntry.workspace_id == workspace_id, AuditLogEntry.action == action)
            .order_by(AuditLogEntry.created_at.desc())
        ).first()

    # --------------------------------------------------------------------------
    # Permission cache
    # --------------------------------------------------------------------------
    def upsert_permission_cache(
        self,
        workspace_id: str,
        github_repo_id: int,
        github_user_id: int,
        permission: GithubPermission,
    ) -> None:
        """Record the last observed permission of a user on a repository"""
        _upsert(
            self.session,
            GithubPermissionCache,
            {
                "workspace_id": workspace_id,
                "github_repo_id": github_repo_id,
                "github_user_id": github_user_id,
                "permission": permission,
                "updated_at": utcnow(),
            },
            update_fields=["permission", "updated_at"],
        )

    def cache_table_status(self, model: Any, workspace_id: str) -> tuple[int, datetime | None]:
        """Number of rows and latest update of a cache table for a workspace"""
        row = self.session.execute(
            select(func.count(), func.max(model.updated_at)).where(
                model.workspace_id == workspace_id
            )
        ).one()
        return row[0], row[1]
