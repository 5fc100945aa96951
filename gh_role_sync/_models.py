# SPDX-FileCopyrightText: 2025 DB Systel GmbH
#
# SPDX-License-Identifier: Apache-2.0

"""Tables of the identity and role store"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import declarative_base, relationship

from ._ranking import GithubPermission, ProjectRole, WorkspaceRole

Base = declarative_base()


def utcnow() -> datetime:
    """Timezone-aware now"""
    return datetime.now(timezone.utc)


def new_uuid() -> str:
    """Random primary key"""
    return str(uuid.uuid4())


class Workspace(Base):
    """Tenant boundary"""

    __tablename__ = "workspaces"

    id = Column(String, primary_key=True, default=new_uuid)
    key = Column(String, unique=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Project(Base):
    """Unit that GitHub repositories are mapped onto"""

    __tablename__ = "projects"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=False, index=True)
    key = Column(String, nullable=False)
    name = Column(String, nullable=False, default="")

    __table_args__ = (UniqueConstraint("workspace_id", "key", name="uq_project_workspace_key"),)


class GithubInstallation(Base):
    """GitHub App installation connected to a workspace"""

    __tablename__ = "github_installations"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(String, ForeignKey("workspaces.id"), unique=True, nullable=False)
    installation_id = Column(BigInteger, nullable=False, index=True)
    account_login = Column(String, nullable=True)


class GithubRepoLink(Base):
    """Binding of a GitHub repository to a project"""

    __tablename__ = "github_repo_links"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=False, index=True)
    github_repo_id = Column(BigInteger, nullable=False)
    full_name = Column(String, nullable=False)
    linked_project_id = Column(String, ForeignKey("projects.id"), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    linked_project = relationship("Project", lazy="joined")

    __table_args__ = (
        UniqueConstraint("workspace_id", "github_repo_id", name="uq_repo_link_workspace_repo"),
    )


class GithubUserLink(Base):
    """Binding of an internal user to a GitHub identity. `github_login` is
    stored normalized, see normalize_github_login()"""

    __tablename__ = "github_user_links"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False)
    github_login = Column(String, nullable=False)
    github_user_id = Column(BigInteger, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("workspace_id", "user_id", name="uq_user_link_workspace_user"),
        UniqueConstraint("workspace_id", "github_login", name="uq_user_link_workspace_login"),
    )


class WorkspaceMember(Base):
    """Canonical workspace role of a user"""

    __tablename__ = "workspace_members"

    workspace_id = Column(String, ForeignKey("workspaces.id"), primary_key=True)
    user_id = Column(String, primary_key=True)
    role = Column(SQLEnum(WorkspaceRole), nullable=False, default=WorkspaceRole.MEMBER)


class ProjectMember(Base):
    """Canonical project role of a user"""

    __tablename__ = "project_members"

    project_id = Column(String, ForeignKey("projects.id"), primary_key=True)
    user_id = Column(String, primary_key=True)
    role = Column(SQLEnum(ProjectRole), nullable=False, default=ProjectRole.READER)


class GithubTeamMapping(Base):
    """Declarative rule granting members of a GitHub team a workspace or project role"""

    __tablename__ = "github_team_mappings"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=False, index=True)
    # None: applies to events of any installation
    provider_installation_id = Column(BigInteger, nullable=True)
    github_team_id = Column(BigInteger, nullable=False)
    github_org_login = Column(String, nullable=False)
    github_team_slug = Column(String, nullable=False)
    target_type = Column(String, nullable=False)
    target_key = Column(String, nullable=False)
    role = Column(String, nullable=False)
    priority = Column(Integer, nullable=False, default=100)
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (Index("idx_team_mapping_priority", "workspace_id", "priority"),)


class GithubPermissionCache(Base):
    """Last observed permission of a GitHub user on a repository. Informational"""

    __tablename__ = "github_permission_cache"

    workspace_id = Column(String, ForeignKey("workspaces.id"), primary_key=True)
    github_repo_id = Column(BigInteger, primary_key=True)
    github_user_id = Column(BigInteger, primary_key=True)
    permission = Column(SQLEnum(GithubPermission), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class GithubRepoTeamsCache(Base):
    """TTL cache of the teams having access to a repository"""

    __tablename__ = "github_repo_teams_cache"

    workspace_id = Column(String, ForeignKey("workspaces.id"), primary_key=True)
    github_repo_id = Column(BigInteger, primary_key=True)
    payload = Column(JSON, nullable=False, default=list)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class GithubTeamMembersCache(Base):
    """TTL cache of the members of a GitHub team"""

    __tablename__ = "github_team_members_cache"

    workspace_id = Column(String, ForeignKey("workspaces.id"), primary_key=True)
    org_login = Column(String, primary_key=True)
    team_slug = Column(String, primary_key=True)
    payload = Column(JSON, nullable=False, default=list)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class AuditLogEntry(Base):
    """Immutable history record"""

    __tablename__ = "audit_log"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=False, index=True)
    project_id = Column(String, nullable=True)
    actor_user_id = Column(String, nullable=False)
    action = Column(String, nullable=False, index=True)
    target = Column(JSON, nullable=False, default=dict)
    correlation_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
