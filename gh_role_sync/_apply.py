# SPDX-FileCopyrightText: 2025 DB Systel GmbH
#
# SPDX-License-Identifier: Apache-2.0

"""Diff desired against existing roles, apply the result and audit it"""

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy.orm import sessionmaker

from ._models import AuditLogEntry
from ._ranking import (
    ProjectRole,
    SyncMode,
    WorkspaceRole,
    compare_role_rank,
    compare_workspace_role_rank,
)
from ._store import PROTECTED_WORKSPACE_ROLES, RoleStore

# --------------------------------------------------------------------------
# Audit
# --------------------------------------------------------------------------


@dataclass
class AuditEvent:  # pylint: disable=too-many-instance-attributes
    """One entry for the audit log"""

    workspace_id: str
    workspace_key: str
    actor_user_id: str
    action: str
    target: dict[str, Any] = field(default_factory=dict)
    project_id: str | None = None
    correlation_id: str | None = None


class AuditRecorder(Protocol):  # pylint: disable=too-few-public-methods
    """Anything that can persist or forward audit events"""

    def record(self, event: AuditEvent) -> None:
        """Record a single event"""


class StoreAuditRecorder:  # pylint: disable=too-few-public-methods
    """Append audit events as AuditLogEntry rows, each in its own session so
    that audit writes never share a transaction with role changes"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def record(self, event: AuditEvent) -> None:
        """Write the event and commit"""
        with self.session_factory() as session:
            session.add(
                AuditLogEntry(
                    workspace_id=event.workspace_id,
                    project_id=event.project_id,
                    actor_user_id=event.actor_user_id,
                    action=event.action,
                    target=event.target,
                    correlation_id=event.correlation_id,
                )
            )
            session.commit()


def emit_audit(recorder: AuditRecorder, event: AuditEvent) -> None:
    """Hand an event to the recorder. Failures are logged, not raised, as the
    role changes they describe are already committed"""
    try:
        recorder.record(event)
    except Exception as exc:  # pylint: disable=broad-exception-caught
        logging.error(
            "Could not record audit event '%s' for workspace %s: %s",
            event.action,
            event.workspace_key,
            exc,
        )


def resolve_access_audit_action(
    kind: str,
    old_role: ProjectRole | WorkspaceRole | None,
    new_role: ProjectRole | WorkspaceRole | None,
) -> str | None:
    """Audit action for a role transition of a `workspace` or `project`
    membership, e.g. access.project_member.upgraded. None if nothing changed"""
    prefix = f"access.{kind}_member"
    if old_role is None and new_role is not None:
        return f"{prefix}.added"
    if old_role is not None and new_role is None:
        return f"{prefix}.removed"
    if old_role is None or new_role is None or old_role == new_role:
        return None

    if kind == "workspace":
        diff = compare_workspace_role_rank(new_role, old_role)  # type: ignore[arg-type]
    else:
        diff = compare_role_rank(new_role, old_role)  # type: ignore[arg-type]
    return f"{prefix}.upgraded" if diff > 0 else f"{prefix}.downgraded"


def build_access_audit_target(  # pylint: disable=too-many-arguments
    source: str,
    target_user_id: str,
    old_role: ProjectRole | WorkspaceRole | None,
    new_role: ProjectRole | WorkspaceRole | None,
    workspace_key: str,
    project_key: str | None = None,
    correlation_id: str | None = None,
    evidence: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """The target JSON of an access audit entry"""
    target: dict[str, Any] = {
        "source": source,
        "target_user_id": target_user_id,
        "old_role": old_role.value if old_role else None,
        "new_role": new_role.value if new_role else None,
        "workspace_key": workspace_key,
    }
    if project_key:
        target["project_key"] = project_key
    target["correlation_id"] = correlation_id
    target["evidence"] = evidence or {}
    return target


# --------------------------------------------------------------------------
# Diff
# --------------------------------------------------------------------------


@dataclass
class RoleChange:
    """A planned change of one membership. project_id is None for workspace
    memberships, old_role None for additions, new_role None for removals"""

    user_id: str
    old_role: Any = None
    new_role: Any = None
    project_id: str | None = None


@dataclass
class ChangeSet:
    """Classified changes, computed before any write happens"""

    to_add: list[RoleChange] = field(default_factory=list)
    to_update: list[RoleChange] = field(default_factory=list)
    to_remove: list[RoleChange] = field(default_factory=list)
    protected_skipped: int = 0

    def all_changes(self) -> list[RoleChange]:
        """Additions, updates and removals in this order"""
        return self.to_add + self.to_update + self.to_remove

    def extend(self, other: "ChangeSet") -> None:
        """Merge another change set into this one"""
        self.to_add.extend(other.to_add)
        self.to_update.extend(other.to_update)
        self.to_remove.extend(other.to_remove)
        self.protected_skipped += other.protected_skipped


def is_protected_role_change(
    user_id: str, current_role: ProjectRole, protected_users: set[str]
) -> bool:
    """A project membership may not be changed automatically if the user is a
    workspace OWNER/ADMIN or currently the project OWNER"""
    return user_id in protected_users or current_role == ProjectRole.OWNER


def classify_project_changes(
    desired: dict[tuple[str, str], ProjectRole],
    existing: dict[tuple[str, str], ProjectRole],
    mode: SyncMode,
    protected_users: set[str],
    linked_user_ids: set[str],
) -> ChangeSet:
    """Compare desired and existing project roles, both keyed by
    (project_id, user_id), and decide what to add, update and remove.

    In add_only mode, only additions and upgrades happen. In add_and_remove
    mode, roles converge in both directions and linked users without a
    desired role are removed, except for protected memberships which stay
    untouched and are counted in protected_skipped.
    """
    changes = ChangeSet()

    for (project_id, user_id), wanted in desired.items():
        current = existing.get((project_id, user_id))
        change = RoleChange(user_id=user_id, old_role=current, new_role=wanted, project_id=project_id)
        if current is None:
            changes.to_add.append(change)
            continue
        if current == wanted:
            continue

        if mode == SyncMode.ADD_ONLY:
            if compare_role_rank(wanted, current) > 0:
                changes.to_update.append(change)
            continue

        if is_protected_role_change(user_id, current, protected_users):
            changes.protected_skipped += 1
            continue
        changes.to_update.append(change)

    if mode == SyncMode.ADD_AND_REMOVE:
        for (project_id, user_id), current in existing.items():
            # Only memberships we can explain through a GitHub link are managed
            if user_id not in linked_user_ids or (project_id, user_id) in desired:
                continue
            if is_protected_role_change(user_id, current, protected_users):
                changes.protected_skipped += 1
                continue
            changes.to_remove.append(
                RoleChange(user_id=user_id, old_role=current, project_id=project_id)
            )

    return changes


def classify_workspace_changes(
    desired: dict[str, WorkspaceRole],
    existing: dict[str, WorkspaceRole],
    mode: SyncMode,
) -> ChangeSet:
    """Compare desired and existing workspace roles keyed by user ID. An
    existing OWNER or ADMIN is never downgraded or removed"""
    changes = ChangeSet()

    for user_id, wanted in desired.items():
        current = existing.get(user_id)
        change = RoleChange(user_id=user_id, old_role=current, new_role=wanted)
        if current is None:
            changes.to_add.append(change)
            continue
        if current == wanted:
            continue

        is_upgrade = compare_workspace_role_rank(wanted, current) > 0
        if mode == SyncMode.ADD_ONLY:
            if is_upgrade:
                changes.to_update.append(change)
            continue

        if not is_upgrade and current in PROTECTED_WORKSPACE_ROLES:
            changes.protected_skipped += 1
            continue
        changes.to_update.append(change)

    if mode == SyncMode.ADD_AND_REMOVE:
        for user_id, current in existing.items():
            if user_id in desired:
                continue
            if current in PROTECTED_WORKSPACE_ROLES:
                changes.protected_skipped += 1
                continue
            changes.to_remove.append(RoleChange(user_id=user_id, old_role=current))

    return changes


# --------------------------------------------------------------------------
# Apply
# --------------------------------------------------------------------------


def apply_project_changes(store: RoleStore, changes: ChangeSet) -> None:
    """Write project membership changes. Must run inside store.transaction()"""
    for change in changes.to_add:
        store.upsert_project_member(change.project_id, change.user_id, change.new_role)  # type: ignore[arg-type]
    for change in changes.to_update:
        store.update_project_member(change.project_id, change.user_id, change.new_role)  # type: ignore[arg-type]
    for change in changes.to_remove:
        store.delete_project_member(change.project_id, change.user_id)  # type: ignore[arg-type]


def apply_workspace_changes(store: RoleStore, workspace_id: str, changes: ChangeSet) -> None:
    """Write workspace membership changes. Must run inside store.transaction()"""
    for change in changes.to_add:
        store.upsert_workspace_member(workspace_id, change.user_id, change.new_role)
    for change in changes.to_update:
        store.update_workspace_member(workspace_id, change.user_id, change.new_role)
    for change in changes.to_remove:
        store.delete_workspace_member(workspace_id, change.user_id)
