# SPDX-FileCopyrightText: 2025 DB Systel GmbH
#
# SPDX-License-Identifier: Apache-2.0

"""Who is acting, and whether they may"""

import logging
from dataclasses import dataclass

from ._errors import AuthorizationError
from ._ranking import WorkspaceRole
from ._store import RoleStore


@dataclass(frozen=True)
class Actor:
    """The user or system component on whose behalf an operation runs"""

    user_id: str
    is_system: bool = False


SYSTEM_WEBHOOK_ACTOR = Actor(user_id="system:github-webhook", is_system=True)
SYSTEM_CLI_ACTOR = Actor(user_id="system:cli", is_system=True)


def assert_workspace_admin(store: RoleStore, actor: Actor, workspace_id: str) -> None:
    """Raise AuthorizationError unless the actor is a workspace OWNER or ADMIN.
    System actors are trusted"""
    if actor.is_system:
        return

    role = store.get_workspace_role(workspace_id, actor.user_id)
    if role not in (WorkspaceRole.OWNER, WorkspaceRole.ADMIN):
        logging.warning(
            "User '%s' (role: %s) tried to run an admin operation in workspace %s",
            actor.user_id,
            role.value if role else "none",
            workspace_id,
        )
        raise AuthorizationError("Workspace admin role is required for this operation.")
