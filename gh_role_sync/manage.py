# SPDX-FileCopyrightText: 2024 DB Systel GmbH
#
# SPDX-License-Identifier: Apache-2.0

"""Synchronise workspace and project roles with GitHub permissions and team memberships"""

import argparse
import logging
import sys
import uuid
from dataclasses import asdict

from . import __version__
from ._access import SYSTEM_CLI_ACTOR, Actor
from ._admin import (
    create_github_team_mapping,
    delete_github_team_mapping,
    get_github_cache_status,
    get_github_permission_status,
    link_github_user,
    list_github_team_mappings,
    list_github_user_links,
    set_github_team_mapping_enabled,
    unlink_github_user,
)
from ._apply import StoreAuditRecorder
from ._config import AppConfig, ConfigSettingsProvider, parse_config_files
from ._errors import NotFoundError, RoleSyncError
from ._gh_api import GithubApiClient
from ._helpers import configure_logger, dict_to_pretty_string, log_progress
from ._ranking import SyncMode
from ._stats import print_plain
from ._store import RoleStore, create_session_factory
from ._sync import SyncDeps, get_github_permission_preview, sync_github_permissions
from ._team_mapping import apply_github_team_mappings

# Main parser with root-level flags
parser = argparse.ArgumentParser(
    description=__doc__, formatter_class=argparse.ArgumentDefaultsHelpFormatter
)
parser.add_argument("--version", action="version", version="GitHub Role Sync " + __version__)

# Initiate first-level subcommands
subparsers = parser.add_subparsers(dest="command", help="Available commands", required=True)

# Common flags, usable for all effective subcommands
common_flags = argparse.ArgumentParser(add_help=False)  # No automatic help to avoid duplication
common_flags.add_argument("-v", "--verbose", action="store_true", help="Get INFO logging output")
common_flags.add_argument("-vv", "--debug", action="store_true", help="Get DEBUG logging output")
common_flags.add_argument(
    "-c",
    "--config",
    required=True,
    help="Path to the directory in which the app and workspace configuration is located",
)
common_flags.add_argument(
    "-o",
    "--output",
    help="Output format for report",
    choices=["json", "text"],
    default="text",
)

# Flags for commands acting on a workspace
workspace_flags = argparse.ArgumentParser(add_help=False)
workspace_flags.add_argument("-w", "--workspace", required=True, help="Key of the workspace")
workspace_flags.add_argument(
    "--as-user",
    help="Act as this internal user, who must be workspace admin. Default: trusted system actor",
)

# Init DB
subparsers.add_parser(
    "init-db", help="Create the database tables if they do not exist", parents=[common_flags]
)

# Sync
parser_sync = subparsers.add_parser(
    "sync",
    help="Synchronise project roles with the permissions on linked GitHub repositories",
    parents=[common_flags, workspace_flags],
)
parser_sync.add_argument("--dry", action="store_true", help="Do not make any changes to roles")
parser_sync.add_argument(
    "-r",
    "--repo",
    action="append",
    dest="repos",
    help="Only sync this repository (owner/name). Can be used multiple times",
)
parser_sync.add_argument("--project-prefix", help="Only sync projects whose key has this prefix")
parser_sync.add_argument(
    "--mode",
    choices=[mode.value for mode in SyncMode],
    help="Override the sync mode configured for the workspace",
)
parser_sync.add_argument("--correlation-id", help="ID to find this run in the audit log")

# Preview
parser_preview = subparsers.add_parser(
    "preview",
    help="Show computed permissions of one repository without changing anything",
    parents=[common_flags, workspace_flags],
)
parser_preview.add_argument("-r", "--repo", required=True, help="Repository (owner/name)")

# Apply team mappings
parser_teams = subparsers.add_parser(
    "apply-team-mappings",
    help="Grant roles to the members of mapped GitHub teams",
    parents=[common_flags, workspace_flags],
)
parser_teams.add_argument(
    "--installation-id",
    type=int,
    help="GitHub App installation. Default: the one connected to the workspace",
)
parser_teams.add_argument("--event-type", default="manual", help="Triggering event")
parser_teams.add_argument("--correlation-id", help="ID to find this run in the audit log")

# Status
subparsers.add_parser(
    "cache-status",
    help="Show size and age of the GitHub caches",
    parents=[common_flags, workspace_flags],
)
subparsers.add_parser(
    "status",
    help="Show effective GitHub settings and the last sync",
    parents=[common_flags, workspace_flags],
)

# User links
parser_link = subparsers.add_parser(
    "link-user", help="Link a user to a GitHub login", parents=[common_flags, workspace_flags]
)
parser_link.add_argument("-u", "--user", required=True, help="Internal user ID")
parser_link.add_argument("-l", "--login", required=True, help="GitHub login")
parser_unlink = subparsers.add_parser(
    "unlink-user", help="Remove the GitHub link of a user", parents=[common_flags, workspace_flags]
)
parser_unlink.add_argument("-u", "--user", required=True, help="Internal user ID")
subparsers.add_parser(
    "list-user-links", help="List GitHub user links", parents=[common_flags, workspace_flags]
)

# Team mappings
parser_add_mapping = subparsers.add_parser(
    "add-team-mapping",
    help="Grant members of a GitHub team a workspace or project role",
    parents=[common_flags, workspace_flags],
)
parser_add_mapping.add_argument("--team-id", required=True, help="Numeric GitHub team ID")
parser_add_mapping.add_argument("--org", required=True, help="GitHub organisation login")
parser_add_mapping.add_argument("--team-slug", required=True, help="Slug of the GitHub team")
parser_add_mapping.add_argument(
    "--target-type", required=True, choices=["workspace", "project"], help="What to grant a role in"
)
parser_add_mapping.add_argument(
    "--target-key", required=True, help="Workspace key, or key of the project"
)
parser_add_mapping.add_argument(
    "--role",
    required=True,
    help="OWNER/ADMIN/MEMBER for workspaces, OWNER/MAINTAINER/WRITER/READER for projects",
)
parser_add_mapping.add_argument("--priority", type=int, default=100, help="Lower runs first")
parser_add_mapping.add_argument(
    "--installation-id", help="Only apply for this installation. Default: any"
)
parser_add_mapping.add_argument(
    "--disabled", action="store_true", help="Create the mapping in disabled state"
)
subparsers.add_parser(
    "list-team-mappings", help="List GitHub team mappings", parents=[common_flags, workspace_flags]
)
parser_remove_mapping = subparsers.add_parser(
    "remove-team-mapping", help="Delete a GitHub team mapping", parents=[common_flags, workspace_flags]
)
parser_remove_mapping.add_argument("--id", required=True, help="ID of the mapping")
parser_toggle_mapping = subparsers.add_parser(
    "set-team-mapping-enabled",
    help="Enable or disable a GitHub team mapping",
    parents=[common_flags, workspace_flags],
)
parser_toggle_mapping.add_argument("--id", required=True, help="ID of the mapping")
parser_toggle_mapping_state = parser_toggle_mapping.add_mutually_exclusive_group(required=True)
parser_toggle_mapping_state.add_argument("--enable", action="store_true", dest="enabled")
parser_toggle_mapping_state.add_argument("--disable", action="store_false", dest="enabled")


def run_command(args: argparse.Namespace, deps: SyncDeps) -> None:  # pylint: disable=too-many-branches
    """Execute a workspace command and print its result"""
    actor = Actor(user_id=args.as_user) if args.as_user else SYSTEM_CLI_ACTOR

    if args.command == "sync":
        log_progress("Synchronising GitHub permissions...")
        if args.dry:
            logging.info("Dry-run mode activated, will not make any changes to roles")
        result = sync_github_permissions(
            deps,
            actor,
            args.workspace,
            dry_run=args.dry,
            repos=args.repos,
            project_key_prefix=args.project_prefix,
            mode_override=args.mode,
            correlation_id=args.correlation_id or str(uuid.uuid4()),
        )
        log_progress("")  # clear progress
        result.print_changes(output=args.output)

    elif args.command == "preview":
        log_progress("Computing permissions...")
        preview = get_github_permission_preview(deps, actor, args.workspace, args.repo)
        log_progress("")
        preview.print_changes(output=args.output)

    elif args.command == "apply-team-mappings":
        store = RoleStore(deps.session)
        workspace = store.get_workspace_by_key(args.workspace)
        installation_id = args.installation_id or store.get_installation_id(workspace.id)
        if installation_id is None:
            raise NotFoundError("GitHub installation is not connected for this workspace.")
        log_progress("Applying GitHub team mappings...")
        team_result = apply_github_team_mappings(
            deps,
            workspace.id,
            installation_id,
            args.event_type,
            correlation_id=args.correlation_id or str(uuid.uuid4()),
            actor=actor,
        )
        log_progress("")
        team_result.print_changes(output=args.output)

    elif args.command == "cache-status":
        print_plain(get_github_cache_status(deps, actor, args.workspace), args.output)
    elif args.command == "status":
        print_plain(get_github_permission_status(deps, actor, args.workspace), args.output)
    elif args.command == "link-user":
        print_plain(link_github_user(deps, actor, args.workspace, args.user, args.login), args.output)
    elif args.command == "unlink-user":
        print_plain(unlink_github_user(deps, actor, args.workspace, args.user), args.output)
    elif args.command == "list-user-links":
        print_plain(list_github_user_links(deps, actor, args.workspace), args.output)
    elif args.command == "add-team-mapping":
        mapping = create_github_team_mapping(
            deps,
            actor,
            args.workspace,
            github_team_id=args.team_id,
            github_org_login=args.org,
            github_team_slug=args.team_slug,
            target_type=args.target_type,
            target_key=args.target_key,
            role=args.role,
            priority=args.priority,
            enabled=not args.disabled,
            provider_installation_id=args.installation_id,
        )
        print_plain(mapping, args.output)
    elif args.command == "list-team-mappings":
        print_plain(list_github_team_mappings(deps, actor, args.workspace), args.output)
    elif args.command == "remove-team-mapping":
        print_plain(delete_github_team_mapping(deps, actor, args.workspace, args.id), args.output)
    elif args.command == "set-team-mapping-enabled":
        print_plain(
            set_github_team_mapping_enabled(deps, actor, args.workspace, args.id, args.enabled),
            args.output,
        )


def main():
    """Main function"""

    # Process arguments
    args = parser.parse_args()

    configure_logger(verbose=args.verbose, debug=args.debug)

    # Parse configuration folder
    cfg_app, cfg_workspaces = parse_config_files(args.config)
    app = AppConfig.from_config(cfg_app)
    logging.debug(
        "App configuration:\n%s",
        dict_to_pretty_string(asdict(app), sensible_keys=["github_app_private_key", "database_url"]),
    )

    session_factory = create_session_factory(app.database_url)
    if args.command == "init-db":
        print("Database is ready")
        return

    with session_factory() as session:
        deps = SyncDeps(
            session=session,
            client=GithubApiClient(api_url=app.github_api_url, timeout=app.github_timeout_seconds),
            settings=ConfigSettingsProvider(cfg_workspaces),
            recorder=StoreAuditRecorder(session_factory),
            app_id=app.github_app_id,
            app_private_key=app.github_app_private_key,
        )
        try:
            run_command(args, deps)
        except RoleSyncError as exc:
            log_progress("")
            logging.critical("%s", exc)
            sys.exit(1)
