# SPDX-FileCopyrightText: 2024 DB Systel GmbH
#
# SPDX-License-Identifier: Apache-2.0

"""Handling the app and workspace configuration"""

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

import yaml
from jsonschema import FormatChecker, validate
from jsonschema.exceptions import ValidationError

from ._cache import DEFAULT_CACHE_TTL_SECONDS, clamp_ttl
from ._gh_api import DEFAULT_API_URL, get_github_secrets_from_env
from ._ranking import RoleMappingPolicy, SyncMode

# Global file with settings for the app, e.g. GitHub App credentials and database
APP_CONFIG_FILE = r"app\.ya?ml"
WORKSPACE_CONFIG_DIR = "workspaces"
WORKSPACE_CONFIG_FILES = r".+\.ya?ml"
DEFAULTS_KEY = "defaults"
DEFAULT_DATABASE_URL = "sqlite:///github-role-sync.db"

_SYNC_MODES = [mode.value for mode in SyncMode]
_PERMISSIONS = ["admin", "maintain", "write", "triage", "read", "push", "pull"]
_PROJECT_ROLES = ["owner", "maintainer", "writer", "reader", "OWNER", "MAINTAINER", "WRITER", "READER"]

# Schemas for config validation
APP_CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "github_app_id": {"type": "integer"},
        "github_app_private_key": {"type": "string"},
        "github_api_url": {"type": "string", "format": "uri"},
        "github_timeout_seconds": {"type": "integer", "minimum": 1},
        "database_url": {"type": "string"},
    },
    "additionalProperties": False,
}
WORKSPACE_SETTINGS_SCHEMA = {
    "type": "object",
    "properties": {
        "github_permission_sync_mode": {"type": "string", "enum": _SYNC_MODES},
        "github_webhook_sync_mode": {"type": "string", "enum": _SYNC_MODES},
        "github_role_mapping": {
            "type": "object",
            "propertyNames": {"enum": _PERMISSIONS},
            "additionalProperties": {"type": "string", "enum": _PROJECT_ROLES},
        },
        "github_cache_ttl_seconds": {"type": "integer", "minimum": 30, "maximum": 86400},
        "github_team_mapping_enabled": {"type": "boolean"},
    },
    "additionalProperties": False,
}
WORKSPACE_CONFIG_SCHEMA = {
    "type": "object",
    "patternProperties": {
        "^[a-zA-Z0-9_\\-]+$": {"oneOf": [{"type": "null"}, WORKSPACE_SETTINGS_SCHEMA]},
    },
    "additionalProperties": False,
    "required": [],
}


def _find_matching_files(
    directory: str, pattern: str, only_one: bool = False, optional: bool = False
) -> list[str]:
    """
    Get all files in a directory matching a regex pattern.

    Args:
    - directory: Path to the directory
    - pattern: Regular expression pattern to match filenames
    - only_one: Whether only the first match shall be returned.
    - optional: Whether it's fine to find nothing

    Returns:
    - List of filenames matching the pattern, sorted by name
    """
    matching_files: list[str] = []

    if not os.path.isdir(directory):
        if not optional:
            logging.error("'%s' is not a valid directory", directory)
        return matching_files

    regex_pattern = re.compile(pattern + "$")
    for file_name in sorted(os.listdir(directory)):
        if regex_pattern.match(file_name):
            file_path = os.path.join(directory, file_name)
            if os.path.isfile(file_path):
                matching_files.append(file_path)
            else:
                logging.warning(
                    "'%s' looks like a file we searched for, but it's not. "
                    "Will not consider its contents",
                    file_path,
                )

    if only_one and len(matching_files) > 1:
        matching_files = [matching_files[0]]
        logging.warning(
            "More than one configuration file for the pattern '%s' found. "
            "Reducing to the first match as wished: %s",
            pattern,
            matching_files[0],
        )

    if not matching_files and not optional:
        logging.error(
            "No configuration file found for '%s' in '%s'. The program might not work as expected!",
            pattern,
            directory,
        )

    return matching_files


def _read_config_file(file: str) -> dict:
    """Return dict of a YAML file"""
    logging.debug("Attempting to parse YAML file %s", file)
    with open(file, encoding="UTF-8") as yamlfile:
        config: dict = yaml.safe_load(yamlfile)

    if not config:
        config = {}

    return config


def _validate_config_schema(file: str, cfg: dict, schema: dict) -> None:
    """Validate the config against a JSON schema"""
    try:
        validate(instance=cfg, schema=schema, format_checker=FormatChecker())
    except ValidationError as e:
        logging.critical("Config validation of file %s failed: %s", file, e.message)
        raise ValueError(e) from None
    logging.debug("Config in file %s validated successfully against schema.", file)


def parse_config_files(path: str) -> tuple[dict, dict[str, dict]]:
    """Parse all relevant files in the configuration directory. Returns a tuple
    of app config and merged workspaces config"""
    cfg_app: dict = {}
    if cfg_app_files := _find_matching_files(path, APP_CONFIG_FILE, only_one=True):
        cfg_app = _read_config_file(cfg_app_files[0])
        _validate_config_schema(file=cfg_app_files[0], cfg=cfg_app, schema=APP_CONFIG_SCHEMA)

    # Workspace settings may be spread over multiple files. Their keys
    # (workspace keys) must not be defined multiple times!
    cfg_workspaces: dict[str, Any] = {}
    for cfg_ws_file in _find_matching_files(
        os.path.join(path, WORKSPACE_CONFIG_DIR), WORKSPACE_CONFIG_FILES, optional=True
    ):
        cfg = _read_config_file(cfg_ws_file)
        _validate_config_schema(file=cfg_ws_file, cfg=cfg, schema=WORKSPACE_CONFIG_SCHEMA)
        if overlap := set(cfg_workspaces.keys()) & set(cfg.keys()):
            logging.critical(
                "The config file '%s' contains keys that are also defined in "
                "other config files. This is disallowed. Affected keys: %s",
                cfg_ws_file,
                ", ".join(sorted(overlap)),
            )
            raise ValueError(f"Workspace keys defined multiple times: {', '.join(sorted(overlap))}")
        cfg_workspaces = cfg_workspaces | {key: value or {} for key, value in cfg.items()}

    return cfg_app, cfg_workspaces


@dataclass
class AppConfig:
    """Credentials and connection settings of the app"""

    github_app_id: str = ""
    github_app_private_key: str = ""
    github_api_url: str = DEFAULT_API_URL
    github_timeout_seconds: int = 10
    database_url: str = DEFAULT_DATABASE_URL

    @classmethod
    def from_config(cls, cfg_app: dict) -> "AppConfig":
        """Build from the parsed app.yaml, environment variables override"""
        return cls(
            github_app_id=get_github_secrets_from_env(
                env_variable="GITHUB_APP_ID", secret=cfg_app.get("github_app_id", "")
            ),
            github_app_private_key=get_github_secrets_from_env(
                env_variable="GITHUB_APP_PRIVATE_KEY",
                secret=cfg_app.get("github_app_private_key", ""),
            ),
            github_api_url=cfg_app.get("github_api_url", DEFAULT_API_URL),
            github_timeout_seconds=cfg_app.get("github_timeout_seconds", 10),
            database_url=os.environ.get("DATABASE_URL")
            or cfg_app.get("database_url", DEFAULT_DATABASE_URL),
        )


@dataclass(frozen=True)
class WorkspaceSettings:
    """Effective GitHub related settings of one workspace"""

    sync_mode: SyncMode = SyncMode.ADD_ONLY
    webhook_sync_mode: SyncMode = SyncMode.ADD_ONLY
    role_mapping: RoleMappingPolicy = field(default_factory=RoleMappingPolicy)
    cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS
    team_mapping_enabled: bool = True

    @classmethod
    def from_config(cls, cfg: dict | None) -> "WorkspaceSettings":
        """Build from the settings dict of one workspace"""
        cfg = cfg or {}
        return cls(
            sync_mode=SyncMode(cfg.get("github_permission_sync_mode", SyncMode.ADD_ONLY.value)),
            webhook_sync_mode=SyncMode(
                cfg.get("github_webhook_sync_mode", SyncMode.ADD_ONLY.value)
            ),
            role_mapping=RoleMappingPolicy.from_config(cfg.get("github_role_mapping")),
            cache_ttl_seconds=clamp_ttl(cfg.get("github_cache_ttl_seconds")),
            team_mapping_enabled=bool(cfg.get("github_team_mapping_enabled", True)),
        )

    def to_dict(self) -> dict:
        """Settings in their configuration file shape"""
        return {
            "github_permission_sync_mode": self.sync_mode.value,
            "github_webhook_sync_mode": self.webhook_sync_mode.value,
            "github_role_mapping": self.role_mapping.as_config(),
            "github_cache_ttl_seconds": self.cache_ttl_seconds,
            "github_team_mapping_enabled": self.team_mapping_enabled,
        }


class SettingsProvider(Protocol):  # pylint: disable=too-few-public-methods
    """Source of the effective settings of a workspace"""

    def get(self, workspace_key: str) -> WorkspaceSettings:
        """Effective settings of the workspace"""


class ConfigSettingsProvider:  # pylint: disable=too-few-public-methods
    """Settings from the workspaces configuration. Values of a workspace
    override those under the `defaults` key, which override the built-in
    defaults"""

    def __init__(self, cfg_workspaces: dict[str, dict] | None = None):
        self.cfg_workspaces = cfg_workspaces or {}

    def get(self, workspace_key: str) -> WorkspaceSettings:
        """Effective settings of the workspace"""
        defaults = self.cfg_workspaces.get(DEFAULTS_KEY) or {}
        own = self.cfg_workspaces.get(workspace_key) or {}
        if not own:
            logging.debug("No settings configured for workspace '%s', using defaults", workspace_key)
        return WorkspaceSettings.from_config(defaults | own)
