# SPDX-FileCopyrightText: 2025 DB Systel GmbH
#
# SPDX-License-Identifier: Apache-2.0

"""Exceptions raised by the role synchronisation"""


class RoleSyncError(Exception):
    """Base class for all errors that abort a complete operation"""


class AuthorizationError(RoleSyncError):
    """The acting user is not allowed to run the operation"""


class NotFoundError(RoleSyncError):
    """A workspace, installation, repository or other entity does not exist"""


class ValidationError(RoleSyncError):
    """Input or configuration is invalid"""


class GithubApiError(RoleSyncError):
    """GitHub refused a call that the whole operation depends on, e.g. the
    installation token exchange"""
