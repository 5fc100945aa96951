# SPDX-FileCopyrightText: 2024 DB Systel GmbH
#
# SPDX-License-Identifier: Apache-2.0

"""Global init file"""

from importlib.metadata import version

__version__ = version("github-role-sync")
