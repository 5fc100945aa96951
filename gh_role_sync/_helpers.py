# SPDX-FileCopyrightText: 2025 DB Systel GmbH
#
# SPDX-License-Identifier: Apache-2.0

"""Helper functions"""

import logging
import sys

from github import GithubException


def configure_logger(verbose: bool = False, debug: bool = False) -> logging.Logger:
    """Set logging options"""
    log = logging.getLogger()
    logging.basicConfig(
        encoding="utf-8",
        format="[%(asctime)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    if debug:
        log.setLevel(logging.DEBUG)
    elif verbose:
        log.setLevel(logging.INFO)
    else:
        log.setLevel(logging.WARNING)

    # Libraries are only interesting when debugging them
    for noisy in ("urllib3", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return log


def log_progress(message: str) -> None:
    """Log progress messages to stderr"""
    # Clear line if no message is given
    if not message:
        sys.stderr.write("\r\033[K")
        sys.stderr.flush()
    else:
        sys.stderr.write(f"\r\033[K⏳ {message}")
        sys.stderr.flush()


def error_message(exc: BaseException) -> str:
    """Short, human readable description of an exception for error lists"""
    if isinstance(exc, GithubException):
        data = exc.data if isinstance(exc.data, dict) else {}
        return f"GitHub API error {exc.status}: {data.get('message') or exc.message or exc}"
    return str(exc) or type(exc).__name__


def dict_to_pretty_string(dictionary: dict, sensible_keys: None | list[str] = None) -> str:
    """Convert a dict to a pretty-printed output"""

    # Censor sensible fields
    def censor_half_string(string: str) -> str:
        """Censor 50% of a string (rounded up)"""
        half1 = int(len(string) / 2)
        half2 = len(string) - half1
        return string[:half1] + "*" * (half2)

    # Work on a copy, the caller's dict must keep its secrets
    dictionary = dict(dictionary)
    for key in sensible_keys or []:
        if value := dictionary.get(key, ""):
            dictionary[key] = censor_half_string(str(value))

    # Print dict nicely
    def pretty(d, indent=0):
        string = ""
        for key, value in d.items():
            string += "  " * indent + str(key) + ":\n"
            if isinstance(value, dict):
                string += pretty(value, indent + 1)
            elif isinstance(value, list):
                for item in value:
                    string += "  " * (indent + 1) + f"- {item}\n"
            else:
                string += "  " * (indent + 1) + str(value) + "\n"

        return string

    return pretty(dictionary)
