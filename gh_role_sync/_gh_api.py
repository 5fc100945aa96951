# SPDX-FileCopyrightText: 2024 DB Systel GmbH
#
# SPDX-License-Identifier: Apache-2.0

"""
Functions for interacting with the GitHub API
"""

import logging
import os
from collections.abc import Callable
from typing import Any, TypeVar

import requests
from github import Auth, Github, GithubException, GithubRetry, UnknownObjectException
from github.GithubException import RateLimitExceededException
from jwt.exceptions import InvalidKeyError
from requests.adapters import HTTPAdapter

from ._errors import GithubApiError, ValidationError

T = TypeVar("T")

DEFAULT_API_URL = "https://api.github.com"
RETRY_ATTEMPTS = 3
RETRY_BACKOFF_FACTOR = 0.2
# Longest wait for a rate limit reset before the call fails instead
RATE_LIMIT_MAX_WAIT_SECONDS = 60
RATE_LIMIT_SECONDARY_WAIT_SECONDS = 10

COLLABORATORS_QUERY = """
    query($owner: String!, $repo: String!, $cursor: String) {
        repository(owner: $owner, name: $repo) {
            collaborators(first: 100, after: $cursor) {
                edges {
                    node {
                        databaseId
                        login
                    }
                    permission
                }
                pageInfo {
                    endCursor
                    hasNextPage
                }
            }
        }
    }
"""


def get_github_secrets_from_env(env_variable: str, secret: str | int | None) -> str:
    """Get GitHub secrets from config or environment, while environment overrides"""
    if env_variable in os.environ and os.environ[env_variable]:
        logging.debug("GitHub secret taken from environment variable %s", env_variable)
        secret = os.environ[env_variable]
    elif secret:
        logging.debug("GitHub secret taken from app configuration file")

    return str(secret or "")


def is_rate_limit_error(exc: Exception) -> bool:
    """Whether an exception means that GitHub throttled us"""
    if isinstance(exc, RateLimitExceededException):
        return True
    if isinstance(exc, GithubException):
        return exc.status == 429 or "rate limit" in str(exc).lower()
    return False


def is_rate_limit_response(status: int, headers: Any) -> bool:
    """Whether an HTTP response is GitHub throttling a request"""
    if status == 429:
        return True
    return status == 403 and (
        headers.get("X-RateLimit-Remaining") == "0" or "Retry-After" in headers
    )


class RateLimitRecordingRetry(GithubRetry):
    """GithubRetry that keeps a note of every throttled response it retries.
    urllib3 copies the retry object for each attempt, the copies share one
    list of hits"""

    def __init__(self, rate_limit_hits: list[str] | None = None, **kwargs):
        self.rate_limit_hits = [] if rate_limit_hits is None else rate_limit_hits
        super().__init__(**kwargs)

    def new(self, **kw):
        kw["rate_limit_hits"] = self.rate_limit_hits
        return super().new(**kw)

    def increment(  # pylint: disable=too-many-arguments
        self, method=None, url=None, response=None, error=None, _pool=None, _stacktrace=None
    ):
        if response is not None and is_rate_limit_response(response.status, response.headers):
            logging.warning("GitHub rate limit hit on %s %s", method, url)
            self.rate_limit_hits.append(f"HTTP {response.status} rate limit hit")
        return super().increment(method, url, response, error, _pool, _stacktrace)


def report_rate_limits(
    client: Any,
    func: Callable[[], T],
    operation: str,
    rate_limit_warnings: list[str] | None = None,
) -> T:
    """Run a GitHub call of `client`. Retrying is left to the HTTP layer of the
    client. Rate limits it ran into, and a rate limit error that remained after
    its retries, are added to `rate_limit_warnings`"""
    try:
        return func()
    except GithubException as exc:
        if is_rate_limit_error(exc) and rate_limit_warnings is not None:
            rate_limit_warnings.append(f"{operation}: {exc}")
        raise
    finally:
        hits = client.take_rate_limit_hits()
        if rate_limit_warnings is not None:
            rate_limit_warnings.extend(f"{operation}: {hit}" for hit in hits)


def run_graphql_query(  # pylint: disable=too-many-arguments
    session: requests.Session,
    query: str,
    variables: dict,
    token: str,
    api_url: str = DEFAULT_API_URL,
    timeout: int = 10,
) -> dict:
    """Run a query against the GitHub GraphQL API"""
    headers = {"Authorization": f"Bearer {token}"}
    request = session.post(
        f"{api_url}/graphql",
        json={"query": query, "variables": variables},
        headers=headers,
        timeout=timeout,
    )

    # Get JSON result
    json_return: Any = "No valid JSON return"
    try:
        json_return = request.json()
    except requests.exceptions.JSONDecodeError:
        pass

    if request.status_code == 200 and isinstance(json_return, dict):
        if not json_return.get("errors"):
            return json_return
        # GraphQL reports e.g. throttling with a 200 status
        messages = "; ".join(str(error.get("message", error)) for error in json_return["errors"])
        raise GithubException(request.status_code, json_return, dict(request.headers), messages)

    # Debug information in case of errors
    logging.debug(
        "Query failed with HTTP error code '%s' when running this query: %s\nReturn: %s",
        request.status_code,
        query,
        json_return,
    )
    raise GithubException(request.status_code, json_return, dict(request.headers))


class GithubApiClient:
    """Thin client for the handful of GitHub calls the role sync needs. All
    methods return plain dicts so that they can be cached as JSON"""

    def __init__(self, api_url: str = DEFAULT_API_URL, timeout: int = 10):
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.rate_limit_hits: list[str] = []
        # Shared by PyGithub and the plain requests of the GraphQL and token calls
        self.retry = RateLimitRecordingRetry(
            rate_limit_hits=self.rate_limit_hits,
            total=RETRY_ATTEMPTS - 1,
            backoff_factor=RETRY_BACKOFF_FACTOR,
            status_forcelist=[429, *range(500, 600)],
            secondary_rate_wait=RATE_LIMIT_SECONDARY_WAIT_SECONDS,
            max_rate_limit_wait=RATE_LIMIT_MAX_WAIT_SECONDS,
            raise_on_status=False,
        )
        self.session = requests.Session()
        adapter = HTTPAdapter(max_retries=self.retry)
        self.session.mount("https://", adapter)
        self.session.mount("http://", adapter)
        self._sessions: dict[str, Github] = {}

    def _gh(self, token: str) -> Github:
        """Get a PyGithub instance for an installation token"""
        if token not in self._sessions:
            self._sessions[token] = Github(
                auth=Auth.Token(token),
                base_url=self.api_url,
                timeout=self.timeout,
                per_page=100,
                retry=self.retry,
            )
        return self._sessions[token]

    def take_rate_limit_hits(self) -> list[str]:
        """Rate limit hits noted since the last call, and forget them"""
        hits = list(self.rate_limit_hits)
        self.rate_limit_hits.clear()
        return hits

    def issue_github_app_jwt(self, app_id: str | int, private_key: str) -> str:
        """Create the short-lived JWT that authenticates the GitHub App itself"""
        try:
            return Auth.AppAuth(app_id=app_id, private_key=private_key).create_jwt()
        except (InvalidKeyError, ValueError) as exc:
            raise ValidationError(f"Invalid private key provided for GitHub App: {exc}") from exc

    def issue_installation_access_token(self, jwt: str, installation_id: int) -> str:
        """Exchange the app JWT for an installation access token"""
        logging.debug("Getting access token for installation %s", installation_id)
        try:
            request = self.session.post(
                f"{self.api_url}/app/installations/{installation_id}/access_tokens",
                headers={
                    "Authorization": f"Bearer {jwt}",
                    "Accept": "application/vnd.github+json",
                },
                timeout=self.timeout,
            )
        except (GithubException, requests.exceptions.RequestException) as exc:
            raise GithubApiError(
                f"Could not get an access token for installation {installation_id}: {exc}"
            ) from exc

        if request.status_code != 201:
            raise GithubApiError(
                f"Could not get an access token for installation {installation_id}: "
                f"HTTP {request.status_code} {request.text}"
            )
        return request.json()["token"]

    def list_repository_collaborators_with_permissions(
        self, token: str, owner: str, repo: str
    ) -> list[dict]:
        """All collaborators of a repository with their effective permission,
        using the GraphQL API with pagination"""
        collaborators: list[dict] = []
        variables: dict[str, Any] = {"owner": owner, "repo": repo, "cursor": None}
        has_next_page = True
        while has_next_page:
            logging.debug("Requesting collaborators for %s/%s", owner, repo)
            result = run_graphql_query(
                self.session,
                COLLABORATORS_QUERY,
                variables,
                token,
                api_url=self.api_url,
                timeout=self.timeout,
            )
            data = (result.get("data") or {}).get("repository")
            if data is None:
                raise GithubException(404, result, None, f"Repository {owner}/{repo} not found")

            for edge in data["collaborators"]["edges"] or []:
                node = edge.get("node") or {}
                collaborators.append(
                    {
                        "id": node.get("databaseId"),
                        "login": node.get("login"),
                        "permission": str(edge.get("permission") or "").lower(),
                    }
                )

            page_info = data["collaborators"]["pageInfo"]
            has_next_page = page_info["hasNextPage"]
            variables["cursor"] = page_info["endCursor"]

        return collaborators

    def list_repository_teams(self, token: str, owner: str, repo: str) -> list[dict]:
        """Teams with access to a repository and their permission on it"""
        repository = self._gh(token).get_repo(f"{owner}/{repo}", lazy=True)
        # Repository teams always belong to the organisation owning the repo
        return [
            {
                "team_id": team.id,
                "team_slug": team.slug,
                "org_login": owner,
                "permission": team.permission,
            }
            for team in repository.get_teams()
        ]

    def list_team_members(self, token: str, org_login: str, team_slug: str) -> list[dict]:
        """Members of an organisation team"""
        team = self._gh(token).get_organization(org_login).get_team_by_slug(team_slug)
        return [{"id": member.id, "login": member.login} for member in team.get_members()]

    def get_github_user_by_login(self, token: str, login: str) -> dict | None:
        """Look up a GitHub user, None if the login does not exist"""
        try:
            user = self._gh(token).get_user(login)
        except UnknownObjectException:
            logging.debug("GitHub user '%s' does not exist", login)
            return None
        return {"id": user.id, "login": user.login}
