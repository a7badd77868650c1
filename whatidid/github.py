"""
GitHub REST API client for whatidid.

Paginated request layer over ``requests``:
- Link-header cursor pagination
- Minimum interval between requests (shared Throttle)
- Rate-limit backoff driven by X-RateLimit-Reset, bounded retries
- Typed errors carrying status code and endpoint
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Iterator

import requests

from . import __version__
from .models import Commit, Repository
from .ratelimit import Throttle, backoff_seconds, is_rate_limited


logger = logging.getLogger(__name__)

GITHUB_API_BASE = "https://api.github.com"
DEFAULT_PER_PAGE = 100
MAX_RETRIES = 3
RETRY_DELAY = 1.0

_LINK_RE = re.compile(r'<([^>]+)>;\s*rel="([^"]+)"')
_REPO_URL_RE = re.compile(r"repos/([^/]+)/([^/]+)$")


class GitHubAPIError(Exception):
    """Error from GitHub API."""
    def __init__(self, message: str, status_code: int | None = None, endpoint: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint


class RateLimitError(GitHubAPIError):
    """Rate limit still exceeded after the retry ceiling."""
    def __init__(self, endpoint: str | None = None, reset_time: int | None = None, status_code: int = 403):
        super().__init__("GitHub API rate limit exceeded", status_code, endpoint)
        self.reset_time = reset_time


class GitHubAuthError(GitHubAPIError):
    """Token missing, invalid or expired."""


def parse_link_header(header: str | None) -> dict[str, str]:
    """Parse an RFC 5988 Link header into ``{rel: url}``."""
    if not header:
        return {}
    links = {}
    for part in header.split(","):
        match = _LINK_RE.search(part)
        if match:
            url, rel = match.groups()
            links[rel] = url
    return links


def repo_full_name_from_url(repository_url: str) -> str | None:
    """Extract ``owner/name`` from an API ``repository_url``."""
    match = _REPO_URL_RE.search(repository_url or "")
    if not match:
        return None
    return f"{match.group(1)}/{match.group(2)}"


def _error_message(response: requests.Response) -> str:
    """Best-effort human-readable message from an error response."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return f"GitHub API error: {body['message']}"
    return f"GitHub API error: {response.status_code} {response.reason or ''}".rstrip()


class GitHubClient:
    """GitHub REST API client with pagination and rate limit handling."""

    def __init__(self, token: str, throttle: Throttle | None = None):
        self.token = token
        self.throttle = throttle or Throttle()
        self.session = requests.Session()

        self.session.headers["Authorization"] = f"Bearer {self.token}"
        self.session.headers["Accept"] = "application/vnd.github.v3+json"
        self.session.headers["User-Agent"] = f"whatidid/{__version__}"

    def _sleep(self, seconds: float) -> None:
        time.sleep(seconds)

    def request(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        method: str = "GET",
    ) -> tuple[Any, dict[str, str]]:
        """
        Make an API request, returning ``(payload, pagination_links)``.

        Args:
            endpoint: Path under the API base, or an absolute URL (next-page links)
            params: Query parameters

        Raises:
            RateLimitError: still throttled after MAX_RETRIES attempts
            GitHubAuthError: 401
            GitHubAPIError: any other non-2xx response or transport failure
        """
        url = endpoint if endpoint.startswith("http") else f"{GITHUB_API_BASE}{endpoint}"

        for attempt in range(MAX_RETRIES):
            self.throttle.wait()
            try:
                response = self.session.request(method, url, params=params)
            except requests.RequestException as e:
                if attempt < MAX_RETRIES - 1:
                    self._sleep(RETRY_DELAY * (attempt + 1))
                    continue
                raise GitHubAPIError(f"Request failed: {e}", endpoint=endpoint) from e

            if is_rate_limited(response.status_code, response.headers):
                reset = response.headers.get("X-RateLimit-Reset")
                if attempt < MAX_RETRIES - 1:
                    wait = backoff_seconds(response.headers)
                    logger.warning(
                        f"Rate limited on {endpoint} (attempt {attempt + 1}/{MAX_RETRIES}); "
                        f"waiting {wait:.0f}s"
                    )
                    self._sleep(wait)
                    continue
                raise RateLimitError(
                    endpoint=endpoint,
                    reset_time=int(reset) if reset and reset.isdigit() else None,
                    status_code=response.status_code,
                )

            if response.status_code == 401:
                raise GitHubAuthError(_error_message(response), 401, endpoint)

            if response.status_code >= 400:
                raise GitHubAPIError(_error_message(response), response.status_code, endpoint)

            links = parse_link_header(response.headers.get("Link"))
            if response.status_code == 204 or not response.content:
                return None, links
            return response.json(), links

        raise GitHubAPIError("Max retries exceeded", endpoint=endpoint)

    def iter_pages(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        items_key: str | None = None,
    ) -> Iterator[dict[str, Any]]:
        """
        Iterate items across pages, following ``rel="next"`` links.

        Lazy: a caller that stops iterating stops fetching further pages.
        ``items_key`` selects the result array in object payloads (search).
        """
        params = dict(params or {})
        params.setdefault("per_page", DEFAULT_PER_PAGE)

        next_url: str | None = endpoint
        next_params: dict[str, Any] | None = params
        while next_url:
            payload, links = self.request(next_url, params=next_params)
            items = payload.get(items_key, []) if items_key and isinstance(payload, dict) else payload
            for item in items or []:
                yield item
            next_url = links.get("next")
            # next links already carry the query string
            next_params = None

    def fetch_all_pages(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        items_key: str | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch and concatenate every page of a paginated endpoint."""
        return list(self.iter_pages(endpoint, params, items_key=items_key))

    def search_issues(self, query: str) -> list[dict[str, Any]]:
        """Run an issue/PR search query, returning all hits."""
        return self.fetch_all_pages("/search/issues", {"q": query}, items_key="items")

    def get_pull(self, repo: str, number: int) -> dict[str, Any]:
        payload, _ = self.request(f"/repos/{repo}/pulls/{number}")
        return payload

    def iter_closed_pulls(self, repo: str) -> Iterator[dict[str, Any]]:
        """Closed PRs for a repo, most recently updated first."""
        return self.iter_pages(
            f"/repos/{repo}/pulls",
            {"state": "closed", "sort": "updated", "direction": "desc"},
        )

    def list_pull_commits(self, repo: str, number: int) -> list[Commit]:
        commits = []
        for item in self.iter_pages(f"/repos/{repo}/pulls/{number}/commits"):
            commit = item.get("commit") or {}
            author = commit.get("author") or {}
            commits.append(Commit(
                sha=item.get("sha", ""),
                message=commit.get("message", ""),
                author=author.get("name", ""),
                date=author.get("date", ""),
            ))
        return commits

    def list_user_orgs(self) -> list[str]:
        """Logins of organizations the authenticated user belongs to."""
        return [org.get("login", "") for org in self.iter_pages("/user/orgs") if org.get("login")]

    def list_org_repos(self, org: str) -> list[Repository]:
        return [Repository.from_api(item) for item in self.iter_pages(f"/orgs/{org}/repos", {"type": "all"})]

