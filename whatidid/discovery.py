"""
Repository and pull request discovery for whatidid.

Finds every PR a user merged into an allowed base branch within a date
window. Three strategies implement the DiscoveryStrategy protocol:

- explicit-repos: scan a caller-supplied repo list (supersedes the others)
- global-search: one search query, full PR fetch per hit, cached
- org-sweep: list org repos not covered by search and scan each one

DiscoveryEngine composes them, then dedupes and sorts the results.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Iterable, Protocol, runtime_checkable

from .cache import ResponseCache
from .github import (
    GitHubAPIError,
    GitHubAuthError,
    GitHubClient,
    RateLimitError,
    repo_full_name_from_url,
)
from .models import PullRequest, parse_timestamp


logger = logging.getLogger(__name__)

ALLOWED_BRANCHES = {"main", "master"}
RELEASE_BRANCH_PREFIX = "release/"
SEARCH_CACHE_PREFIX = "merged_prs"


def is_allowed_base_branch(branch: str) -> bool:
    """main, master, or any release/* branch."""
    return branch in ALLOWED_BRANCHES or branch.startswith(RELEASE_BRANCH_PREFIX)


def end_of_day(day: date) -> datetime:
    """Last representable instant of ``day`` in UTC."""
    return datetime.combine(day, time.max, tzinfo=timezone.utc)


@dataclass(frozen=True)
class DateWindow:
    """Inclusive ``[since, until]`` window, ``until`` covering its whole day."""
    since: date
    until: date

    @classmethod
    def parse(cls, since: str, until: str) -> DateWindow:
        return cls(date.fromisoformat(since), date.fromisoformat(until))

    @property
    def start(self) -> datetime:
        return datetime.combine(self.since, time.min, tzinfo=timezone.utc)

    @property
    def end(self) -> datetime:
        return end_of_day(self.until)

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end

    @property
    def merged_qualifier(self) -> str:
        return f"merged:{self.since.isoformat()}..{self.until.isoformat()}"


class ErrorTier(str, Enum):
    """How a failure on a sub-resource is treated."""
    ACCESS_DENIED = "access_denied"  # warn, skip the sub-resource
    NOT_FOUND = "not_found"          # degrade, skip the sub-resource
    FATAL = "fatal"                  # propagate to the caller


def classify_error(error: GitHubAPIError) -> ErrorTier:
    if isinstance(error, (RateLimitError, GitHubAuthError)):
        return ErrorTier.FATAL
    if error.status_code == 403:
        return ErrorTier.ACCESS_DENIED
    return ErrorTier.NOT_FOUND


@dataclass
class SkippedResource:
    """A sub-resource discovery could not read, and why."""
    kind: str  # org, repo, pr
    name: str
    tier: ErrorTier
    reason: str


@dataclass
class DiscoveryResult:
    pull_requests: list[PullRequest] = field(default_factory=list)
    skipped: list[SkippedResource] = field(default_factory=list)


@dataclass
class DiscoveryFilters:
    """Which repositories a run may report on."""
    scope: str = "all"  # all, personal, orgs
    repos: list[str] = field(default_factory=list)
    orgs: list[str] = field(default_factory=list)
    exclude_repos: list[str] = field(default_factory=list)
    skip_org_scan: bool = False
    include_commits: bool = True

    def includes(self, repo_full_name: str, username: str) -> bool:
        """
        Repo membership test.

        Exclude-list first, then the repo/org allow-list (which replaces the
        scope check when present), then scope.
        """
        name = repo_full_name.lower()
        owner = name.split("/")[0]

        if name in {r.lower() for r in self.exclude_repos}:
            return False
        if self.repos:
            return name in {r.lower() for r in self.repos}
        if self.orgs:
            return owner in {o.lower() for o in self.orgs}
        if self.scope == "personal":
            return owner == username.lower()
        if self.scope == "orgs":
            return owner != username.lower()
        return True


@dataclass
class DiscoveryRun:
    """Per-run state shared by the strategies."""
    client: GitHubClient
    username: str
    window: DateWindow
    filters: DiscoveryFilters
    skipped: list[SkippedResource] = field(default_factory=list)

    def skip(self, kind: str, name: str, error: GitHubAPIError) -> None:
        """Record a degraded sub-resource, or re-raise if the error is fatal."""
        tier = classify_error(error)
        if tier is ErrorTier.FATAL:
            raise error
        logger.warning(f"Skipping {kind} {name}: {error}")
        self.skipped.append(SkippedResource(kind=kind, name=name, tier=tier, reason=str(error)))


@runtime_checkable
class DiscoveryStrategy(Protocol):
    """Protocol every discovery strategy satisfies."""

    #: Short identifier used in logs
    name: str

    def discover(self, run: DiscoveryRun, covered: set[str]) -> list[PullRequest]:
        """
        Return merged PRs for ``run``.

        Args:
            run: username, window, filters and the skipped-resource log
            covered: lower-cased repo names earlier strategies already handled
        """
        ...


def _attach_commits(run: DiscoveryRun, pr: PullRequest) -> None:
    if not run.filters.include_commits:
        return
    try:
        pr.commits = run.client.list_pull_commits(pr.repo_full_name, pr.number)
    except GitHubAPIError as e:
        if classify_error(e) is ErrorTier.FATAL:
            raise
        logger.warning(f"Could not fetch commits for {pr.repo_full_name}#{pr.number}: {e}")
        pr.commits = []


def _fetch_merged_pull(run: DiscoveryRun, repo: str, number: int) -> PullRequest | None:
    """Full PR record for a search hit, or None if unmerged or off-branch."""
    try:
        data = run.client.get_pull(repo, number)
    except GitHubAPIError as e:
        run.skip("pr", f"{repo}#{number}", e)
        return None

    if not data.get("merged_at"):
        return None
    if not is_allowed_base_branch((data.get("base") or {}).get("ref", "")):
        return None

    pr = PullRequest.from_api(data, repo)
    _attach_commits(run, pr)
    return pr


def _scan_closed_pulls(run: DiscoveryRun, repo: str) -> list[PullRequest]:
    username = run.username.lower()
    prs = []

    for item in run.client.iter_closed_pulls(repo):
        merged_at = item.get("merged_at")
        if not merged_at:
            continue

        author = ((item.get("user") or {}).get("login") or "").lower()
        if author != username:
            continue

        merged = parse_timestamp(merged_at)
        if merged < run.window.start:
            # Sorted by updated desc, so nothing further back is in range
            break
        if not run.window.contains(merged):
            continue

        if not is_allowed_base_branch((item.get("base") or {}).get("ref", "")):
            continue

        pr = PullRequest.from_api(item, repo)
        _attach_commits(run, pr)
        prs.append(pr)

    return prs


def _search_repository(run: DiscoveryRun, repo: str) -> list[PullRequest]:
    query = f"repo:{repo} author:{run.username} is:pr is:merged {run.window.merged_qualifier}"
    prs = []
    for item in run.client.search_issues(query):
        pr = _fetch_merged_pull(run, repo, item.get("number", 0))
        if pr:
            prs.append(pr)
    return prs


def scan_repository(run: DiscoveryRun, repo: str) -> list[PullRequest]:
    """
    Merged PRs by the run's user in one repository.

    Lists closed PRs newest-first; if that fails for the repo, falls back to a
    per-repo search query. A repo neither path can read is skipped.
    """
    try:
        return _scan_closed_pulls(run, repo)
    except GitHubAPIError as e:
        if classify_error(e) is ErrorTier.FATAL:
            raise
        logger.warning(f"Listing PRs for {repo} failed ({e}); falling back to search")

    try:
        return _search_repository(run, repo)
    except GitHubAPIError as e:
        run.skip("repo", repo, e)
        return []


class ExplicitRepoStrategy:
    """Scan exactly the repos named in the filters."""

    name = "explicit-repos"

    def discover(self, run: DiscoveryRun, covered: set[str]) -> list[PullRequest]:
        prs = []
        for repo in run.filters.repos:
            if not run.filters.includes(repo, run.username):
                continue
            logger.info(f"Scanning {repo}")
            prs.extend(scan_repository(run, repo))
        return prs


class GlobalSearchStrategy:
    """
    One search query across everything the token can see.

    Results are cached unfiltered, keyed on user and window, so one entry
    serves runs with different scope/repo/org filters.
    """

    name = "global-search"

    def __init__(self, cache: ResponseCache | None = None):
        self.cache = cache

    def _cache_params(self, run: DiscoveryRun) -> dict[str, str]:
        return {
            "username": run.username,
            "since": run.window.since.isoformat(),
            "until": run.window.until.isoformat(),
            "type": "search",
        }

    def _from_cache(self, cached: Any) -> list[PullRequest] | None:
        """Rebuild cached PRs; a malformed entry counts as a miss."""
        try:
            prs = [PullRequest.from_dict(data) for data in cached]
            # Fields later stages parse must be well-formed too
            for pr in prs:
                parse_timestamp(pr.merged_at)
                pr.repo_full_name.lower()
            return prs
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.debug(f"Ignoring malformed cached search results: {e}")
            return None

    def _search(self, run: DiscoveryRun) -> list[PullRequest]:
        query = f"author:{run.username} is:pr is:merged {run.window.merged_qualifier}"
        hits = run.client.search_issues(query)
        logger.info(f"Search returned {len(hits)} PRs for {run.username}")

        seen: set[tuple[str, int]] = set()
        prs = []
        for item in hits:
            repo = repo_full_name_from_url(item.get("repository_url", ""))
            number = item.get("number")
            if not repo or number is None or (repo, number) in seen:
                continue
            seen.add((repo, number))

            pr = _fetch_merged_pull(run, repo, number)
            if pr:
                prs.append(pr)
        return prs

    def discover(self, run: DiscoveryRun, covered: set[str]) -> list[PullRequest]:
        params = self._cache_params(run)
        cached = self.cache.get(SEARCH_CACHE_PREFIX, params) if self.cache else None

        prs = self._from_cache(cached) if cached is not None else None
        if prs is not None:
            logger.info(f"Using cached search results ({len(prs)} PRs)")
        else:
            prs = self._search(run)
            if self.cache:
                self.cache.set(SEARCH_CACHE_PREFIX, params, [pr.to_dict() for pr in prs])

        return [pr for pr in prs if run.filters.includes(pr.repo_full_name, run.username)]


class OrgSweepStrategy:
    """
    Scan every repo of the user's organizations that search did not cover.

    Search indexes can lag or omit private/org repos; this trades extra
    requests for completeness.
    """

    name = "org-sweep"

    def _organizations(self, run: DiscoveryRun) -> list[str]:
        if run.filters.orgs:
            return list(run.filters.orgs)
        try:
            return run.client.list_user_orgs()
        except GitHubAPIError as e:
            run.skip("org", "membership", e)
            return []

    def discover(self, run: DiscoveryRun, covered: set[str]) -> list[PullRequest]:
        prs = []
        for org in self._organizations(run):
            try:
                repos = run.client.list_org_repos(org)
            except GitHubAPIError as e:
                run.skip("org", org, e)
                continue

            for repo in repos:
                if repo.full_name.lower() in covered:
                    continue
                if not run.filters.includes(repo.full_name, run.username):
                    continue
                logger.debug(f"Sweeping {repo.full_name}")
                prs.extend(scan_repository(run, repo.full_name))
        return prs


def dedupe_pull_requests(prs: Iterable[PullRequest]) -> list[PullRequest]:
    """First occurrence of each ``(repo_full_name, number)`` wins."""
    seen: set[tuple[str, int]] = set()
    unique = []
    for pr in prs:
        if pr.key in seen:
            continue
        seen.add(pr.key)
        unique.append(pr)
    return unique


class DiscoveryEngine:
    """Runs the configured strategies and merges their output."""

    def __init__(
        self,
        client: GitHubClient,
        cache: ResponseCache | None = None,
        filters: DiscoveryFilters | None = None,
    ):
        self.client = client
        self.cache = cache
        self.filters = filters or DiscoveryFilters()

    def build_strategies(self) -> list[DiscoveryStrategy]:
        if self.filters.repos:
            return [ExplicitRepoStrategy()]

        strategies: list[DiscoveryStrategy] = [GlobalSearchStrategy(self.cache)]
        # Org repos can never pass a personal-scope filter
        if not self.filters.skip_org_scan and self.filters.scope != "personal":
            strategies.append(OrgSweepStrategy())
        return strategies

    def discover(self, username: str, since: str, until: str) -> DiscoveryResult:
        """
        Discover merged PRs by ``username`` between ``since`` and ``until``
        (YYYY-MM-DD, inclusive). Never raises on an empty result.

        Raises:
            RateLimitError, GitHubAuthError: fatal, not degraded
        """
        run = DiscoveryRun(
            client=self.client,
            username=username,
            window=DateWindow.parse(since, until),
            filters=self.filters,
        )

        collected: list[PullRequest] = []
        for strategy in self.build_strategies():
            covered = {pr.repo_full_name.lower() for pr in collected}
            found = strategy.discover(run, covered)
            logger.info(f"{strategy.name}: {len(found)} PRs")
            collected.extend(found)

        prs = dedupe_pull_requests(collected)
        prs.sort(key=lambda pr: pr.merged_datetime)
        return DiscoveryResult(pull_requests=prs, skipped=run.skipped)


def summarize_skipped(skipped: list[SkippedResource]) -> dict[str, int]:
    """Counts of skipped resources by tier, for CLI output."""
    counts: dict[str, int] = {}
    for item in skipped:
        counts[item.tier.value] = counts.get(item.tier.value, 0) + 1
    return counts
