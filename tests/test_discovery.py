from __future__ import annotations

from datetime import date

import pytest

from whatidid.cache import ResponseCache
from whatidid.discovery import (
    DateWindow,
    DiscoveryEngine,
    DiscoveryFilters,
    DiscoveryRun,
    DiscoveryStrategy,
    ErrorTier,
    ExplicitRepoStrategy,
    GlobalSearchStrategy,
    OrgSweepStrategy,
    dedupe_pull_requests,
    end_of_day,
    is_allowed_base_branch,
    scan_repository,
)
from whatidid.github import GitHubAPIError, RateLimitError
from whatidid.models import Commit, PullRequest, Repository, parse_timestamp


SINCE = "2024-03-01"
UNTIL = "2024-03-31"


def pr_item(number, merged_at="2024-03-10T12:00:00Z", author="alice", base="main",
            repo="a/b", created_at="2024-03-05T09:00:00Z"):
    return {
        "number": number,
        "title": f"PR {number}",
        "body": None,
        "html_url": f"https://github.com/{repo}/pull/{number}",
        "user": {"login": author},
        "base": {"ref": base},
        "created_at": created_at,
        "merged_at": merged_at,
    }


def search_hit(repo, number):
    return {"number": number, "repository_url": f"https://api.github.com/repos/{repo}"}


def repository(full_name):
    owner, name = full_name.split("/")
    return Repository(id=1, name=name, full_name=full_name, owner=owner,
                      url=f"https://github.com/{full_name}", default_branch="main")


class FakeClient:
    """In-memory stand-in for GitHubClient."""

    def __init__(self, pulls=None, details=None, search=None, orgs=None, org_repos=None,
                 failing_repos=None, orgs_error=None, search_error=None):
        self.pulls = pulls or {}
        self.details = details or {}
        self.search = search or {}
        self.orgs = orgs or []
        self.org_repos = org_repos or {}
        self.failing_repos = failing_repos or {}
        self.orgs_error = orgs_error
        self.search_error = search_error
        self.queries = []
        self.consumed = []

    def iter_closed_pulls(self, repo):
        if repo in self.failing_repos:
            raise self.failing_repos[repo]
        for item in self.pulls.get(repo, []):
            self.consumed.append((repo, item["number"]))
            yield item

    def search_issues(self, query):
        self.queries.append(query)
        if self.search_error:
            raise self.search_error
        return self.search.get(query, [])

    def get_pull(self, repo, number):
        if (repo, number) not in self.details:
            raise GitHubAPIError("GitHub API error: Not Found", 404, f"/repos/{repo}/pulls/{number}")
        return self.details[(repo, number)]

    def list_pull_commits(self, repo, number):
        return [Commit(sha=f"sha{number}", message=f"commit for {number}", author="Alice", date="2024-03-01")]

    def list_user_orgs(self):
        if self.orgs_error:
            raise self.orgs_error
        return self.orgs

    def list_org_repos(self, org):
        return [repository(name) for name in self.org_repos.get(org, [])]


def make_run(client, filters=None, username="alice"):
    return DiscoveryRun(
        client=client,
        username=username,
        window=DateWindow.parse(SINCE, UNTIL),
        filters=filters or DiscoveryFilters(),
    )


def global_query(username="alice"):
    return f"author:{username} is:pr is:merged merged:{SINCE}..{UNTIL}"


def repo_query(repo, username="alice"):
    return f"repo:{repo} author:{username} is:pr is:merged merged:{SINCE}..{UNTIL}"


# --- predicates ---------------------------------------------------------


@pytest.mark.parametrize("branch,allowed", [
    ("main", True),
    ("master", True),
    ("release/9.2", True),
    ("feature/x", False),
    ("develop", False),
    ("releases/1.0", False),
    ("Main", False),
])
def test_is_allowed_base_branch(branch, allowed):
    assert is_allowed_base_branch(branch) is allowed


def test_window_until_covers_whole_day():
    window = DateWindow.parse(SINCE, UNTIL)

    assert window.contains(parse_timestamp("2024-03-31T23:59:59Z"))
    assert not window.contains(parse_timestamp("2024-04-01T00:00:00Z"))
    assert window.contains(parse_timestamp("2024-03-01T00:00:00Z"))
    assert not window.contains(parse_timestamp("2024-02-29T23:59:59Z"))
    assert end_of_day(date(2024, 3, 31)).hour == 23


def test_window_merged_qualifier():
    assert DateWindow.parse(SINCE, UNTIL).merged_qualifier == "merged:2024-03-01..2024-03-31"


def test_filters_exclude_wins():
    filters = DiscoveryFilters(repos=["a/b"], exclude_repos=["A/B"])
    assert filters.includes("a/b", "alice") is False


def test_filters_scope():
    personal = DiscoveryFilters(scope="personal")
    orgs = DiscoveryFilters(scope="orgs")

    assert personal.includes("Alice/tool", "alice") is True
    assert personal.includes("acme/api", "alice") is False
    assert orgs.includes("alice/tool", "alice") is False
    assert orgs.includes("acme/api", "alice") is True
    assert DiscoveryFilters().includes("anything/at-all", "alice") is True


def test_filters_allow_list_overrides_scope():
    filters = DiscoveryFilters(scope="personal", repos=["acme/api"])
    assert filters.includes("acme/api", "alice") is True
    assert filters.includes("alice/tool", "alice") is False

    by_org = DiscoveryFilters(scope="personal", orgs=["ACME"])
    assert by_org.includes("acme/web", "alice") is True
    assert by_org.includes("other/web", "alice") is False


# --- per-repo scan ------------------------------------------------------


def test_scan_repository_applies_filters():
    client = FakeClient(pulls={"a/b": [
        pr_item(1),
        pr_item(2, merged_at=None),
        pr_item(3, author="bob"),
        pr_item(4, author="ALICE"),
        pr_item(5, base="feature/x"),
        pr_item(6, base="release/9.2"),
        pr_item(7, merged_at="2024-04-01T00:00:00Z"),
        pr_item(8, merged_at="2024-03-31T23:59:59Z"),
    ]})

    prs = scan_repository(make_run(client), "a/b")

    assert [pr.number for pr in prs] == [1, 4, 6, 8]
    assert all(pr.merged_at for pr in prs)
    assert prs[0].repo_name == "b"
    assert prs[0].commits[0].sha == "sha1"


def test_scan_repository_stops_at_first_pr_before_since():
    client = FakeClient(pulls={"a/b": [
        pr_item(1),
        pr_item(2, merged_at="2024-02-01T00:00:00Z"),
        pr_item(3),
    ]})

    prs = scan_repository(make_run(client), "a/b")

    assert [pr.number for pr in prs] == [1]
    assert ("a/b", 3) not in client.consumed


def test_scan_repository_is_idempotent():
    client = FakeClient(pulls={"a/b": [pr_item(3), pr_item(1), pr_item(2)]})

    first = scan_repository(make_run(client), "a/b")
    second = scan_repository(make_run(client), "a/b")

    assert [pr.to_dict() for pr in first] == [pr.to_dict() for pr in second]


def test_scan_repository_skips_commits_when_disabled():
    client = FakeClient(pulls={"a/b": [pr_item(1)]})

    prs = scan_repository(make_run(client, DiscoveryFilters(include_commits=False)), "a/b")

    assert prs[0].commits == []


def test_scan_repository_falls_back_to_search():
    client = FakeClient(
        failing_repos={"a/b": GitHubAPIError("GitHub API error: Not Found", 404)},
        search={repo_query("a/b"): [search_hit("a/b", 9)]},
        details={("a/b", 9): pr_item(9)},
    )
    run = make_run(client)

    prs = scan_repository(run, "a/b")

    assert [pr.number for pr in prs] == [9]
    assert client.queries == [repo_query("a/b")]
    assert run.skipped == []


def test_scan_repository_skips_unreadable_repo():
    client = FakeClient(
        failing_repos={"a/b": GitHubAPIError("forbidden", 403)},
        search_error=GitHubAPIError("Validation Failed", 422),
    )
    run = make_run(client)

    assert scan_repository(run, "a/b") == []
    assert len(run.skipped) == 1
    assert run.skipped[0].kind == "repo"
    assert run.skipped[0].tier is ErrorTier.NOT_FOUND


def test_scan_repository_rate_limit_is_fatal():
    client = FakeClient(failing_repos={"a/b": RateLimitError("/repos/a/b/pulls")})

    with pytest.raises(RateLimitError):
        scan_repository(make_run(client), "a/b")

    assert client.queries == []


# --- strategies ---------------------------------------------------------


def test_strategies_satisfy_protocol():
    for strategy in (ExplicitRepoStrategy(), GlobalSearchStrategy(), OrgSweepStrategy()):
        assert isinstance(strategy, DiscoveryStrategy)


def test_global_search_fetches_and_filters_branches():
    client = FakeClient(
        search={global_query(): [
            search_hit("a/b", 1),
            search_hit("a/b", 1),
            search_hit("c/d", 2),
            search_hit("c/d", 3),
        ]},
        details={
            ("a/b", 1): pr_item(1),
            ("c/d", 2): pr_item(2, repo="c/d", base="feature/x"),
        },
    )
    run = make_run(client)

    prs = GlobalSearchStrategy().discover(run, set())

    assert [pr.key for pr in prs] == [("a/b", 1)]
    # c/d#3 could not be fetched
    assert [s.name for s in run.skipped] == ["c/d#3"]
    assert run.skipped[0].tier is ErrorTier.NOT_FOUND


def test_global_search_uses_cache(tmp_path):
    cache = ResponseCache(cache_dir=tmp_path)
    client = FakeClient(
        search={global_query(): [search_hit("alice/tool", 1), search_hit("acme/api", 2)]},
        details={
            ("alice/tool", 1): pr_item(1, repo="alice/tool"),
            ("acme/api", 2): pr_item(2, repo="acme/api"),
        },
    )
    first = GlobalSearchStrategy(cache).discover(make_run(client), set())
    assert {pr.repo_full_name for pr in first} == {"alice/tool", "acme/api"}

    offline = FakeClient(search_error=GitHubAPIError("should not be called", 500))
    personal = make_run(offline, DiscoveryFilters(scope="personal"))
    second = GlobalSearchStrategy(cache).discover(personal, set())

    assert offline.queries == []
    assert [pr.key for pr in second] == [("alice/tool", 1)]
    assert second[0].commits[0].sha == "sha1"


@pytest.mark.parametrize("cached", [
    [{"title": "no number or merge time"}],
    [{"number": 1, "repo_full_name": "a/b", "merged_at": "not a date"}],
    ["garbage"],
    {"not": "a list"},
])
def test_global_search_ignores_malformed_cache(tmp_path, cached):
    cache = ResponseCache(cache_dir=tmp_path)
    run = make_run(FakeClient(
        search={global_query(): [search_hit("a/b", 1)]},
        details={("a/b", 1): pr_item(1)},
    ))
    cache.set("merged_prs", GlobalSearchStrategy()._cache_params(run), cached)

    prs = GlobalSearchStrategy(cache).discover(run, set())

    assert [pr.key for pr in prs] == [("a/b", 1)]
    assert run.client.queries == [global_query()]


def test_org_sweep_degrades_when_orgs_unlistable():
    client = FakeClient(orgs_error=GitHubAPIError("Resource not accessible", 403))
    run = make_run(client)

    assert OrgSweepStrategy().discover(run, set()) == []
    assert run.skipped[0].kind == "org"
    assert run.skipped[0].tier is ErrorTier.ACCESS_DENIED


def test_org_sweep_skips_covered_and_filtered_repos():
    client = FakeClient(
        orgs=["acme"],
        org_repos={"acme": ["acme/api", "acme/web", "acme/legacy"]},
        pulls={
            "acme/api": [pr_item(1, repo="acme/api")],
            "acme/web": [pr_item(2, repo="acme/web")],
            "acme/legacy": [pr_item(3, repo="acme/legacy")],
        },
    )
    run = make_run(client, DiscoveryFilters(exclude_repos=["acme/legacy"]))

    prs = OrgSweepStrategy().discover(run, covered={"acme/api"})

    assert [pr.key for pr in prs] == [("acme/web", 2)]


def test_org_sweep_prefers_configured_orgs():
    client = FakeClient(
        orgs_error=GitHubAPIError("should not be called", 403),
        org_repos={"acme": ["acme/web"]},
        pulls={"acme/web": [pr_item(2, repo="acme/web")]},
    )
    run = make_run(client, DiscoveryFilters(orgs=["acme"]))

    prs = OrgSweepStrategy().discover(run, set())

    assert [pr.key for pr in prs] == [("acme/web", 2)]
    assert run.skipped == []


# --- engine -------------------------------------------------------------


def test_engine_strategy_selection():
    client = FakeClient()

    explicit = DiscoveryEngine(client, filters=DiscoveryFilters(repos=["a/b"])).build_strategies()
    default = DiscoveryEngine(client).build_strategies()
    fast = DiscoveryEngine(client, filters=DiscoveryFilters(skip_org_scan=True)).build_strategies()
    personal = DiscoveryEngine(client, filters=DiscoveryFilters(scope="personal")).build_strategies()

    assert [s.name for s in explicit] == ["explicit-repos"]
    assert [s.name for s in default] == ["global-search", "org-sweep"]
    assert [s.name for s in fast] == ["global-search"]
    assert [s.name for s in personal] == ["global-search"]


def test_engine_merges_dedupes_and_sorts():
    client = FakeClient(
        search={global_query(): [search_hit("acme/api", 5)]},
        details={("acme/api", 5): pr_item(5, repo="acme/api", merged_at="2024-03-20T00:00:00Z")},
        orgs=["acme"],
        org_repos={"acme": ["acme/api", "acme/web"]},
        pulls={
            "acme/api": [pr_item(5, repo="acme/api", merged_at="2024-03-20T00:00:00Z")],
            "acme/web": [
                pr_item(8, repo="acme/web", merged_at="2024-03-25T00:00:00Z"),
                pr_item(7, repo="acme/web", merged_at="2024-03-02T00:00:00Z"),
            ],
        },
    )

    result = DiscoveryEngine(client).discover("alice", SINCE, UNTIL)

    assert [pr.key for pr in result.pull_requests] == [
        ("acme/web", 7),
        ("acme/api", 5),
        ("acme/web", 8),
    ]
    # acme/api was covered by search, so the sweep never listed it
    assert not any(repo == "acme/api" for repo, _ in client.consumed)


def test_engine_explicit_repos_skip_search():
    client = FakeClient(pulls={"a/b": [pr_item(1)]})

    result = DiscoveryEngine(client, filters=DiscoveryFilters(repos=["a/b"])).discover("alice", SINCE, UNTIL)

    assert [pr.number for pr in result.pull_requests] == [1]
    assert client.queries == []


def test_engine_empty_result_is_not_an_error():
    result = DiscoveryEngine(FakeClient(), filters=DiscoveryFilters(skip_org_scan=True)).discover("alice", SINCE, UNTIL)
    assert result.pull_requests == []
    assert result.skipped == []


def test_dedupe_first_occurrence_wins():
    def make(number, title, repo="a/b"):
        return PullRequest(number=number, title=title, body=None, url="", repo_name="b",
                           repo_full_name=repo, base_branch="main",
                           created_at="2024-03-01T00:00:00Z", merged_at="2024-03-02T00:00:00Z")

    prs = dedupe_pull_requests([make(1, "first"), make(2, "x"), make(1, "second"), make(1, "other", repo="c/d")])

    assert [(pr.key, pr.title) for pr in prs] == [
        (("a/b", 1), "first"),
        (("a/b", 2), "x"),
        (("c/d", 1), "other"),
    ]
