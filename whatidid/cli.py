"""
whatidid CLI - Engineering impact reports from GitHub activity.

Commands:
    generate     - Discover merged PRs, summarize and group them into a report
    clear-cache  - Delete cached GitHub API responses
"""

from __future__ import annotations

import logging
import sys
from datetime import date
from pathlib import Path

import click
from dotenv import load_dotenv

# Load .env file from current directory
load_dotenv()
load_dotenv(Path.cwd() / ".env")

from . import __version__
from .cache import ResponseCache
from .clustering import calculate_stats, group_features
from .config import SCOPES, ConfigError, WhatididConfig, load_credentials
from .discovery import DiscoveryEngine, DiscoveryFilters, summarize_skipped
from .github import GitHubAPIError, GitHubClient
from .llm import FeatureSummarizer, LLMAuthError, LLMClient, LLMClientError, summarize_prs
from .models import PullRequest
from .ratelimit import Throttle
from .report import FORMATS, build_report, write_report


logger = logging.getLogger(__name__)


def configure_logging(verbose: bool, quiet: bool) -> None:
    level = logging.WARNING
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.ERROR
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")
    logging.getLogger("LiteLLM").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def _parse_date(ctx: click.Context, param: click.Parameter, value: str) -> str:
    try:
        return date.fromisoformat(value).isoformat()
    except ValueError:
        raise click.BadParameter(f'"{value}". Expected YYYY-MM-DD.')


def _parse_list(ctx: click.Context, param: click.Parameter, value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def print_pr_list(prs: list[PullRequest]) -> None:
    """Dry-run listing, grouped by repository."""
    by_repo: dict[str, list[PullRequest]] = {}
    for pr in prs:
        by_repo.setdefault(pr.repo_full_name, []).append(pr)

    click.echo("\n📋 Pull Requests Found:")
    for repo, repo_prs in by_repo.items():
        click.echo(f"\n## {repo} ({len(repo_prs)} PRs)")
        for pr in repo_prs:
            click.echo(f"  - #{pr.number}: {pr.title} ({pr.merged_datetime.date().isoformat()})")

    click.echo(f"\nTotal: {len(prs)} PRs across {len(by_repo)} repositories")
    click.echo("Run without --dry-run to generate the full report with LLM analysis.")


@click.group()
@click.version_option(version=__version__)
def main():
    """whatidid - Generate engineering impact reports from GitHub activity."""
    pass


@main.command()
@click.option("-u", "--user", required=True, help="GitHub username")
@click.option("-s", "--since", required=True, callback=_parse_date, help="Start date (YYYY-MM-DD)")
@click.option("-t", "--until", required=True, callback=_parse_date, help="End date (YYYY-MM-DD)")
@click.option("-o", "--out", default="report.md", show_default=True, help="Output file path")
@click.option("-f", "--format", "fmt", type=click.Choice(FORMATS), default="markdown", show_default=True, help="Output format")
@click.option("--scope", type=click.Choice(SCOPES), default=None, help="Repos to check: all, personal or orgs")
@click.option("--repos", callback=_parse_list, help="Only these repos (comma-separated owner/repo)")
@click.option("--orgs", callback=_parse_list, help="Only these organizations (comma-separated)")
@click.option("--exclude-repos", callback=_parse_list, help="Repos to exclude (comma-separated owner/repo)")
@click.option("--fast", is_flag=True, help="Skip exhaustive org repo scanning (search API only)")
@click.option("--dry-run", is_flag=True, help="List PRs without LLM analysis")
@click.option("--no-cache", is_flag=True, help="Disable caching of GitHub API responses")
@click.option("-v", "--verbose", is_flag=True, help="Verbose output")
@click.option("-q", "--quiet", is_flag=True, help="Minimal output")
def generate(
    user: str,
    since: str,
    until: str,
    out: str,
    fmt: str,
    scope: str | None,
    repos: list[str],
    orgs: list[str],
    exclude_repos: list[str],
    fast: bool,
    dry_run: bool,
    no_cache: bool,
    verbose: bool,
    quiet: bool,
):
    """Generate an impact report for a GitHub user.

    Examples:

        whatidid generate -u octocat -s 2024-01-01 -t 2024-06-30
        whatidid generate -u octocat -s 2024-01-01 -t 2024-06-30 --scope personal --fast
        whatidid generate -u octocat -s 2024-01-01 -t 2024-06-30 --dry-run
    """
    configure_logging(verbose, quiet)

    def echo(message: str = "", **kwargs) -> None:
        if not quiet:
            click.echo(message, **kwargs)

    if since > until:
        click.echo("Error: --since date must be before --until date", err=True)
        sys.exit(1)

    try:
        config = WhatididConfig.load()
        credentials = load_credentials(require_llm=not dry_run)
    except ConfigError as e:
        click.echo(f"Configuration Error:\n{e}", err=True)
        sys.exit(1)

    filters = DiscoveryFilters(
        scope=scope or config.discovery.scope,
        repos=repos,
        orgs=orgs or config.discovery.orgs,
        exclude_repos=exclude_repos or config.discovery.exclude_repos,
        skip_org_scan=fast or config.discovery.skip_org_scan,
        include_commits=config.discovery.include_commits,
    )
    cache_enabled = config.cache.enabled and not no_cache

    echo(f"User: {user}")
    echo(f"Period: {since} to {until}")
    if not dry_run:
        echo(f"Output: {out} ({fmt})")
    if filters.scope != "all":
        echo(f"Scope: {filters.scope} repos only")
    if filters.repos:
        echo(f"Repos: {', '.join(filters.repos)}")
    if filters.orgs:
        echo(f"Orgs: {', '.join(filters.orgs)}")
    if filters.exclude_repos:
        echo(f"Excluding: {', '.join(filters.exclude_repos)}")
    if filters.skip_org_scan:
        echo("Mode: Fast (skip org repo scanning)")
    if dry_run:
        echo("Mode: Dry run (no LLM analysis)")
    if not cache_enabled:
        echo("Cache: Disabled")
    echo()

    try:
        echo("📥 Fetching data from GitHub...")
        client = GitHubClient(
            credentials.github_token,
            throttle=Throttle(config.discovery.min_request_interval),
        )
        engine = DiscoveryEngine(client, cache=ResponseCache(enabled=cache_enabled), filters=filters)
        result = engine.discover(user, since, until)
        prs = result.pull_requests

        if result.skipped:
            counts = summarize_skipped(result.skipped)
            echo(f"Skipped {len(result.skipped)} inaccessible resources ({counts})")

        if not prs:
            echo("\nNo merged PRs found for the specified period.")
            echo("Make sure the GitHub token has access to the repositories.")
            return

        echo(f"Found {len(prs)} merged PRs total")

        if dry_run:
            print_pr_list(prs)
            return

        echo(f"\n🤖 Analyzing PRs with {config.llm.model or credentials.llm_model}...")
        llm_client = LLMClient(
            model=config.llm.model or credentials.llm_model,
            api_key=credentials.llm_api_key,
            temperature=config.llm.temperature,
            max_tokens=config.llm.max_tokens,
        )
        summarizer = FeatureSummarizer(llm_client, temperature=config.llm.temperature)

        def progress(current: int, total: int) -> None:
            echo(f"\r  Processing PRs: {current}/{total}...", nl=False)

        features = summarize_prs(prs, summarizer, batch_size=config.llm.batch_size, on_progress=progress)
        echo()
        echo(f"Extracted {len(features)} features")

        echo("\n📊 Grouping features...")
        projects = group_features(features, threshold=config.clustering.similarity_threshold)
        stats = calculate_stats(projects)
        echo(f"Grouped into {len(projects)} projects")
        echo(f"After merging: {stats['total_features']} unique features")

        echo("\n📝 Generating report...")
        report = build_report(user, since, until, projects)
        path = write_report(report, out, fmt)
        echo(f"Report written to: {path}")

        echo(f"\n{'═' * 40}")
        echo(f"  Projects:    {len(projects)}")
        echo(f"  PRs Merged:  {stats['total_prs']}")
        echo(f"  Features:    {stats['total_features']}")
        echo(f"{'═' * 40}")
        echo("✅ Done!")

    except GitHubAPIError as e:
        click.echo(f"\nGitHub API Error: {e}", err=True)
        if e.status_code == 401:
            click.echo("  Check that your GITHUB_TOKEN is valid.", err=True)
        elif e.status_code in (403, 429):
            click.echo("  You may have hit a rate limit. Try again later.", err=True)
        sys.exit(1)
    except LLMClientError as e:
        click.echo(f"\nLLM API Error: {e}", err=True)
        if isinstance(e, LLMAuthError):
            click.echo("  Check that your LLM_API_KEY is valid.", err=True)
        sys.exit(1)


@main.command("clear-cache")
def clear_cache():
    """Clear cached GitHub API responses."""
    removed = ResponseCache(enabled=True).clear()
    click.echo(f"Cache cleared ({removed} entries removed).")


if __name__ == "__main__":
    main()
