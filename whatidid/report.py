"""
Report rendering for whatidid.

Markdown via a Jinja2 template, JSON via ``ImpactReport.to_dict``.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, PackageLoader

from .clustering import calculate_stats
from .models import ImpactReport, ProjectSummary, parse_timestamp


FORMATS = ("markdown", "json")


def _format_day(value: str) -> str:
    """YYYY-MM-DD from an ISO timestamp."""
    if not value:
        return ""
    return parse_timestamp(value).date().isoformat()


def get_template_env() -> Environment:
    """Get Jinja2 environment with template loaders."""
    try:
        env = Environment(
            loader=PackageLoader("whatidid", "templates"),
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
        )
    except ValueError:
        # Not installed as a package (e.g. running from a checkout)
        template_dir = Path(__file__).parent / "templates"
        env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
        )
    env.filters["day"] = _format_day
    return env


def build_report(
    username: str,
    since: str,
    until: str,
    projects: list[ProjectSummary],
) -> ImpactReport:
    stats = calculate_stats(projects)
    return ImpactReport(
        username=username,
        since=since,
        until=until,
        generated_at=datetime.now(timezone.utc).isoformat(timespec="seconds"),
        projects=projects,
        total_prs=stats["total_prs"],
        total_features=stats["total_features"],
    )


def render_markdown(report: ImpactReport) -> str:
    template = get_template_env().get_template("report.md.j2")
    return template.render(report=report, stats=calculate_stats(report.projects))


def render_json(report: ImpactReport) -> str:
    return json.dumps(report.to_dict(), indent=2)


def resolve_output_path(out: str, fmt: str) -> Path:
    """JSON output never lands in a .md file."""
    if fmt == "json" and not out.endswith(".json"):
        if out.endswith(".md"):
            out = out[:-3]
        out = f"{out}.json"
    return Path(out)


def write_report(report: ImpactReport, out: str, fmt: str = "markdown") -> Path:
    """Render ``report`` in ``fmt`` and write it. Returns the path written."""
    if fmt not in FORMATS:
        raise ValueError(f"Unknown format: {fmt}")

    path = resolve_output_path(out, fmt)
    content = render_json(report) if fmt == "json" else render_markdown(report)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path
