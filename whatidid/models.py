"""
Domain models for whatidid.

Plain dataclasses shared by discovery, clustering, summarization and
rendering. Timestamps are kept as the ISO-8601 strings GitHub returns;
use ``parse_timestamp`` whenever they need to be compared.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class FeatureType(str, Enum):
    """Kind of change a feature delivered."""
    FEATURE = "feature"
    ENHANCEMENT = "enhancement"
    BUGFIX = "bugfix"
    INFRA = "infra"
    REFACTOR = "refactor"


class Confidence(str, Enum):
    """Reliability of an automatically extracted feature."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


def parse_timestamp(value: str) -> datetime:
    """Parse a GitHub ISO timestamp (or bare date) into an aware UTC datetime."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class Repository:
    """A GitHub repository, identified by ``full_name``."""
    id: int
    name: str
    full_name: str  # owner/name
    owner: str
    url: str
    default_branch: str

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Repository:
        owner = data.get("owner") or {}
        return cls(
            id=data.get("id", 0),
            name=data.get("name", ""),
            full_name=data.get("full_name", ""),
            owner=owner.get("login", ""),
            url=data.get("html_url", ""),
            default_branch=data.get("default_branch", "main"),
        )


@dataclass
class Commit:
    """A commit attached to a pull request."""
    sha: str
    message: str
    author: str
    date: str


@dataclass
class PullRequest:
    """A merged pull request. ``(repo_full_name, number)`` is unique."""
    number: int
    title: str
    body: str | None
    url: str
    repo_name: str
    repo_full_name: str
    base_branch: str
    created_at: str
    merged_at: str
    commits: list[Commit] = field(default_factory=list)

    @property
    def key(self) -> tuple[str, int]:
        return (self.repo_full_name, self.number)

    @property
    def merged_datetime(self) -> datetime:
        return parse_timestamp(self.merged_at)

    @classmethod
    def from_api(cls, data: dict[str, Any], repo_full_name: str) -> PullRequest:
        """Build from a ``/pulls`` payload. Caller guarantees ``merged_at`` is set."""
        base = data.get("base") or {}
        return cls(
            number=data.get("number", 0),
            title=data.get("title", ""),
            body=data.get("body"),
            url=data.get("html_url", ""),
            repo_name=repo_full_name.split("/")[-1],
            repo_full_name=repo_full_name,
            base_branch=base.get("ref", ""),
            created_at=data.get("created_at", ""),
            merged_at=data.get("merged_at") or "",
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PullRequest:
        commits = [Commit(**c) for c in data.get("commits", [])]
        return cls(
            number=data["number"],
            title=data.get("title", ""),
            body=data.get("body"),
            url=data.get("url", ""),
            repo_name=data.get("repo_name", ""),
            repo_full_name=data["repo_full_name"],
            base_branch=data.get("base_branch", ""),
            created_at=data.get("created_at", ""),
            merged_at=data["merged_at"],
            commits=commits,
        )


@dataclass
class Feature:
    """A delivered feature, extracted from one PR or merged from several."""
    project: str
    title: str
    description: str
    type: FeatureType
    prs: list[int]
    start_date: str
    end_date: str
    confidence: Confidence

    def __post_init__(self) -> None:
        self.prs = sorted(set(self.prs))

    @classmethod
    def from_pull_request(
        cls,
        pr: PullRequest,
        title: str,
        description: str,
        type: FeatureType,
        confidence: Confidence,
    ) -> Feature:
        return cls(
            project=pr.repo_full_name,
            title=title,
            description=description,
            type=type,
            prs=[pr.number],
            start_date=pr.created_at,
            end_date=pr.merged_at,
            confidence=confidence,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "project": self.project,
            "title": self.title,
            "description": self.description,
            "type": self.type.value,
            "prs": list(self.prs),
            "startDate": self.start_date,
            "endDate": self.end_date,
            "confidence": self.confidence.value,
        }


@dataclass
class ProjectSummary:
    """Merged, time-ordered features for one repository."""
    repo_name: str
    repo_full_name: str
    features: list[Feature]
    start_date: str
    end_date: str
    total_prs: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "repoName": self.repo_name,
            "repoFullName": self.repo_full_name,
            "features": [f.to_dict() for f in self.features],
            "startDate": self.start_date,
            "endDate": self.end_date,
            "totalPRs": self.total_prs,
        }


@dataclass
class ImpactReport:
    """Final aggregated result handed to the renderers."""
    username: str
    since: str
    until: str
    generated_at: str
    projects: list[ProjectSummary]
    total_prs: int
    total_features: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "username": self.username,
            "since": self.since,
            "until": self.until,
            "generatedAt": self.generated_at,
            "projects": [p.to_dict() for p in self.projects],
            "totalPRs": self.total_prs,
            "totalFeatures": self.total_features,
        }
