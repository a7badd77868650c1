"""
Configuration management for whatidid.

Loads:
- Credentials and model name from the environment (GITHUB_TOKEN,
  LLM_API_KEY, LLM_MODEL)
- whatidid.yml (optional): discovery, clustering, LLM and cache defaults
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


CONFIG_FILENAME = "whatidid.yml"
DEFAULT_LLM_MODEL = "gemini/gemini-2.5-flash"
CACHE_DIRNAME = ".whatidid-cache"

SCOPES = ("all", "personal", "orgs")


class ConfigError(Exception):
    """Missing or invalid configuration."""


@dataclass
class Credentials:
    """Secrets resolved from the environment."""
    github_token: str
    llm_api_key: str = ""
    llm_model: str = DEFAULT_LLM_MODEL


@dataclass
class DiscoveryConfig:
    """Defaults for repository/PR discovery."""
    scope: str = "all"  # all, personal, orgs
    orgs: list[str] = field(default_factory=list)
    exclude_repos: list[str] = field(default_factory=list)
    skip_org_scan: bool = False
    include_commits: bool = True
    min_request_interval: float = 0.1  # seconds between API calls


@dataclass
class ClusteringConfig:
    """Feature merge settings."""
    similarity_threshold: float = 0.5


@dataclass
class LLMConfig:
    """LLM configuration using LiteLLM."""
    model: str | None = None  # falls back to LLM_MODEL / default
    temperature: float = 0.3
    max_tokens: int = 1024
    batch_size: int = 5


@dataclass
class CacheConfig:
    enabled: bool = True


@dataclass
class WhatididConfig:
    """Complete whatidid configuration."""
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)

    @classmethod
    def load(cls, config_dir: Path | None = None) -> "WhatididConfig":
        """Load whatidid.yml from ``config_dir`` (default: cwd) if present."""
        config_path = (config_dir or Path.cwd()) / CONFIG_FILENAME
        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"{config_path} must contain a mapping")
        return cls._parse(data)

    @classmethod
    def _parse(cls, data: dict[str, Any]) -> "WhatididConfig":
        config = cls()

        discovery_data = data.get("discovery", {}) or {}
        scope = discovery_data.get("scope", "all")
        if scope not in SCOPES:
            raise ConfigError(f"Invalid discovery.scope: {scope!r} (expected one of {', '.join(SCOPES)})")
        config.discovery = DiscoveryConfig(
            scope=scope,
            orgs=list(discovery_data.get("orgs", []) or []),
            exclude_repos=list(discovery_data.get("exclude_repos", []) or []),
            skip_org_scan=discovery_data.get("skip_org_scan", False),
            include_commits=discovery_data.get("include_commits", True),
            min_request_interval=float(discovery_data.get("min_request_interval", 0.1)),
        )

        clustering_data = data.get("clustering", {}) or {}
        config.clustering = ClusteringConfig(
            similarity_threshold=float(clustering_data.get("similarity_threshold", 0.5)),
        )

        llm_data = data.get("llm", {}) or {}
        config.llm = LLMConfig(
            model=llm_data.get("model"),
            temperature=llm_data.get("temperature", 0.3),
            max_tokens=llm_data.get("max_tokens", 1024),
            batch_size=llm_data.get("batch_size", 5),
        )

        cache_data = data.get("cache", {}) or {}
        config.cache = CacheConfig(enabled=cache_data.get("enabled", True))

        return config


def _env(name: str) -> str:
    return (os.environ.get(name) or "").strip()


def load_credentials(require_llm: bool = True) -> Credentials:
    """
    Resolve credentials from the environment.

    Raises:
        ConfigError: listing every missing required variable.
    """
    missing = []
    github_token = _env("GITHUB_TOKEN")
    if not github_token:
        missing.append("GITHUB_TOKEN")

    llm_api_key = _env("LLM_API_KEY")
    if require_llm and not llm_api_key:
        missing.append("LLM_API_KEY")

    if missing:
        lines = "\n".join(f"  - {name}" for name in missing)
        raise ConfigError(
            f"Missing required environment variables:\n{lines}\n\n"
            "Set them in your shell or in a .env file before running the command."
        )

    return Credentials(
        github_token=github_token,
        llm_api_key=llm_api_key,
        llm_model=_env("LLM_MODEL") or DEFAULT_LLM_MODEL,
    )


def get_cache_dir() -> Path:
    """Well-known cache directory under the user's home."""
    return Path.home() / CACHE_DIRNAME
