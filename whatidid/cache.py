"""
File-based cache for expensive GitHub API results.

One JSON file per key, ``<prefix>_<hash>.json``, holding
``{"data": ..., "timestamp": epoch_ms, "version": int}``. Entries older
than the TTL or written under another schema version read as absent.
Caching is best-effort: read and write failures never reach the caller.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from pathlib import Path
from typing import Any

from .config import get_cache_dir


logger = logging.getLogger(__name__)

CACHE_VERSION = 1
CACHE_TTL_MS = 24 * 60 * 60 * 1000  # 24 hours


def make_key(prefix: str, params: dict[str, str]) -> str:
    """Deterministic key from a prefix and an unordered parameter set."""
    pairs = "&".join(f"{k}={params[k]}" for k in sorted(params))
    digest = hashlib.sha256(f"{prefix}:{pairs}".encode()).hexdigest()[:16]
    return f"{prefix}_{digest}"


def _now_ms() -> int:
    return int(time.time() * 1000)


class ResponseCache:
    """TTL-bound, versioned JSON cache. A disabled cache is a no-op."""

    def __init__(
        self,
        enabled: bool = True,
        cache_dir: Path | None = None,
        ttl_ms: int = CACHE_TTL_MS,
    ):
        self.enabled = enabled
        self.cache_dir = cache_dir or get_cache_dir()
        self.ttl_ms = ttl_ms

        if self.enabled:
            try:
                self.cache_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.debug(f"Cache disabled, cannot create {self.cache_dir}: {e}")
                self.enabled = False

    def _path(self, prefix: str, params: dict[str, str]) -> Path:
        return self.cache_dir / f"{make_key(prefix, params)}.json"

    def get(self, prefix: str, params: dict[str, str]) -> Any | None:
        """Return cached data, or None when absent, stale or unreadable."""
        if not self.enabled:
            return None

        path = self._path(prefix, params)
        if not path.exists():
            return None

        try:
            entry = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.debug(f"Ignoring unreadable cache entry {path.name}: {e}")
            return None

        if not isinstance(entry, dict) or entry.get("version") != CACHE_VERSION:
            return None
        timestamp = entry.get("timestamp")
        if not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool):
            return None
        if _now_ms() - timestamp > self.ttl_ms:
            return None

        return entry.get("data")

    def set(self, prefix: str, params: dict[str, str], data: Any) -> None:
        if not self.enabled:
            return

        entry = {"data": data, "timestamp": _now_ms(), "version": CACHE_VERSION}
        path = self._path(prefix, params)
        try:
            path.write_text(json.dumps(entry), encoding="utf-8")
        except (OSError, TypeError, ValueError) as e:
            logger.debug(f"Cache write failed for {path.name}: {e}")

    def clear(self) -> int:
        """Delete every cache file. Returns the number removed."""
        if not self.enabled or not self.cache_dir.exists():
            return 0

        removed = 0
        for path in self.cache_dir.glob("*.json"):
            try:
                path.unlink()
                removed += 1
            except OSError as e:
                logger.debug(f"Could not remove {path.name}: {e}")
        return removed
