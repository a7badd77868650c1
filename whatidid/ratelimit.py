"""
Request pacing and rate-limit backoff for the GitHub client.

Two independent throttles:
- Pacing: a hard floor between any two outbound requests.
- Reactive backoff: on a 403 with zero remaining quota, or any 429, wait
  until the server-provided reset time (clamped), then retry.
"""

from __future__ import annotations

import time
from typing import Mapping


DEFAULT_MIN_INTERVAL = 0.1
DEFAULT_BACKOFF = 60.0
MIN_BACKOFF = 1.0
MAX_BACKOFF = 300.0


class Throttle:
    """
    Enforces a minimum interval between requests.

    Assumes exclusive use: callers that share a token must share one instance.
    """

    def __init__(self, min_interval: float = DEFAULT_MIN_INTERVAL):
        self.min_interval = min_interval
        self._last_request: float | None = None

    def wait(self) -> None:
        """Sleep for whatever remains of the interval, then mark a request."""
        now = time.monotonic()
        if self._last_request is not None:
            elapsed = now - self._last_request
            remaining = self.min_interval - elapsed
            if remaining > 0:
                time.sleep(remaining)
                now = time.monotonic()
        self._last_request = now


def is_rate_limited(status_code: int, headers: Mapping[str, str]) -> bool:
    """True for a 429, or a 403 with an exhausted quota."""
    if status_code == 429:
        return True
    if status_code == 403:
        return headers.get("X-RateLimit-Remaining") == "0"
    return False


def backoff_seconds(headers: Mapping[str, str], now: float | None = None) -> float:
    """
    Seconds to wait before retrying a rate-limited request.

    Uses ``X-RateLimit-Reset`` (epoch seconds) plus one second of slack,
    floored at 1s and capped at 5 minutes. Falls back to ``Retry-After`` and
    then to 60s when the server gives no hint.
    """
    if now is None:
        now = time.time()

    reset = headers.get("X-RateLimit-Reset")
    if reset and str(reset).isdigit():
        wait_ms = max(int(reset) * 1000 - now * 1000 + 1000, MIN_BACKOFF * 1000)
        return min(wait_ms / 1000, MAX_BACKOFF)

    retry_after = headers.get("Retry-After")
    if retry_after and str(retry_after).isdigit():
        return min(max(float(retry_after), MIN_BACKOFF), MAX_BACKOFF)

    return DEFAULT_BACKOFF
