"""In-process counters describing what the engine decided and where it degraded."""

import threading
from typing import Any

STAT_NAMES = (
    "rate_limit_allowed",
    "rate_limit_denied",
    "rate_limit_fail_open",
    "rate_limit_compensations",
    "rate_limit_rejected_releases",
    "quota_consumed",
    "quota_exceeded",
    "quota_overcount",
    "quota_store_failures",
    "quota_stale_reads",
    "quota_lazy_resets",
    "quota_swept",
    "sweep_runs",
    "sweep_failures",
    "cache_hits",
    "cache_misses",
)


class EngineStats:
    """Thread-safe named counters. Unknown names are accepted and start at zero."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: dict[str, int] = {name: 0 for name in STAT_NAMES}

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counts[name] = self._counts.get(name, 0) + amount

    def get(self, name: str) -> int:
        with self._lock:
            return self._counts.get(name, 0)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return dict(self._counts)

    def reset(self) -> None:
        with self._lock:
            self._counts = {name: 0 for name in STAT_NAMES}
