"""Process-local record of when each subject was last verified against the store."""

import logging
import threading
from collections import OrderedDict
from datetime import datetime, timedelta

from quota_engine.clock import Clock, utc_now

logger = logging.getLogger(__name__)


class ProcessLocalCache:
    """
    Bounded map of subject id -> last-checked time.

    An entry younger than ``ttl_seconds`` means this process recently read the
    subject's quota from the store, so a status read may be served from the
    distributed snapshot. Nothing else is kept here: the snapshot is the only
    place counters are cached.

    When full, expired entries are dropped first, then the least recently
    marked ones.
    """

    def __init__(
        self,
        ttl_seconds: int = 60,
        max_entries: int = 10_000,
        clock: Clock = utc_now,
    ) -> None:
        self._ttl = timedelta(seconds=ttl_seconds)
        self._max_entries = max_entries
        self._clock = clock
        self._checked_at: OrderedDict[str, datetime] = OrderedDict()
        self._lock = threading.Lock()

    def mark_checked(self, subject_id: str, at: datetime | None = None) -> None:
        checked_at = at or self._clock()
        with self._lock:
            self._checked_at[subject_id] = checked_at
            self._checked_at.move_to_end(subject_id)
            if len(self._checked_at) > self._max_entries:
                self._shrink()

    def is_fresh(self, subject_id: str) -> bool:
        with self._lock:
            checked_at = self._checked_at.get(subject_id)
            if checked_at is None:
                return False
            if self._clock() - checked_at >= self._ttl:
                del self._checked_at[subject_id]
                return False
            return True

    def invalidate(self, subject_id: str) -> bool:
        with self._lock:
            return self._checked_at.pop(subject_id, None) is not None

    def clear(self) -> int:
        with self._lock:
            count = len(self._checked_at)
            self._checked_at.clear()
            return count

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        with self._lock:
            return self._purge_expired_locked()

    def _purge_expired_locked(self) -> int:
        cutoff = self._clock() - self._ttl
        expired = [k for k, checked_at in self._checked_at.items() if checked_at <= cutoff]
        for key in expired:
            del self._checked_at[key]
        return len(expired)

    def _shrink(self) -> None:
        removed = self._purge_expired_locked()
        while len(self._checked_at) > self._max_entries:
            self._checked_at.popitem(last=False)
            removed += 1
        logger.debug(f"Local quota cache trimmed by {removed} entries")

    def __len__(self) -> int:
        return len(self._checked_at)

    def __contains__(self, subject_id: str) -> bool:
        return self.is_fresh(subject_id)
