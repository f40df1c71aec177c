"""In-process atomic counter store."""

import asyncio
import logging
import math
import time
from typing import Callable

from quota_engine.counters.base import AtomicCounterStore, CounterState

logger = logging.getLogger(__name__)


class InMemoryCounterStore(AtomicCounterStore):
    """
    Fixed-window counters held in a dictionary.

    A single asyncio lock makes each operation atomic within the process.
    Windows are measured on a monotonic clock so wall-clock jumps cannot
    stretch or shorten them.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        """
        Args:
            clock: Monotonic time source in seconds
        """
        self._counters: dict[str, tuple[int, float]] = {}  # key -> (count, expires_at)
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return "memory"

    def _live(self, key: str, now: float) -> tuple[int, float] | None:
        """Return the counter if it has not expired (caller holds lock)."""
        entry = self._counters.get(key)
        if entry is None:
            return None
        if now >= entry[1]:
            del self._counters[key]
            return None
        return entry

    @staticmethod
    def _ttl(expires_at: float, now: float) -> int:
        return max(0, math.ceil(expires_at - now))

    async def increment_and_maybe_expire(self, key: str, ttl_if_new: int) -> CounterState:
        async with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is None:
                count, expires_at = 1, now + ttl_if_new
            else:
                count, expires_at = entry[0] + 1, entry[1]
            self._counters[key] = (count, expires_at)
            return CounterState(count, self._ttl(expires_at, now))

    async def get(self, key: str) -> CounterState | None:
        async with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is None:
                return None
            return CounterState(entry[0], self._ttl(entry[1], now))

    async def decrement(self, key: str) -> int | None:
        async with self._lock:
            entry = self._live(key, self._clock())
            if entry is None:
                return None
            count = max(0, entry[0] - 1)
            self._counters[key] = (count, entry[1])
            return count

    async def delete(self, key: str) -> bool:
        async with self._lock:
            if self._live(key, self._clock()) is None:
                return False
            del self._counters[key]
            return True

    async def delete_by_prefix(self, prefix: str) -> int:
        async with self._lock:
            matched = [k for k in self._counters if k.startswith(prefix)]
            for key in matched:
                del self._counters[key]
            if matched:
                logger.debug(f"Deleted {len(matched)} counters under {prefix!r}")
            return len(matched)

    def size(self) -> int:
        return len(self._counters)
