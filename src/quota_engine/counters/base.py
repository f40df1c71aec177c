"""Abstract base class for atomic counter stores backing the rate limiter."""

from abc import ABC, abstractmethod
from typing import NamedTuple


class CounterState(NamedTuple):
    """
    Value of one fixed-window counter.

    Attributes:
        count: Current count
        ttl_seconds: Seconds until the window expires, or None if unknown
    """

    count: int
    ttl_seconds: int | None


class AtomicCounterStore(ABC):
    """
    Shared counters with "increment and set expiry if new" as a single step.

    Implementations raise ``StoreUnavailable`` for every backend fault; the
    rate limiter decides what a fault means.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    async def increment_and_maybe_expire(self, key: str, ttl_if_new: int) -> CounterState:
        """
        Atomically increment a counter.

        The increment that moves the counter from unset to 1 also sets its TTL
        to ``ttl_if_new``; later increments leave the TTL alone.

        Args:
            key: Counter key
            ttl_if_new: Window length in seconds

        Returns:
            Counter state after the increment
        """
        ...

    @abstractmethod
    async def get(self, key: str) -> CounterState | None:
        ...

    @abstractmethod
    async def decrement(self, key: str) -> int | None:
        """
        Decrement a live counter without touching its TTL or going below zero.

        Returns:
            New count, or None if the key does not exist
        """
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    async def delete_by_prefix(self, prefix: str) -> int:
        """Delete every counter whose key starts with ``prefix``."""
        ...

    async def connect(self) -> None:
        """Open connections, if the backend has any."""

    async def close(self) -> None:
        """Release connections, if the backend has any."""
