"""
Time-bounded single-value caches.

Each component owns its own TtlCache instance; nothing here is a module
global. Writers go through an asyncio.Lock so that two call paths on the
same event loop never interleave a read-modify-write.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Generic, Hashable, Optional, TypeVar

T = TypeVar("T")

Clock = Callable[[], float]


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """A cached value and the clock reading when it was captured."""
    value: T
    captured_at: float

    def is_fresh(self, now: float, ttl: float) -> bool:
        return now - self.captured_at < ttl


class TtlCache(Generic[T]):
    """
    Keyed cache whose entries expire after a fixed TTL.

    An entry read at or past its TTL is treated as absent, never returned
    stale. The clock is injectable so expiry can be tested without sleeping.
    """

    def __init__(self, ttl_seconds: float, clock: Clock = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[Hashable, CacheEntry[T]] = {}
        self.lock = asyncio.Lock()

    def get(self, key: Hashable = None) -> Optional[T]:
        """Return the fresh value for key, or None."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_fresh(self._clock(), self.ttl_seconds):
            del self._entries[key]
            return None
        return entry.value

    def put(self, value: T, key: Hashable = None) -> None:
        """Store value for key, stamped with the current clock reading."""
        self._entries[key] = CacheEntry(value=value, captured_at=self._clock())

    def invalidate(self, key: Hashable = None) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
