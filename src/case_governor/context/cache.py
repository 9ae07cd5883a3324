"""Keyed record cache with per-entry TTL.

Entries are immutable and replaced wholesale. While a fetch of a key is in
flight the key carries a generation counter that invalidate() bumps; the
fetch compares generations and does not store its (possibly pre-write)
result if an invalidation happened meanwhile.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Hashable, Optional, TypeVar

logger = logging.getLogger(__name__)

V = TypeVar("V")


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    key: Hashable
    value: V
    fetched_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now >= self.fetched_at + self.ttl


class RecordCache(Generic[V]):
    """Process-local cache owned by exactly one Context Store."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[Hashable, CacheEntry[V]] = {}
        # Generations exist only for keys with a fetch in flight
        self._generations: Dict[Hashable, int] = {}
        self._readers: Dict[Hashable, int] = {}

    def now(self) -> float:
        return self._clock()

    def get(self, key: Hashable) -> Optional[V]:
        """Return the cached value, or None when missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            # Never serve an expired entry
            del self._entries[key]
            logger.debug(f"Cache entry expired: {key}")
            return None
        return entry.value

    def track(self, key: Hashable) -> int:
        """Register a fetch of ``key`` and return the generation it started at.

        Every track() must be paired with a release() once the fetch result
        has been stored or dropped.
        """
        self._readers[key] = self._readers.get(key, 0) + 1
        return self._generations.setdefault(key, 0)

    def release(self, key: Hashable) -> None:
        remaining = self._readers.get(key, 0) - 1
        if remaining > 0:
            self._readers[key] = remaining
        else:
            self._readers.pop(key, None)
            self._generations.pop(key, None)

    @property
    def tracked_keys(self) -> int:
        return len(self._generations)

    def put(self, key: Hashable, value: V, ttl: float, generation: Optional[int] = None) -> bool:
        """Store a value unless the key was invalidated since ``generation`` was read.

        Returns:
            True if stored
        """
        if generation is not None and generation != self._generations.get(key, 0):
            logger.debug(f"Dropping stale fetch result for {key}")
            return False
        self._entries[key] = CacheEntry(key=key, value=value, fetched_at=self._clock(), ttl=ttl)
        return True

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)
        if key in self._generations:
            self._generations[key] += 1

    def clear(self) -> None:
        self._entries.clear()
        for key in self._generations:
            self._generations[key] += 1

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)
