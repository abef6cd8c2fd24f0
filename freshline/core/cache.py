"""In-process TTL cache that fronts remote reads.

Properties:
- passive: never fetches, never runs timers; freshness is decided at read time
- process-local and disposable: nothing survives a restart
- last write wins; there is no versioning or merge

An entry is fresh while ``now - stored_at < ttl``. Stale entries are treated
as absent by ``get``/``lookup`` but stay in memory until overwritten,
invalidated or evicted, so callers can opt into an explicit stale fallback via
``peek_stale``.
"""

from __future__ import annotations

import copy
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Generic, Hashable, List, Optional, TypeVar

from freshline.core.metrics import CACHE_EVENTS_TOTAL

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

_MISSING: Any = object()


@dataclass(frozen=True)
class CacheEntry(Generic[K, V]):
    key: K
    value: V
    stored_at: float
    ttl: float

    def age(self, now: float) -> float:
        return now - self.stored_at

    def is_fresh(self, now: float) -> bool:
        return now - self.stored_at < self.ttl


@dataclass
class CacheStats:
    """Counters describing cache behaviour since construction."""

    hits: int = 0
    misses: int = 0
    stale_reads: int = 0
    sets: int = 0
    invalidations: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total * 100


class TTLCache(Generic[K, V]):
    """Keyed store with per-entry time-to-live.

    All operations are synchronous, so within one event loop every call is
    atomic and the store can be shared by any number of callers without locks.
    Values are deep-copied on the way in and out unless ``copy_values`` is
    False; callers never hold a reference into the store.
    """

    def __init__(
        self,
        *,
        default_ttl: float = 30.0,
        max_items: Optional[int] = 2048,
        clock: Callable[[], float] = time.monotonic,
        copy_values: bool = True,
    ) -> None:
        if default_ttl < 0:
            raise ValueError("default_ttl must be >= 0")
        if max_items is not None and max_items < 1:
            raise ValueError("max_items must be >= 1")
        self.default_ttl = float(default_ttl)
        self.max_items = max_items
        self._clock = clock
        self._copy_values = copy_values
        self._entries: Dict[K, CacheEntry[K, V]] = {}
        self._stats = CacheStats()

    # Helpers -------------------------------------------------------------

    def _copy(self, value: V) -> V:
        if not self._copy_values:
            return value
        return copy.deepcopy(value)

    def _record(self, event: str) -> None:
        CACHE_EVENTS_TOTAL.labels(event=event).inc()

    def _make_room(self) -> None:
        if self.max_items is None or len(self._entries) < self.max_items:
            return
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if not entry.is_fresh(now)]
        for key in expired:
            del self._entries[key]
        evicted = len(expired)
        # Still full: drop oldest insertions first (dicts keep insertion order).
        while len(self._entries) >= self.max_items:
            del self._entries[next(iter(self._entries))]
            evicted += 1
        if evicted:
            self._stats.evictions += evicted
            self._record("evict")
            logger.debug("cache.evicted", extra={"count": evicted})

    # Reads ---------------------------------------------------------------

    def lookup(self, key: K) -> Optional[CacheEntry[K, V]]:
        """Return a copy of the fresh entry for ``key``, or None on a miss."""

        entry = self._entries.get(key)
        if entry is None or not entry.is_fresh(self._clock()):
            self._stats.misses += 1
            self._record("miss")
            return None
        self._stats.hits += 1
        self._record("hit")
        return replace(entry, value=self._copy(entry.value))

    def get(self, key: K, default: Any = None) -> Any:
        """Return the fresh value for ``key`` or ``default``."""

        entry = self.lookup(key)
        if entry is None:
            return default
        return entry.value

    def peek_stale(self, key: K) -> Optional[CacheEntry[K, V]]:
        """Return the retained entry for ``key`` regardless of freshness.

        Only meant for explicit degraded-mode fallbacks; regular reads must
        use ``get``/``lookup``.
        """

        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_fresh(self._clock()):
            self._stats.stale_reads += 1
            self._record("stale")
        return replace(entry, value=self._copy(entry.value))

    def __contains__(self, key: object) -> bool:
        entry = self._entries.get(key)  # type: ignore[arg-type]
        return entry is not None and entry.is_fresh(self._clock())

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self, prefix: Optional[str] = None) -> List[K]:
        """Fresh keys, optionally restricted to string keys starting with ``prefix``."""

        now = self._clock()
        return [
            key
            for key, entry in self._entries.items()
            if entry.is_fresh(now)
            and (prefix is None or (isinstance(key, str) and key.startswith(prefix)))
        ]

    def stats(self) -> CacheStats:
        return replace(self._stats)

    # Writes --------------------------------------------------------------

    def set(self, key: K, value: V, ttl: Optional[float] = None) -> None:
        """Store ``value`` for ``ttl`` seconds (default TTL when None).

        A TTL of zero means "never cache": any previous entry is dropped and
        every subsequent read misses.
        """

        ttl_value = self.default_ttl if ttl is None else float(ttl)
        if ttl_value < 0:
            raise ValueError("ttl must be >= 0")
        if ttl_value == 0:
            self._entries.pop(key, None)
            return
        self._entries.pop(key, None)
        self._make_room()
        self._entries[key] = CacheEntry(
            key=key,
            value=self._copy(value),
            stored_at=self._clock(),
            ttl=ttl_value,
        )
        self._stats.sets += 1
        self._record("set")

    def patch(self, key: K, func: Callable[[V], V]) -> bool:
        """Replace a fresh value with ``func(value)``, keeping its age and TTL.

        Returns False (and does nothing) when there is no fresh entry.
        """

        entry = self._entries.get(key)
        if entry is None or not entry.is_fresh(self._clock()):
            return False
        updated = func(self._copy(entry.value))
        self._entries[key] = replace(entry, value=self._copy(updated))
        self._record("patch")
        return True

    def invalidate(self, key: K) -> None:
        """Drop ``key``. Unknown keys are ignored."""

        if self._entries.pop(key, _MISSING) is not _MISSING:
            self._stats.invalidations += 1
            self._record("invalidate")

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every string key starting with ``prefix``; returns how many."""

        doomed = [key for key in self._entries if isinstance(key, str) and key.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        if doomed:
            self._stats.invalidations += len(doomed)
            self._record("invalidate")
        return len(doomed)

    def invalidate_all(self) -> None:
        count = len(self._entries)
        self._entries.clear()
        if count:
            self._stats.invalidations += count
            self._record("invalidate")


__all__ = ["CacheEntry", "CacheStats", "TTLCache"]
