"""
Trace cache: (structural signature, device) -> lowered Computation.

Repeated training steps produce traces with the same signature, so a hit
skips lowering entirely. Design decisions:
- Key: (sha256 signature, Device); node ids and data never enter it
- Thread-safe: one internal lock; lowering itself runs outside the lock
- Concurrent misses on one key: both lower, the first insert wins
- Eviction drops only the cache's reference, so executions already holding
  a Computation are unaffected
"""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from ..core.device import Device
from ..core.exceptions import ConfigurationError
from ..core.lowering import Computation
from ..core.trace import FinalizedTrace, TraceState

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, Device]


class EvictionPolicy(Enum):
    LRU = "lru"
    AGE = "age"
    LEAST_USED = "least_used"

    @classmethod
    def parse(cls, value) -> "EvictionPolicy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ConfigurationError(f"Unknown eviction policy: {value}") from None


@dataclass
class CacheEntry:
    """One cached computation plus the bookkeeping used for eviction."""
    computation: Computation
    creation_time: float
    last_access_time: float
    use_count: int = 0
    lowering_time_ms: float = 0.0


class TraceCache:
    """
    Thread-safe cache of lowered computations.

    Usage:
        cache = TraceCache(max_entries=256)
        computation, hit = cache.get_or_lower(finalized, lower_trace)
    """

    def __init__(self, max_entries: int = 1024, max_age_seconds: Optional[float] = None,
                 eviction_policy=EvictionPolicy.LRU):
        if max_entries < 1:
            raise ConfigurationError(f"max_entries must be positive, got {max_entries}")
        self.max_entries = max_entries
        self.max_age_seconds = max_age_seconds
        self.eviction_policy = EvictionPolicy.parse(eviction_policy)

        self._entries: "OrderedDict[CacheKey, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()

        self.stats = {
            'hits': 0,
            'misses': 0,
            'lowerings': 0,
            'inserts': 0,
            'duplicate_inserts': 0,
            'evictions': 0,
            'expirations': 0,
            'total_lowering_time_ms': 0.0,
            'lowering_time_saved_ms': 0.0,
        }

        logger.info(
            f"TraceCache initialized (max_entries={max_entries}, "
            f"max_age={max_age_seconds}, policy={self.eviction_policy.value})"
        )

    @classmethod
    def from_config(cls, config=None) -> "TraceCache":
        if config is None:
            from ..config import get_config
            config = get_config().cache
        return cls(config.max_entries, config.max_age_seconds, config.eviction_policy)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: CacheKey) -> bool:
        with self._lock:
            return key in self._entries

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return (self.max_age_seconds is not None
                and now - entry.creation_time > self.max_age_seconds)

    def lookup(self, signature: str, device: Device) -> Optional[Computation]:
        """Computation cached for (signature, device), or None."""
        key = (signature, device)
        now = time.time()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self._expired(entry, now):
                del self._entries[key]
                self.stats['expirations'] += 1
                entry = None
            if entry is None:
                self.stats['misses'] += 1
                return None

            self._entries.move_to_end(key)
            entry.last_access_time = now
            entry.use_count += 1
            self.stats['hits'] += 1
            self.stats['lowering_time_saved_ms'] += entry.lowering_time_ms

        logger.debug(f"Trace cache HIT: {signature[:16]}... on {device} (uses={entry.use_count})")
        return entry.computation

    def insert(self, signature: str, device: Device, computation: Computation) -> Computation:
        """
        Insert a computation; returns the entry actually cached.

        If another thread already inserted the same key its computation is
        kept and returned.
        """
        key = (signature, device)
        now = time.time()
        with self._lock:
            existing = self._entries.get(key)
            if existing is not None:
                if not self._expired(existing, now):
                    self.stats['duplicate_inserts'] += 1
                    return existing.computation
                del self._entries[key]
                self.stats['expirations'] += 1

            while len(self._entries) >= self.max_entries:
                self._evict_one(self.eviction_policy)
            self._entries[key] = CacheEntry(
                computation=computation,
                creation_time=now,
                last_access_time=now,
                use_count=1,
                lowering_time_ms=computation.build_time_ms,
            )
            self.stats['inserts'] += 1
            return computation

    def _evict_one(self, policy: EvictionPolicy) -> Optional[CacheKey]:
        """Drop one entry (lock held)."""
        if not self._entries:
            return None
        if policy is EvictionPolicy.LRU:
            key = next(iter(self._entries))
        elif policy is EvictionPolicy.AGE:
            key = min(self._entries, key=lambda k: self._entries[k].creation_time)
        else:
            key = min(self._entries, key=lambda k: self._entries[k].use_count)
        del self._entries[key]
        self.stats['evictions'] += 1
        logger.debug(f"Evicted {key[0][:16]}... on {key[1]} ({policy.value})")
        return key

    def evict(self, policy=None) -> Optional[CacheKey]:
        """Evict one entry by ``policy`` (default: the cache's policy); expired
        entries go first."""
        policy = EvictionPolicy.parse(policy) if policy is not None else self.eviction_policy
        now = time.time()
        with self._lock:
            for key, entry in self._entries.items():
                if self._expired(entry, now):
                    del self._entries[key]
                    self.stats['expirations'] += 1
                    return key
            return self._evict_one(policy)

    def get_or_lower(self, finalized: FinalizedTrace,
                     lower_fn: Callable[[FinalizedTrace], Computation]) -> Tuple[Computation, bool]:
        """
        Look up ``finalized``; lower and insert it on a miss.

        Drives the snapshot through FINALIZED -> (LOWERING ->) CACHED and
        returns ``(computation, cache_hit)``.
        """
        computation = self.lookup(finalized.signature, finalized.device)
        if computation is not None:
            finalized.transition(TraceState.CACHED)
            return computation, True

        logger.info(
            f"Trace cache MISS: {finalized.signature[:16]}... on {finalized.device} "
            f"({len(finalized.nodes)} nodes, lowering...)"
        )
        finalized.transition(TraceState.LOWERING)
        start = time.perf_counter()
        computation = lower_fn(finalized)
        elapsed_ms = (time.perf_counter() - start) * 1000
        with self._lock:
            self.stats['lowerings'] += 1
            self.stats['total_lowering_time_ms'] += elapsed_ms

        computation = self.insert(finalized.signature, finalized.device, computation)
        finalized.transition(TraceState.CACHED)
        return computation, False

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        logger.info("Trace cache cleared")

    def get_stats(self) -> Dict:
        with self._lock:
            stats = dict(self.stats)
            entries = len(self._entries)
        total = stats['hits'] + stats['misses']
        stats.update({
            'entries': entries,
            'max_entries': self.max_entries,
            'hit_rate': stats['hits'] / total if total > 0 else 0,
        })
        return stats

    def print_stats(self) -> None:
        """Print human-readable statistics."""
        stats = self.get_stats()
        print("\n" + "=" * 70)
        print("Trace Cache Statistics")
        print("=" * 70)
        print(f"  Entries: {stats['entries']}/{stats['max_entries']}")
        print(f"  Hits: {stats['hits']}")
        print(f"  Misses: {stats['misses']}")
        print(f"  Hit rate: {stats['hit_rate']:.1%}")
        print(f"  Lowerings: {stats['lowerings']}")
        print(f"  Evictions: {stats['evictions']} (expired: {stats['expirations']})")
        print(f"  Lowering time spent: {stats['total_lowering_time_ms']:.1f}ms")
        print(f"  Lowering time saved: {stats['lowering_time_saved_ms']:.1f}ms")
        print("=" * 70)


# Global cache instance
_global_cache: Optional[TraceCache] = None
_cache_lock = threading.Lock()


def get_trace_cache() -> TraceCache:
    """Get or create the global trace cache."""
    global _global_cache

    if _global_cache is None:
        with _cache_lock:
            if _global_cache is None:
                _global_cache = TraceCache.from_config()

    return _global_cache


def reset_trace_cache() -> None:
    """Drop the global trace cache (mainly for tests)."""
    global _global_cache
    with _cache_lock:
        _global_cache = None


__all__ = [
    'EvictionPolicy',
    'CacheEntry',
    'TraceCache',
    'get_trace_cache',
    'reset_trace_cache',
]
