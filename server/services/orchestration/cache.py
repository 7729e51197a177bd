"""Result cache for AI operations.

In-process TTL cache bounded by the serialized size of its entries. Eviction
is approximate LRU: entries are ranked by (access_count, last_accessed_at) and
the lowest quarter is dropped whenever the memory ceiling is breached.

get_or_compute does not deduplicate concurrent misses for the same key. Two
callers missing at the same time both compute and the later write wins.
"""

import asyncio
import math
import time
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Tuple, TypeVar

from core.logging import get_logger, log_cache_operation
from .models import CacheEntry, serialized_size

logger = get_logger(__name__)

T = TypeVar("T")

EVICTION_FRACTION = 0.25


class ResultCache(Generic[T]):
    """Memory-bounded TTL cache with background expiry and pressure checks."""

    def __init__(self,
                 max_memory_bytes: int = 512 * 1024 * 1024,
                 max_item_bytes: int = 50 * 1024 * 1024,
                 default_ttl: int = 3600,
                 sweep_interval: float = 300.0,
                 pressure_interval: float = 60.0,
                 pressure_threshold: float = 0.8):
        """Initialize result cache.

        Args:
            max_memory_bytes: Aggregate ceiling across all entries
            max_item_bytes: Single-entry ceiling; larger values are never stored
            default_ttl: TTL in seconds when the caller gives none
            sweep_interval: Seconds between expiry sweeps
            pressure_interval: Seconds between memory pressure checks
            pressure_threshold: Fraction of the ceiling that triggers proactive eviction
        """
        self.max_memory_bytes = max_memory_bytes
        self.max_item_bytes = max_item_bytes
        self.default_ttl = default_ttl
        self.sweep_interval = sweep_interval
        self.pressure_interval = pressure_interval
        self.pressure_threshold = pressure_threshold

        self._entries: Dict[str, CacheEntry[T]] = {}
        self._memory_usage = 0
        self.hit_count = 0
        self.miss_count = 0

        self._running = False
        self._tasks: List[asyncio.Task] = []

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the expiry sweep and pressure check background tasks."""
        if self._running:
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._periodic(self.sweep_interval, self.sweep_expired)),
            asyncio.create_task(self._periodic(self.pressure_interval, self.check_pressure)),
        ]
        logger.info("Result cache started",
                    max_memory_bytes=self.max_memory_bytes,
                    sweep_interval=self.sweep_interval,
                    pressure_interval=self.pressure_interval)

    async def stop(self) -> None:
        """Stop background tasks."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Result cache stopped")

    async def _periodic(self, interval: float, action: Callable[[], Any]) -> None:
        while self._running:
            await asyncio.sleep(interval)
            try:
                action()
            except Exception as e:
                logger.error("Cache maintenance failed", action=action.__name__, error=str(e))

    # =========================================================================
    # Core operations
    # =========================================================================

    async def get(self, key: str) -> Tuple[Optional[T], bool]:
        """Get cached value.

        Returns:
            (value, found). Expired entries are deleted and reported as not found.
        """
        entry = self._entries.get(key)
        if entry is None:
            self.miss_count += 1
            log_cache_operation(logger, "get", key, hit=False)
            return None, False

        if entry.is_expired():
            self._remove(key)
            self.miss_count += 1
            log_cache_operation(logger, "get", key, hit=False, expired=True)
            return None, False

        entry.touch()
        self.hit_count += 1
        log_cache_operation(logger, "get", key, hit=True)
        return entry.value, True

    async def set(self, key: str, value: T, ttl: Optional[int] = None) -> bool:
        """Store a value with TTL.

        Returns False without storing when the value exceeds the per-item
        ceiling. Evicts synchronously if the aggregate ceiling is breached.
        """
        ttl = ttl if ttl is not None else self.default_ttl
        size = serialized_size(value)

        if size > self.max_item_bytes:
            logger.warning("Item too large to cache", key=key, size_bytes=size,
                           max_item_bytes=self.max_item_bytes)
            return False

        self._remove(key)
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            expires_at=time.time() + ttl,
            size_bytes=size,
        )
        self._memory_usage += size
        log_cache_operation(logger, "set", key, ttl=ttl, size_bytes=size)

        if self._memory_usage > self.max_memory_bytes:
            self.evict()
        return True

    async def get_or_compute(self, key: str, compute_fn: Callable[[], Awaitable[T]],
                             ttl: Optional[int] = None) -> T:
        """Get cached value or compute, store and return it."""
        value, _ = await self.lookup_or_compute(key, compute_fn, ttl)
        return value

    async def lookup_or_compute(self, key: str, compute_fn: Callable[[], Awaitable[T]],
                                ttl: Optional[int] = None) -> Tuple[T, bool]:
        """Like get_or_compute but also reports whether the value was a cache hit.

        Exceptions from compute_fn propagate and nothing is cached.
        """
        value, found = await self.get(key)
        if found:
            return value, True

        computed = await compute_fn()
        await self.set(key, computed, ttl)
        return computed, False

    async def delete(self, key: str) -> bool:
        """Invalidate one entry."""
        deleted = self._remove(key)
        log_cache_operation(logger, "delete", key, deleted=deleted)
        return deleted

    async def clear(self, pattern: Optional[str] = None) -> int:
        """Invalidate all entries, or those whose key contains pattern."""
        if pattern is None:
            count = len(self._entries)
            self._entries.clear()
            self._memory_usage = 0
        else:
            keys = [k for k in self._entries if pattern in k]
            for k in keys:
                self._remove(k)
            count = len(keys)
        log_cache_operation(logger, "clear", pattern or "*", deleted=count)
        return count

    def _remove(self, key: str) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self._memory_usage -= entry.size_bytes
        return True

    # =========================================================================
    # Maintenance
    # =========================================================================

    def sweep_expired(self) -> int:
        """Delete every expired entry regardless of access pattern."""
        now = time.time()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            self._remove(key)
        if expired:
            logger.info("Cleaned up expired cache items", count=len(expired))
        return len(expired)

    def check_pressure(self) -> int:
        """Evict proactively when usage is above the pressure threshold."""
        usage_percent = self.usage_percent
        if usage_percent > self.pressure_threshold * 100:
            logger.warning("High cache memory usage", usage_percent=round(usage_percent, 1))
            return self.evict()
        return 0

    def evict(self) -> int:
        """Remove the lowest-ranked quarter of entries.

        Always removes the full quarter even if fewer removals would fit
        under the ceiling.
        """
        if not self._entries:
            return 0
        ranked = sorted(self._entries.values(), key=lambda e: e.rank)
        to_remove = math.ceil(len(ranked) * EVICTION_FRACTION)
        for entry in ranked[:to_remove]:
            self._remove(entry.key)
        logger.info("Evicted cache items", count=to_remove,
                    memory_usage=self._memory_usage, entries=len(self._entries))
        return to_remove

    # =========================================================================
    # Stats
    # =========================================================================

    @property
    def memory_usage(self) -> int:
        return self._memory_usage

    @property
    def usage_percent(self) -> float:
        return (self._memory_usage / self.max_memory_bytes) * 100

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get_hit_rate(self) -> float:
        """Hit rate in percent."""
        total = self.hit_count + self.miss_count
        return (self.hit_count / total) * 100 if total else 0.0

    def get_stats(self) -> Dict[str, Any]:
        """Point-in-time cache statistics."""
        return {
            "size": len(self._entries),
            "hit_rate": round(self.get_hit_rate(), 2),
            "hit_count": self.hit_count,
            "miss_count": self.miss_count,
            "memory_usage": self._memory_usage,
            "max_memory_usage": self.max_memory_bytes,
        }
