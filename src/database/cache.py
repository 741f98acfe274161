"""
Caching interface for dashboard reads, grouped into logical regions.

Cached values live under keys ``{region}:{key}`` (``progress:class_1``,
``classAverages:class_1``). Invalidating a region drops all of its keys and
tells the region's observers that their data is stale. The cache is an
explicit object with a lifetime owned by whoever creates it (the API lifespan
or the CLI), not ambient module state.
"""

import asyncio
import fnmatch
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union


logger = logging.getLogger(__name__)

PROGRESS_REGION = "progress"
CLASS_AVERAGES_REGION = "classAverages"

RegionObserver = Callable[[str], Union[None, Awaitable[None]]]


@dataclass
class CacheEntry:
    """Represents a cached item with metadata."""
    key: str
    value: Any
    created_at: float
    expires_at: Optional[float]
    access_count: int = 0
    last_accessed: Optional[float] = None


class InMemoryCache:
    """
    In-memory cache implementation with TTL support and LRU-like eviction.

    All operations take an ``asyncio.Lock`` so concurrent coroutines see a
    consistent map.
    """

    def __init__(self, max_size: int = 10000, default_ttl: Optional[int] = 300):
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._cache: Dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        """Get a value from cache."""
        async with self._lock:
            entry = self._cache.get(key)
            if not entry:
                return None

            if entry.expires_at and time.time() > entry.expires_at:
                del self._cache[key]
                return None

            entry.access_count += 1
            entry.last_accessed = time.time()
            return entry.value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Set a value in cache with optional TTL."""
        async with self._lock:
            self._cleanup_expired()
            self._ensure_space()

            if ttl is None:
                ttl = self.default_ttl

            now = time.time()
            self._cache[key] = CacheEntry(
                key=key,
                value=value,
                created_at=now,
                expires_at=now + ttl if ttl is not None else None,
                last_accessed=now,
            )

    async def delete(self, key: str) -> bool:
        """Delete a key from cache."""
        async with self._lock:
            return self._cache.pop(key, None) is not None

    async def delete_matching(self, pattern: str) -> int:
        """Delete every key matching a ``*`` wildcard pattern."""
        async with self._lock:
            doomed = [key for key in self._cache if fnmatch.fnmatchcase(key, pattern)]
            for key in doomed:
                del self._cache[key]
            return len(doomed)

    async def clear(self) -> None:
        """Clear all cache entries."""
        async with self._lock:
            self._cache.clear()

    async def keys(self, pattern: Optional[str] = None) -> List[str]:
        """Get all keys, optionally matching a pattern."""
        async with self._lock:
            self._cleanup_expired()
            all_keys = list(self._cache.keys())

            if pattern is None:
                return all_keys
            return [key for key in all_keys if fnmatch.fnmatchcase(key, pattern)]

    def _cleanup_expired(self) -> None:
        """Remove expired entries."""
        current_time = time.time()
        expired_keys = [
            key for key, entry in self._cache.items()
            if entry.expires_at and current_time > entry.expires_at
        ]

        for key in expired_keys:
            del self._cache[key]

        if expired_keys:
            logger.debug(f"Cleaned up {len(expired_keys)} expired cache entries")

    def _ensure_space(self) -> None:
        """Ensure there's space for new entries by evicting LRU items."""
        if len(self._cache) >= self.max_size:
            lru_keys = sorted(
                self._cache.keys(),
                key=lambda k: self._cache[k].last_accessed or 0
            )

            # Remove oldest 20% of entries to make space
            keys_to_remove = lru_keys[:max(1, len(lru_keys) // 5)]
            for key in keys_to_remove:
                del self._cache[key]

            logger.debug(f"Evicted {len(keys_to_remove)} LRU cache entries")


class RegionCache:
    """
    Cache of dashboard query results keyed by logical region.

    Readers use ``get``/``set`` (or ``get_or_load``) within a region; the
    invalidation broker calls ``invalidate``. Observers registered for a region
    are notified on every invalidation, without deduplication.
    """

    def __init__(self, cache: Optional[InMemoryCache] = None):
        self.cache = cache or InMemoryCache()
        self._observers: Dict[str, List[RegionObserver]] = {}
        self._generations: Dict[str, int] = {}
        self._pending: Set[asyncio.Task] = set()
        self._closed = False

    def _make_key(self, region: str, key: str) -> str:
        sanitized = str(key).replace(":", "_").replace(" ", "_")
        return f"{region}:{sanitized}"

    async def get(self, region: str, key: str) -> Optional[Any]:
        return await self.cache.get(self._make_key(region, key))

    async def set(self, region: str, key: str, value: Any, ttl: Optional[int] = None) -> None:
        await self.cache.set(self._make_key(region, key), value, ttl)

    async def get_or_load(
        self,
        region: str,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        ttl: Optional[int] = None,
    ) -> Any:
        """
        Return the cached value, loading and storing it on a miss.

        A loaded value is only stored if ``region`` was not invalidated while
        the loader ran; otherwise it is returned to this caller but not cached.
        """
        value = await self.get(region, key)
        if value is None:
            generation = self._generations.get(region, 0)
            value = await loader()
            if self._generations.get(region, 0) == generation:
                await self.set(region, key, value, ttl)
            else:
                logger.debug(f"Discarding load of {region}:{key} made stale by an invalidation")
        return value

    async def region_keys(self, region: str) -> List[str]:
        return await self.cache.keys(f"{region}:*")

    def observe(self, region: str, observer: RegionObserver) -> Callable[[], None]:
        """
        Register ``observer(region)`` for invalidations of ``region``.

        Returns a callable that removes the observer.
        """
        self._observers.setdefault(region, []).append(observer)

        def remove() -> None:
            observers = self._observers.get(region, [])
            if observer in observers:
                observers.remove(observer)

        return remove

    async def invalidate(self, region: str) -> int:
        """
        Drop every entry of ``region`` and notify its observers.

        Async observers are scheduled rather than awaited, so a slow or failing
        observer never holds up the caller. Returns the number of dropped entries.
        """
        if self._closed:
            return 0

        self._generations[region] = self._generations.get(region, 0) + 1
        dropped = await self.cache.delete_matching(f"{region}:*")
        logger.debug(f"Invalidated region {region} ({dropped} entries)")

        for observer in list(self._observers.get(region, [])):
            self._notify(observer, region)

        return dropped

    def _notify(self, observer: RegionObserver, region: str) -> None:
        try:
            outcome = observer(region)
        except Exception as e:
            logger.warning(f"Cache observer for region {region} failed: {e}", exc_info=True)
            return

        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._pending.add(task)
            task.add_done_callback(self._observer_done)

    def _observer_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Async cache observer failed: {task.exception()}")

    async def close(self) -> None:
        """Tear down the cache: drop observers, pending notifications and entries."""
        self._closed = True
        self._observers.clear()
        for task in list(self._pending):
            task.cancel()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        self._pending.clear()
        await self.cache.clear()

    async def get_cache_stats(self) -> Dict[str, Any]:
        """Entry counts per region and observer counts."""
        keys = await self.cache.keys()
        regions: Dict[str, int] = {}
        for key in keys:
            region = key.split(":", 1)[0]
            regions[region] = regions.get(region, 0) + 1

        return {
            'total_entries': len(keys),
            'regions': regions,
            'observers': {region: len(obs) for region, obs in self._observers.items()},
        }
