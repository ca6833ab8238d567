"""Fallback cache for remote calls.

Provides:
- A time-boxed key/value store with bounded size and FIFO eviction
- Stale-while-revalidate reads with background refresh
- Fallback data and expired-value ("emergency") fallback on failure
- Point-in-time dump/load of the cache contents
"""

import asyncio
import json
import logging
import os
import re
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from .errors import ErrorClassifier, OperationFailedError
from .retry import RetryConfig, RetryExecutor

logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


class CacheSource(str, Enum):
    """Where a returned value came from."""

    CACHE = "cache"  # Fresh cache hit
    LIVE = "live"  # Operation succeeded
    STALE = "stale"  # Expired entry served while revalidating
    FALLBACK = "fallback"  # Configured fallback data
    EMERGENCY = "emergency"  # Last known value after a failure


@dataclass
class CacheEntry:
    """A cached value."""

    value: Any
    written_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.written_at > self.ttl

    def to_dict(self) -> dict[str, Any]:
        return {"value": self.value, "writtenAt": self.written_at, "ttl": self.ttl}


@dataclass
class CacheResult:
    """Value returned by get_with_fallback."""

    value: Any
    source: CacheSource
    stale: bool = False

    @property
    def degraded(self) -> bool:
        """True when the live operation did not produce this value."""
        return self.source in (CacheSource.STALE, CacheSource.FALLBACK, CacheSource.EMERGENCY)


@dataclass
class FallbackOptions:
    """Options for get_with_fallback."""

    cache_key: str
    cache_duration: Optional[float] = None  # seconds, defaults to the cache TTL
    fallback_data: Any = MISSING
    stale_while_revalidate: bool = False
    retry_on_error: bool = False
    retry_config: Optional[RetryConfig] = None
    context: dict[str, Any] = field(default_factory=dict)
    on_error: Optional[Callable[[Exception], None]] = None


class FallbackCache:
    """Cache that turns remote failures into degraded-but-available responses.

    Eviction is FIFO by write time: every write moves the key to the back,
    and when the store exceeds ``max_size`` the oldest-written entry goes.
    Reads do not affect eviction order.

    Expired entries are kept until cleanup() or eviction so they can serve
    as emergency fallback; get() never returns them.

    Usage:
        cache = FallbackCache(max_size=100, default_ttl=300)
        result = await cache.get_with_fallback(
            lambda: client.get_ranking("weekly"),
            FallbackOptions(cache_key="ranking:weekly", stale_while_revalidate=True),
        )
        if result.degraded:
            ...
    """

    def __init__(
        self,
        max_size: int = 100,
        default_ttl: float = 300.0,
        executor: Optional[RetryExecutor] = None,
        clock: Callable[[], float] = time.time,
        metrics: Optional[Any] = None,
    ):
        """Initialize cache.

        Args:
            max_size: Maximum number of entries
            default_ttl: TTL in seconds when none is given
            executor: RetryExecutor used when retry_on_error is set
            clock: Time source returning epoch seconds
            metrics: Optional MetricsRegistry
        """
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.default_ttl = default_ttl
        self.executor = executor or RetryExecutor()
        self._clock = clock
        self._metrics = metrics
        self._entries: dict[str, CacheEntry] = {}
        self._refreshing: dict[str, asyncio.Task] = {}
        self._listeners: list[Callable[[str], None]] = []
        self._lock = threading.Lock()

    @property
    def classifier(self) -> ErrorClassifier:
        return self.executor.classifier

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # =========================================================================
    # Basic store
    # =========================================================================

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Write a value, evicting the oldest-written entry if over capacity.

        Args:
            key: Cache key
            value: Value to cache
            ttl: Time to live in seconds
        """
        entry = CacheEntry(value, self._clock(), self.default_ttl if ttl is None else ttl)
        self._insert(key, entry)

    def _insert(self, key: str, entry: CacheEntry) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = entry
            while len(self._entries) > self.max_size:
                oldest = next(iter(self._entries))
                del self._entries[oldest]
                logger.debug(f"Evicted cache entry {oldest}")

    def get(self, key: str) -> Optional[Any]:
        """Get a fresh value.

        Returns:
            Cached value, or None if absent or expired
        """
        entry = self.get_entry(key)
        if entry is None or entry.is_expired(self._clock()):
            return None
        return entry.value

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        """Get the raw entry, expired or not."""
        with self._lock:
            return self._entries.get(key)

    def has_valid(self, key: str) -> bool:
        """Check if a fresh entry exists."""
        entry = self.get_entry(key)
        return entry is not None and not entry.is_expired(self._clock())

    def invalidate(self, key: str) -> bool:
        """Remove an entry and notify listeners.

        Returns:
            True if an entry was removed
        """
        with self._lock:
            removed = self._entries.pop(key, None) is not None
        if removed:
            self._notify(key)
        return removed

    def invalidate_pattern(self, pattern: Union[str, "re.Pattern[str]"]) -> int:
        """Remove every entry whose key matches a regular expression.

        Returns:
            Number of entries removed
        """
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        with self._lock:
            keys = [key for key in self._entries if regex.search(key)]
            for key in keys:
                del self._entries[key]
        for key in keys:
            self._notify(key)
        return len(keys)

    def clear(self) -> None:
        """Remove all entries."""
        with self._lock:
            self._entries.clear()

    def cleanup(self) -> int:
        """Purge expired entries.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug(f"Cache cleanup removed {len(expired)} expired entries")
        return len(expired)

    def on_invalidate(self, callback: Callable[[str], None]) -> Callable[[], None]:
        """Subscribe to invalidation events.

        Returns:
            Function that removes the subscription
        """
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self, key: str) -> None:
        for callback in list(self._listeners):
            try:
                callback(key)
            except Exception as e:
                logger.error(f"Cache invalidation listener failed for {key}: {e}")

    def stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        now = self._clock()
        with self._lock:
            entries = [
                {
                    "key": key,
                    "age": now - entry.written_at,
                    "expires_in": max(0.0, entry.written_at + entry.ttl - now),
                }
                for key, entry in self._entries.items()
            ]
        return {"size": len(entries), "max_size": self.max_size, "entries": entries}

    def health(self) -> dict[str, Any]:
        """Get valid/expired counts and average age."""
        now = self._clock()
        with self._lock:
            entries = list(self._entries.values())

        total = len(entries)
        valid = sum(1 for entry in entries if not entry.is_expired(now))
        return {
            "total_entries": total,
            "valid_entries": valid,
            "expired_entries": total - valid,
            "valid_ratio": valid / total if total else 0.0,
            "average_age": sum(now - entry.written_at for entry in entries) / total if total else 0.0,
        }

    # =========================================================================
    # Fallback reads
    # =========================================================================

    async def get_with_fallback(self, operation: Operation, options: FallbackOptions) -> CacheResult:
        """Get a value, falling back to cached or configured data on failure.

        Args:
            operation: Zero-argument callable returning an awaitable
            options: Fallback options

        Returns:
            CacheResult with the value and its source

        Raises:
            Exception: The operation's failure when no fallback exists
        """
        key = options.cache_key
        ttl = self.default_ttl if options.cache_duration is None else options.cache_duration
        entry = self.get_entry(key)

        if entry is not None and not entry.is_expired(self._clock()):
            return self._result(entry.value, CacheSource.CACHE)

        if entry is not None and options.stale_while_revalidate:
            self._schedule_refresh(key, operation, ttl)
            return self._result(entry.value, CacheSource.STALE, stale=True)

        try:
            if options.retry_on_error:
                value = await self.executor.run(
                    operation,
                    options.retry_config,
                    {"operation": "get_with_fallback", "cache_key": key, **options.context},
                )
            else:
                value = await operation()
        except Exception as e:
            if options.on_error:
                options.on_error(e)
            elif not isinstance(e, OperationFailedError):
                # The executor already recorded every attempt and logged the last one
                error = self.classifier.classify(
                    e, {"operation": "get_with_fallback", "cache_key": key, **options.context}
                )
                self.classifier.log(error)

            if options.fallback_data is not MISSING:
                logger.info(f"Using fallback data for {key}")
                return self._result(options.fallback_data, CacheSource.FALLBACK)

            entry = self.get_entry(key)
            if entry is not None:
                logger.info(f"Using cached data for {key} (may be stale)")
                return self._result(
                    entry.value, CacheSource.EMERGENCY, stale=entry.is_expired(self._clock())
                )

            raise

        self.set(key, value, ttl)
        return self._result(value, CacheSource.LIVE)

    async def get_with_stale_while_revalidate(
        self, operation: Operation, options: FallbackOptions
    ) -> CacheResult:
        """get_with_fallback with stale-while-revalidate forced on."""
        return await self.get_with_fallback(operation, replace(options, stale_while_revalidate=True))

    def _result(self, value: Any, source: CacheSource, stale: bool = False) -> CacheResult:
        if self._metrics is not None:
            self._metrics.cache_lookups.labels(source=source.value).inc()
        return CacheResult(value=value, source=source, stale=stale)

    def _schedule_refresh(self, key: str, operation: Operation, ttl: float) -> None:
        if key in self._refreshing:
            return

        task = asyncio.get_running_loop().create_task(self._refresh(key, operation, ttl))
        self._refreshing[key] = task
        task.add_done_callback(lambda _: self._refreshing.pop(key, None))

    async def _refresh(self, key: str, operation: Operation, ttl: float) -> None:
        try:
            value = await operation()
        except Exception as e:
            logger.warning(f"Background revalidation failed for {key}: {e}")
            return
        self.set(key, value, ttl)
        logger.debug(f"Revalidated cache entry {key}")

    async def wait_for_revalidation(self) -> None:
        """Wait until all pending background refreshes have finished."""
        while self._refreshing:
            await asyncio.gather(*list(self._refreshing.values()), return_exceptions=True)

    async def batch_get_with_fallback(
        self,
        requests: Iterable[tuple],
        cache_duration: Optional[float] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> dict[str, CacheResult]:
        """Resolve several keys concurrently.

        Args:
            requests: Tuples of (key, operation) or (key, operation, fallback)
            cache_duration: TTL for values written by this batch
            context: Diagnostic metadata

        Returns:
            Mapping of key to result; keys that failed without fallback are omitted
        """
        requests = list(requests)

        async def resolve(request: tuple) -> CacheResult:
            key, operation = request[0], request[1]
            fallback = request[2] if len(request) > 2 else MISSING
            return await self.get_with_fallback(
                operation,
                FallbackOptions(
                    cache_key=key,
                    cache_duration=cache_duration,
                    fallback_data=fallback,
                    context=dict(context or {}),
                ),
            )

        outcomes = await asyncio.gather(*(resolve(r) for r in requests), return_exceptions=True)

        results: dict[str, CacheResult] = {}
        for request, outcome in zip(requests, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Failed to fetch data for key {request[0]}: {outcome}")
                continue
            results[request[0]] = outcome
        return results

    async def preload(self, key: str, operation: Operation, ttl: Optional[float] = None) -> bool:
        """Fetch a value into the cache.

        Returns:
            True if the value was cached
        """
        try:
            value = await operation()
        except Exception as e:
            logger.warning(f"Failed to preload cache for {key}: {e}")
            return False
        self.set(key, value, ttl)
        return True

    async def warm_up(self, entries: Iterable[tuple]) -> int:
        """Preload several keys concurrently.

        Args:
            entries: Tuples of (key, operation) or (key, operation, ttl)

        Returns:
            Number of keys cached
        """
        loaded = await asyncio.gather(
            *(self.preload(e[0], e[1], e[2] if len(e) > 2 else None) for e in entries)
        )
        return sum(1 for ok in loaded if ok)

    async def aclose(self) -> None:
        """Cancel pending background refreshes."""
        tasks = list(self._refreshing.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._refreshing.clear()

    # =========================================================================
    # Persistence
    # =========================================================================

    def dump(self) -> dict[str, Any]:
        """Snapshot the cache contents.

        Returns:
            Envelope {timestamp, entries: [[key, {value, writtenAt, ttl}], ...]}
        """
        with self._lock:
            entries = [[key, entry.to_dict()] for key, entry in self._entries.items()]
        return {"timestamp": self._clock(), "entries": entries}

    def load(self, envelope: dict[str, Any]) -> int:
        """Restore entries from a dump, skipping ones already expired.

        Returns:
            Number of entries restored
        """
        now = self._clock()
        restored = []
        for key, raw in envelope.get("entries", []):
            entry = CacheEntry(raw["value"], float(raw["writtenAt"]), float(raw["ttl"]))
            if not entry.is_expired(now):
                restored.append((key, entry))

        # Keep write-time order so FIFO eviction stays correct
        restored.sort(key=lambda item: item[1].written_at)
        for key, entry in restored:
            self._insert(key, entry)
        return len(restored)


def save_cache(cache: FallbackCache, path: str) -> bool:
    """Write a cache dump as JSON.

    The dump goes to a sibling temp file first, so a failed write leaves
    the previous dump intact.

    Returns:
        True on success
    """
    tmp_path = f"{path}.tmp"
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(cache.dump(), f)
        os.replace(tmp_path, path)
    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Failed to save cache to {path}: {e}")
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        return False
    logger.info(f"Saved {len(cache)} cache entries to {path}")
    return True


def load_cache(cache: FallbackCache, path: str) -> int:
    """Restore a JSON cache dump.

    Returns:
        Number of entries restored (0 if the file is missing or unreadable)
    """
    try:
        with open(path, encoding="utf-8") as f:
            envelope = json.load(f)
    except FileNotFoundError:
        return 0
    except (OSError, ValueError) as e:
        logger.error(f"Failed to load cache from {path}: {e}")
        return 0

    try:
        restored = cache.load(envelope)
    except (KeyError, TypeError, ValueError) as e:
        logger.error(f"Malformed cache dump in {path}: {e}")
        return 0
    logger.info(f"Restored {restored} cache entries from {path}")
    return restored
