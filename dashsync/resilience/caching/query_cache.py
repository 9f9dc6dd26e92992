"""
Query Cache Implementation
==========================

In-memory result cache for dashboard queries.

Entries are addressed by structural QueryKeys and carry their own
staleness, status and subscriber bookkeeping. Fetches are single-flight:
concurrent callers for the same key share one loader invocation. Change
notifications invalidate entries; observed entries refetch in the
background, unobserved ones refetch lazily on the next read.
"""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog

from dashsync.config import SyncSettings, get_settings
from dashsync.exceptions import SessionClosedError
from dashsync.kernel.clock import AsyncioClock, Clock, TimerHandle
from dashsync.models.keys import QueryKey

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

Loader = Callable[[], Awaitable[Any]]


class CacheStatus(str, Enum):
    """Lifecycle status of a cache entry."""

    IDLE = "idle"
    FETCHING = "fetching"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class CacheEntry:
    """Represents one cached query result. Owned by QueryCache."""

    key: QueryKey
    value: Any = None
    has_data: bool = False
    fetched_at: float | None = None
    stale_at: float | None = None
    status: CacheStatus = CacheStatus.IDLE
    last_error: BaseException | None = None
    last_fetch_failed: bool = False
    subscriber_count: int = 0
    inflight: asyncio.Task[Any] | None = None
    loader: Loader | None = None
    invalidated: bool = False
    invalidated_at: float | None = None
    generation: int = 0
    refetch_pending: bool = False
    idle_since: float | None = None

    @property
    def is_fetching(self) -> bool:
        """Check if a fetch for this entry is in flight."""
        return self.inflight is not None and not self.inflight.done()

    def is_stale(self, now: float) -> bool:
        """Check if the entry's data needs a refetch."""
        if not self.has_data or self.invalidated or self.stale_at is None:
            return True
        return now >= self.stale_at

    def stale_since(self, now: float) -> float:
        """Earliest time at which the entry was known to be stale."""
        marks = [t for t in (self.stale_at, self.invalidated_at) if t is not None]
        return min(marks) if marks else now


@dataclass(frozen=True)
class QueryState:
    """Read-only snapshot of an entry, for rendering a single widget."""

    key: QueryKey
    value: Any
    status: CacheStatus
    error: BaseException | None
    is_stale: bool
    is_fetching: bool
    fetched_at: float | None
    subscriber_count: int


@dataclass
class CacheStats:
    """Statistics for cache performance monitoring."""

    hits: int = 0
    misses: int = 0
    fetches: int = 0
    coalesced: int = 0
    invalidations: int = 0
    background_refetches: int = 0
    errors: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0


class QueryCache:
    """
    Session-scoped query result cache with single-flight fetching.

    The entry map is the only shared mutable state of the sync layer. All
    access goes through the methods below, which never hold state across
    an ``await`` so they are atomic on the event loop.
    """

    def __init__(
        self,
        clock: Clock | None = None,
        settings: SyncSettings | None = None,
        stale_time: float | None = None,
        gc_time: float | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._clock = clock or AsyncioClock()
        self._stale_time = settings.stale_time_seconds if stale_time is None else stale_time
        self._gc_time = settings.gc_time_seconds if gc_time is None else gc_time
        self._gc_interval = settings.gc_interval_seconds

        self._entries: dict[QueryKey, CacheEntry] = {}
        self._stats = CacheStats()
        self._gc_timer: TimerHandle | None = None
        self._disposed = False
        self._logger = logger.bind(service="query_cache")

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, key: QueryKey) -> Any | None:
        """
        Get a cached value without side effects on the entry.

        Returns the value if it is fresh, or if the latest refresh failed
        and a previous successful value exists (stale-while-error).
        Otherwise returns None and the caller should fetch.
        """
        entry = self._entries.get(key)
        if entry is None or not entry.has_data:
            self._stats.misses += 1
            return None

        if entry.last_fetch_failed or not entry.is_stale(self._clock.now()):
            self._stats.hits += 1
            return entry.value

        self._stats.misses += 1
        return None

    def get_state(self, key: QueryKey) -> QueryState | None:
        """Snapshot an entry's status, or None if the key is unknown."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        return QueryState(
            key=key,
            value=entry.value,
            status=entry.status,
            error=entry.last_error,
            is_stale=entry.is_stale(self._clock.now()),
            is_fetching=entry.is_fetching,
            fetched_at=entry.fetched_at,
            subscriber_count=entry.subscriber_count,
        )

    def keys(self) -> list[QueryKey]:
        """List all keys currently held."""
        return list(self._entries)

    def get_stats(self) -> CacheStats:
        """Get cache statistics."""
        return self._stats

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    # =========================================================================
    # Fetching
    # =========================================================================

    async def fetch(self, key: QueryKey, loader: Loader) -> Any:
        """
        Fetch a value through ``loader``, coalescing concurrent calls.

        If a fetch for ``key`` is already in flight the caller joins it and
        ``loader`` is not invoked. Loader errors propagate to every caller
        joined on the same fetch.

        Raises:
            SessionClosedError: If the cache has been disposed
        """
        self._ensure_open()
        entry = self._entry(key)

        task = entry.inflight
        if task is not None and not task.done():
            self._stats.coalesced += 1
            self._logger.debug("cache_fetch_coalesced", key=str(key))
        else:
            task = self._start_fetch(entry, loader)

        # Shield so one caller giving up does not cancel the shared fetch
        return await asyncio.shield(task)

    async def get_or_fetch(self, key: QueryKey, loader: Loader) -> Any:
        """Return the fresh cached value, or fetch it if missing or stale."""
        self._ensure_open()
        entry = self._entries.get(key)
        if entry is not None and entry.has_data and not entry.is_stale(self._clock.now()):
            self._stats.hits += 1
            return entry.value

        self._stats.misses += 1
        return await self.fetch(key, loader)

    def set_value(self, key: QueryKey, value: Any) -> None:
        """Write a value directly, e.g. after an optimistic mutation."""
        self._ensure_open()
        entry = self._entry(key)
        self._store(entry, value, self._clock.now())
        entry.invalidated = False
        entry.invalidated_at = None

    async def mutate(
        self,
        keys: QueryKey | Iterable[QueryKey],
        updater: Callable[[Any], Any],
        mutation: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Apply an optimistic update around a remote write.

        Every entry in ``keys`` that holds data gets ``updater(value)``
        written right away. If ``mutation`` raises, those entries are
        restored to their previous values and the error propagates. Either
        way the keys are invalidated once the mutation settles, so observed
        widgets reload the authoritative data.

        Args:
            keys: Exact keys whose cached values the mutation affects
            updater: Maps a cached value to its optimistic replacement
            mutation: The remote write

        Returns:
            The mutation's result
        """
        self._ensure_open()
        targets = [keys] if isinstance(keys, QueryKey) else list(keys)
        now = self._clock.now()

        snapshots: list[tuple[CacheEntry, Any, Any, float | None]] = []
        for key in targets:
            entry = self._entries.get(key)
            if entry is None or not entry.has_data:
                continue
            optimistic = updater(entry.value)
            snapshots.append((entry, optimistic, entry.value, entry.fetched_at))
            self._store(entry, optimistic, now)

        try:
            return await mutation()
        except Exception as e:
            if not self._disposed:
                for entry, optimistic, value, fetched_at in snapshots:
                    # A refetch that landed meanwhile is newer than the snapshot
                    if entry.value is optimistic:
                        entry.value = value
                        entry.fetched_at = fetched_at
                self._logger.warning(
                    "cache_mutation_rolled_back",
                    keys=[str(k) for k in targets],
                    restored=len(snapshots),
                    error=str(e),
                    error_type=type(e).__name__,
                )
            raise
        finally:
            self.invalidate(targets)

    def _start_fetch(self, entry: CacheEntry, loader: Loader) -> asyncio.Task[Any]:
        entry.loader = loader
        entry.status = CacheStatus.FETCHING
        entry.refetch_pending = False
        self._stats.fetches += 1

        task = asyncio.ensure_future(self._run_loader(entry, loader, entry.generation))
        entry.inflight = task
        task.add_done_callback(functools.partial(self._on_fetch_done, entry))
        return task

    async def _run_loader(self, entry: CacheEntry, loader: Loader, generation: int) -> Any:
        try:
            value = await loader()
        except asyncio.CancelledError:
            if entry.status == CacheStatus.FETCHING:
                entry.status = CacheStatus.SUCCESS if entry.has_data else CacheStatus.IDLE
            raise
        except Exception as e:
            entry.status = CacheStatus.ERROR
            entry.last_error = e
            entry.last_fetch_failed = True
            self._stats.errors += 1
            self._logger.warning(
                "cache_fetch_failed",
                key=str(entry.key),
                error=str(e),
                error_type=type(e).__name__,
                has_stale_value=entry.has_data,
            )
            raise
        else:
            self._store(entry, value, self._clock.now())
            if entry.generation == generation:
                entry.invalidated = False
                entry.invalidated_at = None
            else:
                # Invalidated while in flight: the result may predate the change
                self._logger.debug("cache_fetch_superseded", key=str(entry.key))
            return value
        finally:
            if entry.inflight is asyncio.current_task():
                entry.inflight = None

    def _store(self, entry: CacheEntry, value: Any, now: float) -> None:
        entry.value = value
        entry.has_data = True
        entry.fetched_at = now
        stale_at = now + self._stale_time
        entry.stale_at = stale_at if entry.stale_at is None else max(entry.stale_at, stale_at)
        entry.status = CacheStatus.SUCCESS
        entry.last_error = None
        entry.last_fetch_failed = False

    def _on_fetch_done(self, entry: CacheEntry, task: asyncio.Task[Any]) -> None:
        # Mark the outcome as retrieved; callers already received it via shield
        if not task.cancelled():
            task.exception()

        if not entry.refetch_pending:
            return
        entry.refetch_pending = False
        if self._disposed or entry.subscriber_count == 0 or entry.loader is None:
            return
        if self._entries.get(entry.key) is entry:
            self._refetch_in_background(entry)

    def _refetch_in_background(self, entry: CacheEntry) -> None:
        assert entry.loader is not None
        self._stats.background_refetches += 1
        self._logger.debug(
            "cache_background_refetch",
            key=str(entry.key),
            subscribers=entry.subscriber_count,
        )
        self._start_fetch(entry, entry.loader)

    # =========================================================================
    # Invalidation
    # =========================================================================

    def invalidate(self, keys: QueryKey | Iterable[QueryKey]) -> int:
        """
        Mark every entry equal to or under any of ``keys`` as stale.

        Observed entries refetch in the background right away (or right
        after their current fetch settles); unobserved entries refetch on
        their next read.

        Returns:
            Number of entries matched
        """
        if self._disposed:
            return 0

        targets = [keys] if isinstance(keys, QueryKey) else list(keys)
        now = self._clock.now()
        matched = 0
        refetched = 0

        for key, entry in list(self._entries.items()):
            if not any(key.is_under(target) for target in targets):
                continue

            matched += 1
            entry.invalidated = True
            if entry.invalidated_at is None:
                entry.invalidated_at = now
            entry.generation += 1
            self._stats.invalidations += 1

            if entry.subscriber_count > 0 and entry.loader is not None:
                if entry.is_fetching:
                    entry.refetch_pending = True
                else:
                    self._refetch_in_background(entry)
                refetched += 1

        self._logger.debug(
            "cache_invalidated",
            targets=[str(t) for t in targets],
            matched=matched,
            refetching=refetched,
        )
        return matched

    def remove(self, keys: QueryKey | Iterable[QueryKey]) -> int:
        """Drop entries equal to or under any of ``keys``."""
        targets = [keys] if isinstance(keys, QueryKey) else list(keys)
        doomed = [k for k in self._entries if any(k.is_under(t) for t in targets)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def subscribe(self, key: QueryKey, loader: Loader | None = None) -> int:
        """
        Register an observer of ``key``.

        Args:
            key: Query key
            loader: Loader to use for background refetches

        Returns:
            The new subscriber count
        """
        self._ensure_open()
        entry = self._entry(key)
        entry.subscriber_count += 1
        entry.idle_since = None
        if loader is not None:
            entry.loader = loader
        return entry.subscriber_count

    def unsubscribe(self, key: QueryKey) -> int:
        """
        Remove an observer of ``key``.

        Dropping the last observer cancels any deferred background refetch;
        the entry then refetches lazily and becomes eligible for GC.

        Returns:
            The new subscriber count
        """
        entry = self._entries.get(key)
        if entry is None or entry.subscriber_count == 0:
            self._logger.warning("cache_unsubscribe_without_subscriber", key=str(key))
            return 0

        entry.subscriber_count -= 1
        if entry.subscriber_count == 0:
            entry.idle_since = self._clock.now()
            if entry.refetch_pending:
                entry.refetch_pending = False
                self._logger.debug("cache_refetch_suppressed", key=str(key))
        return entry.subscriber_count

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def collect_garbage(self) -> int:
        """
        Evict entries nobody observes whose data has been stale for longer
        than the retention time.

        Returns:
            Number of entries evicted
        """
        now = self._clock.now()
        evicted = []

        for key, entry in self._entries.items():
            if entry.subscriber_count > 0 or entry.is_fetching:
                continue
            if not entry.is_stale(now):
                continue
            idle_since = entry.idle_since if entry.idle_since is not None else now
            since = max(idle_since, entry.stale_since(now))
            if now - since >= self._gc_time:
                evicted.append(key)

        for key in evicted:
            del self._entries[key]

        if evicted:
            self._stats.evictions += len(evicted)
            self._logger.debug("cache_garbage_collected", evicted=len(evicted))
        return len(evicted)

    def start(self) -> None:
        """Start the periodic garbage sweep."""
        self._ensure_open()
        if self._gc_timer is None:
            self._gc_timer = self._clock.call_later(self._gc_interval, self._gc_tick)

    def _gc_tick(self) -> None:
        self._gc_timer = None
        if self._disposed:
            return
        self.collect_garbage()
        self._gc_timer = self._clock.call_later(self._gc_interval, self._gc_tick)

    async def dispose(self) -> None:
        """Cancel timers and in-flight fetches, then drop every entry."""
        if self._disposed:
            return
        self._disposed = True

        if self._gc_timer is not None:
            self._gc_timer.cancel()
            self._gc_timer = None

        inflight = [e.inflight for e in self._entries.values() if e.is_fetching]
        for task in inflight:
            task.cancel()
        if inflight:
            await asyncio.gather(*inflight, return_exceptions=True)

        count = len(self._entries)
        self._entries.clear()
        self._logger.info("query_cache_disposed", entries=count)

    def _ensure_open(self) -> None:
        if self._disposed:
            raise SessionClosedError("QueryCache has been disposed")

    def _entry(self, key: QueryKey) -> CacheEntry:
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(key=key, idle_since=self._clock.now())
            self._entries[key] = entry
        return entry
