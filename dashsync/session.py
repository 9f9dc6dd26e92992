"""
Sync Session

Explicit wiring of the sync layer for one dashboard session: clock, query
cache, retry executor, invalidation scheduler and change subscriptions.
Nothing is process-global; closing the session discards all of it.
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

import structlog

from dashsync.config import SyncSettings, get_settings
from dashsync.exceptions import SessionClosedError, SyncError
from dashsync.kernel.clock import AsyncioClock, Clock
from dashsync.models.keys import QueryKey
from dashsync.monitoring.logging import bind_context, setup_logging, unbind_context
from dashsync.realtime.feed import ChangeFeed, RedisChangeFeed
from dashsync.realtime.rules import default_scope_rules
from dashsync.realtime.subscriber import ChangeEventSubscriber
from dashsync.resilience.caching.cache_invalidation import InvalidationScheduler
from dashsync.resilience.caching.query_cache import QueryCache, QueryState
from dashsync.resilience.retry import RetryExecutor

logger = structlog.get_logger(__name__)


class QueryHandle:
    """A widget's live view of one query. Release it when the widget goes away."""

    def __init__(
        self,
        session: SyncSession,
        key: QueryKey,
        loader: Callable[[], Awaitable[Any]],
    ) -> None:
        self._session = session
        self.key = key
        self._loader = loader
        self._released = False

    @property
    def value(self) -> Any | None:
        return self._session.cache.get(self.key)

    @property
    def state(self) -> QueryState | None:
        return self._session.cache.get_state(self.key)

    @property
    def error(self) -> BaseException | None:
        state = self.state
        return state.error if state else None

    @property
    def released(self) -> bool:
        return self._released

    async def refetch(self) -> Any | None:
        """Force a reload, recording a failure on the entry instead of raising."""
        if self._released:
            return self.value
        try:
            return await self._session.cache.fetch(self.key, self._loader)
        except Exception:
            return self.value

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._session.cache.unsubscribe(self.key)

    def __enter__(self) -> QueryHandle:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.release()


class SyncSession:
    """
    Owns every piece of sync state for one session.

    Usage:
        async with SyncSession(feed=feed) as session:
            await session.open_channel(["bookings", "customers"])
            handle = await session.use_query(DashboardKeys.stats(), load_stats)
    """

    def __init__(
        self,
        settings: SyncSettings | None = None,
        clock: Clock | None = None,
        feed: ChangeFeed | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock or AsyncioClock()
        self.feed = feed
        self._owns_feed = False

        self.cache = QueryCache(clock=self.clock, settings=self.settings)
        self.retry = RetryExecutor(self.settings.retry_policy(), clock=self.clock)
        self.scheduler = InvalidationScheduler(
            self.cache,
            clock=self.clock,
            delays=self.settings.delay_policy(),
            rules=default_scope_rules(),
        )

        self.session_id = uuid.uuid4().hex[:12]
        self._subscribers: list[ChangeEventSubscriber] = []
        self._started = False
        self._closed = False

    async def start(self) -> None:
        """Connect the configured feed and start cache housekeeping."""
        self._ensure_open()
        if self._started:
            return
        self._started = True

        if self.settings.log_configure:
            setup_logging(self.settings)
        bind_context(session_id=self.session_id)

        if self.feed is None and self.settings.redis_url:
            self.feed = RedisChangeFeed(
                redis_url=self.settings.redis_url,
                channel_prefix=self.settings.feed_channel_prefix,
            )
            self._owns_feed = True

        self.cache.start()
        logger.info("sync_session_started", feed=type(self.feed).__name__ if self.feed else None)

    async def open_channel(self, scopes: Iterable[str] | None = None) -> ChangeEventSubscriber:
        """
        Listen to change notifications for ``scopes``.

        Raises:
            SyncError: If no change feed is configured
        """
        self._ensure_open()
        if self.feed is None:
            raise SyncError("No change feed configured for this session")

        subscriber = ChangeEventSubscriber(self.feed, self.scheduler, scopes, clock=self.clock)
        await subscriber.open()
        self._subscribers.append(subscriber)
        return subscriber

    async def use_query(
        self,
        key: QueryKey,
        loader: Callable[[], Awaitable[Any]],
        retry: bool = True,
    ) -> QueryHandle:
        """
        Observe ``key`` and load it if needed.

        Loader failures are recorded on the entry and visible through the
        handle's state; they do not propagate, so one failing widget does
        not take down the others.
        """
        self._ensure_open()
        effective = self.retry.wrap(loader) if retry else loader
        self.cache.subscribe(key, effective)
        handle = QueryHandle(self, key, effective)

        try:
            await self.cache.get_or_fetch(key, effective)
        except Exception as e:
            logger.warning(
                "query_load_failed",
                key=str(key),
                error=str(e),
                error_type=type(e).__name__,
            )
        return handle

    def invalidate(self, keys: QueryKey | Iterable[QueryKey]) -> int:
        """Invalidate immediately, e.g. for a manual refresh button."""
        self._ensure_open()
        return self.cache.invalidate(keys)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        for subscriber in self._subscribers:
            subscriber.close()
        self._subscribers.clear()

        await self.scheduler.close()
        await self.cache.dispose()
        if self._owns_feed and self.feed is not None:
            await self.feed.close()
        logger.info("sync_session_closed")
        unbind_context("session_id")

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise SessionClosedError("SyncSession is closed")

    async def __aenter__(self) -> SyncSession:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
