"""
Change Event Subscriber

Bridges a ChangeFeed to the InvalidationScheduler: opens one feed
subscription per scope, normalizes raw messages into ChangeEvents and
forwards them. Duplicated or reordered messages are forwarded as-is; the
scheduler's debounce-with-union and idempotent invalidation absorb them.
"""

from __future__ import annotations

import functools
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from dashsync.exceptions import DataValidationError, SessionClosedError
from dashsync.kernel.clock import AsyncioClock, Clock
from dashsync.models.events import ChangeEvent
from dashsync.realtime.feed import ChangeFeed

if TYPE_CHECKING:
    from dashsync.resilience.caching.cache_invalidation import InvalidationScheduler

logger = structlog.get_logger(__name__)


@dataclass
class SubscriberStats:
    """Statistics for change feed monitoring."""

    received: int = 0
    forwarded: int = 0
    malformed: int = 0
    dropped: int = 0


class ChangeEventSubscriber:
    """
    Feed-to-scheduler bridge for a set of scopes.

    Usage:
        async with ChangeEventSubscriber(feed, scheduler, ["bookings"]):
            ...
    """

    def __init__(
        self,
        feed: ChangeFeed,
        scheduler: InvalidationScheduler,
        scopes: Iterable[str] | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._feed = feed
        self._scheduler = scheduler
        self._clock = clock or AsyncioClock()
        self._scopes: list[str] = list(scopes or ())
        self._tokens: list[int] = []
        self._opened = False
        self._closed = False
        self._stats = SubscriberStats()

    @property
    def scopes(self) -> list[str]:
        return list(self._scopes)

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closed

    async def open(self, scopes: Iterable[str] | None = None) -> None:
        """
        Subscribe to the feed for each scope.

        Args:
            scopes: Scopes to listen to; defaults to the ones given at
                construction, then to every scope the scheduler has a rule for

        Raises:
            SessionClosedError: If the subscriber was already closed
        """
        if self._closed:
            raise SessionClosedError("ChangeEventSubscriber is closed")
        if self._opened:
            return

        if scopes is not None:
            self._scopes = list(scopes)
        elif not self._scopes:
            self._scopes = self._scheduler.known_scopes()
        self._opened = True
        self._scheduler.retain_scopes(self._scopes)

        for scope in self._scopes:
            token = await self._feed.subscribe(scope, functools.partial(self._on_message, scope))
            if self._closed:
                # Closed while we were waiting on the feed
                self._feed.unsubscribe(token)
                return
            self._tokens.append(token)

        logger.info("change_subscriber_opened", scopes=self._scopes)

    def _on_message(self, scope: str, raw: Any) -> None:
        if self._closed:
            self._stats.dropped += 1
            return

        self._stats.received += 1
        try:
            event = ChangeEvent.from_raw(raw, received_at=self._clock.now(), default_scope=scope)
        except DataValidationError as e:
            self._stats.malformed += 1
            logger.warning("change_event_malformed", scope=scope, error=str(e))
            return

        if self._scheduler.on_event(event) is None:
            self._stats.dropped += 1
        else:
            self._stats.forwarded += 1

    def close(self) -> None:
        """
        Stop forwarding events.

        Feed registrations are removed before this returns. Pending windows
        for these scopes are cancelled unless another subscriber still
        listens to them.
        """
        if self._closed:
            return
        self._closed = True

        for token in self._tokens:
            self._feed.unsubscribe(token)
        self._tokens.clear()

        cancelled = self._scheduler.release_scopes(self._scopes) if self._opened else 0
        logger.info("change_subscriber_closed", scopes=self._scopes, cancelled=cancelled)

    def get_stats(self) -> SubscriberStats:
        return self._stats

    async def __aenter__(self) -> ChangeEventSubscriber:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()
