"""
Cache Invalidation Scheduler
============================

Event-driven cache invalidation for the dashboard.

Change notifications are turned into invalidations of the affected query
keys after a short, kind-dependent delay. The remote store may emit a
notification slightly before a read would observe the change (updates in
particular), so invalidating immediately risks refetching stale data.

Bursts of changes to the same scope are debounced with union: every key
from every event in the window is invalidated by a single dispatch, and the
window stays anchored at the first event instead of restarting.
"""

from __future__ import annotations

import asyncio
import functools
from collections import Counter
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import Enum

import structlog

from dashsync.exceptions import SchedulerClosedError
from dashsync.kernel.clock import AsyncioClock, Clock, TimerHandle
from dashsync.models.events import ChangeEvent, ChangeKind, InvalidationRequest
from dashsync.models.keys import QueryKey
from dashsync.realtime.rules import ScopeRule, fallback_rule
from dashsync.resilience.caching.query_cache import QueryCache

logger = structlog.get_logger(__name__)

InvalidationCallback = Callable[[InvalidationRequest], Awaitable[None] | None]


class ScopeState(str, Enum):
    """Debounce state of one scope."""

    IDLE = "idle"
    PENDING = "pending"
    DISPATCHED = "dispatched"


@dataclass(frozen=True)
class DelayPolicy:
    """
    Invalidation delay per change kind, in seconds.

    Updates wait longest: an update notification can race ahead of the
    write becoming visible to readers.
    """

    insert: float = 0.1
    update: float = 0.3
    delete: float = 0.1
    wildcard: float | None = None

    def __post_init__(self) -> None:
        delays = (self.insert, self.update, self.delete, self.wildcard_delay)
        if any(d < 0 for d in delays):
            raise ValueError("Invalidation delays must not be negative")
        if self.update < max(self.insert, self.delete):
            raise ValueError("Update delay must be >= insert and delete delays")

    @property
    def wildcard_delay(self) -> float:
        return self.update if self.wildcard is None else self.wildcard

    def delay_for(self, kind: ChangeKind) -> float:
        if kind == ChangeKind.INSERT:
            return self.insert
        if kind == ChangeKind.UPDATE:
            return self.update
        if kind == ChangeKind.DELETE:
            return self.delete
        return self.wildcard_delay


@dataclass
class PendingInvalidation:
    """An open debounce window for one scope."""

    scope: str
    keys: set[QueryKey]
    first_received: float
    delay: float
    deadline: float
    timer: TimerHandle
    event_count: int = 1

    def to_request(self) -> InvalidationRequest:
        return InvalidationRequest(
            scope=self.scope,
            target_keys=frozenset(self.keys),
            delay=self.delay,
            deadline=self.deadline,
            event_count=self.event_count,
        )


@dataclass
class InvalidationStats:
    """Statistics for cache invalidation monitoring."""

    events_received: int = 0
    events_dropped: int = 0
    debounce_merges: int = 0
    deadline_extensions: int = 0
    dispatches: int = 0
    entries_invalidated: int = 0
    cancelled: int = 0
    errors: int = 0


class InvalidationScheduler:
    """
    Debounces change events per scope and invalidates the cache.

    All state changes happen synchronously inside ``on_event`` and in the
    timer callbacks, so no window can be observed half-merged.
    """

    def __init__(
        self,
        cache: QueryCache,
        clock: Clock | None = None,
        delays: DelayPolicy | None = None,
        rules: Iterable[ScopeRule] | None = None,
    ) -> None:
        self._cache = cache
        self._clock = clock or AsyncioClock()
        self._delays = delays or DelayPolicy()
        self._rules: dict[str, ScopeRule] = {rule.scope: rule for rule in rules or ()}
        self._stats = InvalidationStats()

        self._pending: dict[str, PendingInvalidation] = {}
        self._dispatching: str | None = None
        self._callbacks: list[InvalidationCallback] = []
        self._callback_tasks: set[asyncio.Task[None]] = set()
        self._scope_refs: Counter[str] = Counter()
        self._closed = False

    @property
    def delays(self) -> DelayPolicy:
        return self._delays

    def register_rule(self, rule: ScopeRule) -> None:
        """Register (or replace) the rule for a scope."""
        self._ensure_open()
        self._rules[rule.scope] = rule

    def register_callback(self, callback: InvalidationCallback) -> None:
        """Register a callback notified after each dispatch."""
        self._ensure_open()
        self._callbacks.append(callback)

    def rule_for(self, scope: str) -> ScopeRule:
        return self._rules.get(scope) or fallback_rule(scope)

    def known_scopes(self) -> list[str]:
        """Scopes with a registered rule."""
        return list(self._rules)

    # =========================================================================
    # Events
    # =========================================================================

    def on_event(self, event: ChangeEvent) -> InvalidationRequest | None:
        """
        Schedule the invalidations for a change event.

        Returns:
            The scope's pending request after merging this event, or None if
            the scheduler is closed
        """
        if self._closed:
            self._stats.events_dropped += 1
            logger.debug("invalidation_event_dropped", scope=event.scope, reason="closed")
            return None

        self._stats.events_received += 1
        keys = self.rule_for(event.scope).affected_keys(event)
        delay = self._delays.delay_for(event.kind)
        now = self._clock.now()

        pending = self._pending.get(event.scope)
        if pending is None:
            pending = PendingInvalidation(
                scope=event.scope,
                keys=set(keys),
                first_received=now,
                delay=delay,
                deadline=now + delay,
                timer=self._clock.call_later(delay, functools.partial(self._dispatch, event.scope)),
            )
            self._pending[event.scope] = pending
            logger.debug(
                "invalidation_scheduled",
                scope=event.scope,
                kind=event.kind.value,
                delay=delay,
                keys=len(keys),
            )
            return pending.to_request()

        pending.keys.update(keys)
        pending.event_count += 1
        self._stats.debounce_merges += 1

        if delay > pending.delay:
            # Keep the window anchored at the first event, but never dispatch
            # a slower kind before its own delay has elapsed
            deadline = pending.first_received + delay
            pending.timer.cancel()
            pending.timer = self._clock.call_later(
                deadline - now, functools.partial(self._dispatch, event.scope)
            )
            pending.delay = delay
            pending.deadline = deadline
            self._stats.deadline_extensions += 1
            logger.debug(
                "invalidation_deadline_extended",
                scope=event.scope,
                kind=event.kind.value,
                deadline=deadline,
            )
        else:
            logger.debug(
                "invalidation_debounce_merge",
                scope=event.scope,
                events=pending.event_count,
            )

        return pending.to_request()

    def state(self, scope: str) -> ScopeState:
        if scope == self._dispatching:
            return ScopeState.DISPATCHED
        if scope in self._pending:
            return ScopeState.PENDING
        return ScopeState.IDLE

    def pending_scopes(self) -> list[str]:
        return list(self._pending)

    def pending_request(self, scope: str) -> InvalidationRequest | None:
        pending = self._pending.get(scope)
        return pending.to_request() if pending else None

    def get_stats(self) -> InvalidationStats:
        """Get invalidation statistics."""
        return self._stats

    # =========================================================================
    # Dispatch
    # =========================================================================

    def _dispatch(self, scope: str) -> None:
        pending = self._pending.pop(scope, None)
        if pending is None:
            return

        request = pending.to_request()
        self._dispatching = scope
        try:
            count = self._cache.invalidate(request.target_keys)
        except Exception as e:
            self._stats.errors += 1
            logger.error("invalidation_error", scope=scope, error=str(e))
            self._dispatching = None
            return

        self._stats.dispatches += 1
        self._stats.entries_invalidated += count
        logger.info(
            "invalidation_dispatched",
            scope=scope,
            keys=len(request.target_keys),
            entries=count,
            events=request.event_count,
        )

        try:
            self._notify(request)
        finally:
            self._dispatching = None

    def _notify(self, request: InvalidationRequest) -> None:
        for callback in self._callbacks:
            try:
                result = callback(request)
                if asyncio.iscoroutine(result):
                    task = asyncio.ensure_future(result)
                    self._callback_tasks.add(task)
                    task.add_done_callback(self._on_callback_done)
            except Exception as e:
                self._stats.errors += 1
                logger.warning("invalidation_callback_error", scope=request.scope, error=str(e))

    def _on_callback_done(self, task: asyncio.Task[None]) -> None:
        self._callback_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._stats.errors += 1
            logger.warning("invalidation_callback_error", error=str(error))

    def flush(self) -> int:
        """
        Dispatch every pending window now.

        Returns:
            Number of scopes dispatched
        """
        dispatched = 0
        for scope in list(self._pending):
            # A callback of an earlier dispatch may have cancelled this one
            pending = self._pending.get(scope)
            if pending is None:
                continue
            pending.timer.cancel()
            self._dispatch(scope)
            dispatched += 1
        return dispatched

    def retain_scopes(self, scopes: Iterable[str]) -> None:
        """Record one more listener for each of ``scopes``."""
        self._scope_refs.update(scopes)

    def release_scopes(self, scopes: Iterable[str]) -> int:
        """
        Drop one listener for each of ``scopes``.

        Pending windows are cancelled only for scopes nobody listens to
        anymore; other listeners still need their invalidations.

        Returns:
            Number of windows cancelled
        """
        orphaned = []
        for scope in scopes:
            if self._scope_refs[scope] > 1:
                self._scope_refs[scope] -= 1
            else:
                self._scope_refs.pop(scope, None)
                orphaned.append(scope)
        return self.cancel_scopes(orphaned)

    def listener_count(self, scope: str) -> int:
        return self._scope_refs[scope]

    def cancel_scopes(self, scopes: Iterable[str]) -> int:
        """
        Drop pending windows without invalidating anything.

        Returns:
            Number of windows cancelled
        """
        cancelled = 0
        for scope in scopes:
            pending = self._pending.pop(scope, None)
            if pending is None:
                continue
            pending.timer.cancel()
            cancelled += 1

        if cancelled:
            self._stats.cancelled += cancelled
            logger.debug("invalidation_cancelled", scopes=cancelled)
        return cancelled

    async def close(self, flush: bool = False) -> None:
        """
        Stop accepting events.

        Args:
            flush: Dispatch pending windows instead of discarding them
        """
        if self._closed:
            return
        self._closed = True

        if flush:
            self.flush()
        else:
            self.cancel_scopes(list(self._pending))

        if self._callback_tasks:
            await asyncio.gather(*self._callback_tasks, return_exceptions=True)

        logger.info("invalidation_scheduler_closed", flushed=flush)

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise SchedulerClosedError("InvalidationScheduler is closed")
