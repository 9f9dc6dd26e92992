"""
Clock Abstraction

Injectable time source and cancellable delayed-task queue. Debounce timers,
backoff waits and garbage sweeps all go through a Clock so production code
runs on the asyncio loop while tests drive a deterministic virtual clock.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog

logger = structlog.get_logger(__name__)


class TimerHandle(Protocol):
    """Handle to a scheduled callback."""

    def cancel(self) -> None: ...

    def cancelled(self) -> bool: ...


class Clock(Protocol):
    """Time source and delayed-task scheduler."""

    def now(self) -> float:
        """Monotonic time in seconds."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend the calling task for ``seconds``."""
        ...

    def call_later(self, delay: float, callback: Callable[[], Any]) -> TimerHandle:
        """Run ``callback`` after ``delay`` seconds."""
        ...


class AsyncioClock:
    """Clock backed by the running asyncio event loop."""

    def now(self) -> float:
        return asyncio.get_running_loop().time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    def call_later(self, delay: float, callback: Callable[[], Any]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(max(0.0, delay), callback)


@dataclass(order=True)
class VirtualTimer:
    """A callback queued on a VirtualClock."""

    when: float
    seq: int
    callback: Callable[[], Any] = field(compare=False)
    _cancelled: bool = field(default=False, compare=False)

    def cancel(self) -> None:
        self._cancelled = True

    def cancelled(self) -> bool:
        return self._cancelled


class VirtualClock:
    """
    Deterministic clock for tests and simulations.

    Time only moves when ``advance`` is awaited. Due timers fire in
    (deadline, insertion) order, and the event loop is allowed to settle
    between timers so that tasks woken by one timer can schedule the next.
    """

    def __init__(self, start: float = 0.0, settle_rounds: int = 25) -> None:
        self._now = start
        self._settle_rounds = settle_rounds
        self._queue: list[VirtualTimer] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], Any]) -> VirtualTimer:
        timer = VirtualTimer(
            when=self._now + max(0.0, delay),
            seq=next(self._seq),
            callback=callback,
        )
        heapq.heappush(self._queue, timer)
        return timer

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return

        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        def _wake() -> None:
            if not future.done():
                future.set_result(None)

        timer = self.call_later(seconds, _wake)
        try:
            await future
        except asyncio.CancelledError:
            timer.cancel()
            raise

    @property
    def pending_timers(self) -> int:
        """Number of timers that are still scheduled."""
        return sum(1 for t in self._queue if not t.cancelled())

    async def settle(self) -> None:
        """Yield to the event loop until ready tasks have had a chance to run."""
        for _ in range(self._settle_rounds):
            await asyncio.sleep(0)

    async def advance(self, seconds: float) -> None:
        """Move time forward by ``seconds``, firing every timer that falls due."""
        if seconds < 0:
            raise ValueError("Cannot move a clock backwards")

        target = self._now + seconds
        await self.settle()

        while self._queue and self._queue[0].when <= target:
            timer = heapq.heappop(self._queue)
            if timer.cancelled():
                continue
            self._now = timer.when
            try:
                timer.callback()
            except Exception as e:
                logger.error("virtual_timer_callback_error", error=str(e))
            await self.settle()

        self._now = target
        await self.settle()

    async def run_all(self, limit: float = 3600.0) -> None:
        """Advance until no timers remain, bounded by ``limit`` seconds."""
        deadline = self._now + limit
        await self.settle()
        while True:
            live = [t for t in self._queue if not t.cancelled()]
            if not live:
                return
            nxt = min(live).when
            if nxt > deadline:
                return
            await self.advance(nxt - self._now)
