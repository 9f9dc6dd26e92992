"""
dashsync - Test Fixtures

Shared pytest fixtures for all test modules. Every timing-sensitive test
runs on a VirtualClock; nothing sleeps in wall-clock time.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from typing import Any
from unittest.mock import MagicMock

import pytest

from dashsync.config import SyncSettings, get_settings
from dashsync.kernel.clock import VirtualClock
from dashsync.realtime.feed import InMemoryChangeFeed
from dashsync.realtime.rules import default_scope_rules
from dashsync.resilience.caching.cache_invalidation import InvalidationScheduler
from dashsync.resilience.caching.query_cache import QueryCache


class GatedLoader:
    """
    Loader whose calls block until released.

    Each call returns the next queued outcome: a value, or an exception
    instance to raise.
    """

    def __init__(self, *outcomes: Any) -> None:
        self.outcomes = list(outcomes) or ["value"]
        self.calls = 0
        self.gate = asyncio.Event()
        self.gate.set()

    def hold(self) -> None:
        self.gate.clear()

    def release(self) -> None:
        self.gate.set()

    async def __call__(self) -> Any:
        index = min(self.calls, len(self.outcomes) - 1)
        self.calls += 1
        await self.gate.wait()
        outcome = self.outcomes[index]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


# =============================================================================
# Settings
# =============================================================================


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Make every test see a fresh settings instance."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> SyncSettings:
    """Settings with the documented defaults, independent of the environment."""
    return SyncSettings(
        _env_file=None,
        stale_time_seconds=30.0,
        gc_time_seconds=300.0,
        gc_interval_seconds=60.0,
        insert_delay_seconds=0.1,
        delete_delay_seconds=0.1,
        update_delay_seconds=0.3,
        retry_max_attempts=3,
        retry_base_delay_seconds=1.0,
        retry_backoff_multiplier=2.0,
        redis_url=None,
        log_configure=False,
    )


# =============================================================================
# Core components
# =============================================================================


@pytest.fixture
def clock() -> VirtualClock:
    """Create a virtual clock starting at t=0."""
    return VirtualClock()


@pytest.fixture
async def cache(clock, settings) -> AsyncGenerator[QueryCache, None]:
    """Create a query cache on the virtual clock."""
    cache = QueryCache(clock=clock, settings=settings)
    yield cache
    await cache.dispose()


@pytest.fixture
async def scheduler(cache, clock, settings) -> AsyncGenerator[InvalidationScheduler, None]:
    """Create a scheduler wired to the real cache and the dashboard rules."""
    scheduler = InvalidationScheduler(
        cache,
        clock=clock,
        delays=settings.delay_policy(),
        rules=default_scope_rules(),
    )
    yield scheduler
    await scheduler.close()


@pytest.fixture
def mock_cache():
    """Create a mock cache recording invalidations."""
    cache = MagicMock(spec=QueryCache)
    cache.invalidate = MagicMock(return_value=1)
    return cache


@pytest.fixture
def feed() -> InMemoryChangeFeed:
    """Create an in-memory change feed."""
    return InMemoryChangeFeed()


@pytest.fixture
def make_loader():
    """Factory for GatedLoader instances."""
    return GatedLoader
