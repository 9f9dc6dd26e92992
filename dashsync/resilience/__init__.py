"""
dashsync Resilience Layer
=========================

Components:
- caching: Query result cache and debounced invalidation
- retry: Exponential-backoff retries for loaders
"""

from dashsync.resilience.caching import (
    CacheEntry,
    CacheStats,
    CacheStatus,
    DelayPolicy,
    InvalidationScheduler,
    QueryCache,
    QueryState,
    ScopeState,
)
from dashsync.resilience.retry import RetryExecutor, RetryPolicy, RetryStats, retrying

__all__ = [
    # Caching
    "QueryCache",
    "CacheEntry",
    "CacheStats",
    "CacheStatus",
    "QueryState",
    "InvalidationScheduler",
    "DelayPolicy",
    "ScopeState",
    # Retry
    "RetryPolicy",
    "RetryExecutor",
    "RetryStats",
    "retrying",
]
