"""
dashsync Query Caching
======================

Single-flight query result cache and the change-driven invalidation
scheduler that keeps it consistent with the remote store.
"""

from dashsync.resilience.caching.cache_invalidation import (
    DelayPolicy,
    InvalidationScheduler,
    InvalidationStats,
    ScopeState,
)
from dashsync.resilience.caching.query_cache import (
    CacheEntry,
    CacheStats,
    CacheStatus,
    QueryCache,
    QueryState,
)

__all__ = [
    "QueryCache",
    "CacheEntry",
    "CacheStats",
    "CacheStatus",
    "QueryState",
    "InvalidationScheduler",
    "InvalidationStats",
    "DelayPolicy",
    "ScopeState",
]
