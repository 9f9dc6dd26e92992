"""
dashsync - Dashboard Data Synchronization
=========================================

Keeps an in-memory query result cache consistent with a remote store that
pushes change notifications:

- QueryCache: single-flight fetches, staleness and subscriber tracking
- InvalidationScheduler: per-kind delayed, debounced invalidation
- RetryExecutor: exponential-backoff retries for loaders
- PaginationView: paging over in-memory collections
- SyncSession: explicit wiring of all of the above
"""

__version__ = "0.1.0"

from dashsync.config import SyncSettings, get_settings
from dashsync.exceptions import (
    AuthorizationError,
    DataValidationError,
    NetworkUnavailableError,
    PermanentError,
    RequestTimeoutError,
    SchedulerClosedError,
    SessionClosedError,
    SyncError,
    TransientError,
    is_permanent_error,
    is_transient_error,
)
from dashsync.kernel import AsyncioClock, Clock, VirtualClock
from dashsync.models import (
    BookingKeys,
    ChangeEvent,
    ChangeKind,
    CustomerKeys,
    DashboardKeys,
    InvalidationRequest,
    PackageKeys,
    QueryKey,
    StaffKeys,
    TeamKeys,
)
from dashsync.pagination import PageWindow, PaginationView
from dashsync.realtime import (
    ChangeEventSubscriber,
    InMemoryChangeFeed,
    RedisChangeFeed,
    ScopeRule,
    default_scope_rules,
)
from dashsync.resilience import (
    CacheStatus,
    DelayPolicy,
    InvalidationScheduler,
    QueryCache,
    QueryState,
    RetryExecutor,
    RetryPolicy,
    ScopeState,
    retrying,
)
from dashsync.session import QueryHandle, SyncSession

__all__ = [
    "__version__",
    # Configuration
    "SyncSettings",
    "get_settings",
    # Errors
    "SyncError",
    "TransientError",
    "NetworkUnavailableError",
    "RequestTimeoutError",
    "PermanentError",
    "AuthorizationError",
    "DataValidationError",
    "SchedulerClosedError",
    "SessionClosedError",
    "is_transient_error",
    "is_permanent_error",
    # Kernel
    "Clock",
    "AsyncioClock",
    "VirtualClock",
    # Models
    "QueryKey",
    "ChangeKind",
    "ChangeEvent",
    "InvalidationRequest",
    "DashboardKeys",
    "BookingKeys",
    "CustomerKeys",
    "StaffKeys",
    "TeamKeys",
    "PackageKeys",
    # Cache & invalidation
    "QueryCache",
    "QueryState",
    "CacheStatus",
    "InvalidationScheduler",
    "DelayPolicy",
    "ScopeState",
    # Retry
    "RetryPolicy",
    "RetryExecutor",
    "retrying",
    # Realtime
    "ChangeEventSubscriber",
    "InMemoryChangeFeed",
    "RedisChangeFeed",
    "ScopeRule",
    "default_scope_rules",
    # Pagination
    "PageWindow",
    "PaginationView",
    # Session
    "SyncSession",
    "QueryHandle",
]
