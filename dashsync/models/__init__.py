"""
dashsync Models

Query keys, change events and invalidation requests.
"""

from dashsync.models.base import SyncModel
from dashsync.models.events import ChangeEvent, ChangeKind, InvalidationRequest
from dashsync.models.keys import (
    BookingKeys,
    CustomerKeys,
    DashboardKeys,
    PackageKeys,
    QueryKey,
    StaffKeys,
    TeamKeys,
)

__all__ = [
    "SyncModel",
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
]
