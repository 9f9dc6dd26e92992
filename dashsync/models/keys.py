"""
Query Keys

Structural identifiers for cached query results, plus the key factories
used by the operations dashboard.

Keys are hierarchical: ``QueryKey("bookings")`` covers every bookings key,
and ``BookingKeys.detail("42")`` covers only that booking's detail query.
Invalidating a key invalidates everything under it.
"""

from __future__ import annotations

from collections.abc import Mapping, Set
from dataclasses import dataclass
from typing import Any


def _freeze(value: Any) -> Any:
    """Turn a parameter into a hashable, order-stable equivalent."""
    if isinstance(value, Mapping):
        return tuple(sorted(((str(k), _freeze(v)) for k, v in value.items()), key=lambda kv: kv[0]))
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    if isinstance(value, Set):
        return tuple(sorted((_freeze(v) for v in value), key=repr))
    return value


@dataclass(frozen=True)
class QueryKey:
    """Composite identifier: domain name plus ordered parameters."""

    domain: str
    params: tuple[Any, ...] = ()

    def __post_init__(self) -> None:
        if not self.domain:
            raise ValueError("QueryKey domain must not be empty")
        object.__setattr__(self, "params", _freeze(tuple(self.params)))

    @classmethod
    def of(cls, domain: str, *params: Any) -> QueryKey:
        """Build a key from positional parameters."""
        return cls(domain, params)

    @property
    def root(self) -> QueryKey:
        """The key covering the whole domain."""
        return QueryKey(self.domain)

    def child(self, *params: Any) -> QueryKey:
        """A key one or more levels below this one."""
        return QueryKey(self.domain, self.params + params)

    def is_under(self, prefix: QueryKey) -> bool:
        """True if ``prefix`` equals this key or is one of its ancestors."""
        if self.domain != prefix.domain:
            return False
        n = len(prefix.params)
        return self.params[:n] == prefix.params

    def __str__(self) -> str:
        return "/".join([self.domain, *(str(p) for p in self.params)])


# =============================================================================
# Dashboard key factories
# =============================================================================


class DashboardKeys:
    """Keys of the admin dashboard widgets."""

    all = QueryKey("dashboard")

    @staticmethod
    def stats() -> QueryKey:
        return DashboardKeys.all.child("stats")

    @staticmethod
    def today_stats() -> QueryKey:
        return DashboardKeys.all.child("today-stats")

    @staticmethod
    def today_bookings() -> QueryKey:
        return DashboardKeys.all.child("today-bookings")

    @staticmethod
    def by_status() -> QueryKey:
        return DashboardKeys.all.child("by-status")

    @staticmethod
    def revenue(days: int) -> QueryKey:
        return DashboardKeys.all.child("revenue", days)


class BookingKeys:
    """Keys of booking lists and details."""

    all = QueryKey("bookings")

    @staticmethod
    def list(show_archived: bool = False) -> QueryKey:
        return BookingKeys.all.child("list", {"show_archived": show_archived})

    @staticmethod
    def by_date_range(start: str, end: str, filters: Mapping[str, Any] | None = None) -> QueryKey:
        return BookingKeys.all.child("date-range", start, end, dict(filters or {}))

    @staticmethod
    def by_customer(customer_id: str, show_archived: bool = False) -> QueryKey:
        return BookingKeys.all.child("customer", customer_id, {"show_archived": show_archived})

    @staticmethod
    def detail(booking_id: str) -> QueryKey:
        return BookingKeys.all.child("detail", booking_id)


class CustomerKeys:
    all = QueryKey("customers")

    @staticmethod
    def list(show_archived: bool = False) -> QueryKey:
        return CustomerKeys.all.child("list", {"show_archived": show_archived})

    @staticmethod
    def detail(customer_id: str) -> QueryKey:
        return CustomerKeys.all.child("detail", customer_id)


class StaffKeys:
    all = QueryKey("staff")

    @staticmethod
    def list(role: str | None = None) -> QueryKey:
        return StaffKeys.all.child("list", {"role": role})

    @staticmethod
    def detail(staff_id: str) -> QueryKey:
        return StaffKeys.all.child("detail", staff_id)


class TeamKeys:
    all = QueryKey("teams")

    @staticmethod
    def list(show_archived: bool = False) -> QueryKey:
        return TeamKeys.all.child("list", {"show_archived": show_archived})

    @staticmethod
    def detail(team_id: str) -> QueryKey:
        return TeamKeys.all.child("detail", team_id)


class PackageKeys:
    all = QueryKey("packages")

    @staticmethod
    def unified() -> QueryKey:
        return PackageKeys.all.child("unified")

    @staticmethod
    def detail(package_id: str) -> QueryKey:
        return PackageKeys.all.child("detail", package_id)
