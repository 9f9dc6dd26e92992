"""
Scope Rules

Mapping from change-feed scopes (tables) to the query keys a change in
that scope affects.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass

from dashsync.models.events import ChangeEvent, ChangeKind
from dashsync.models.keys import (
    BookingKeys,
    CustomerKeys,
    DashboardKeys,
    PackageKeys,
    QueryKey,
    StaffKeys,
    TeamKeys,
)


@dataclass(frozen=True)
class ScopeRule:
    """
    Affected keys for one scope.

    ``keys`` are invalidated for every event in the scope. When an update
    or delete names the changed row, ``subject_keys`` contributes the keys
    specific to that row as well.
    """

    scope: str
    keys: tuple[QueryKey, ...]
    subject_keys: Callable[[str], Iterable[QueryKey]] | None = None
    subject_field: str = "id"

    def affected_keys(self, event: ChangeEvent) -> frozenset[QueryKey]:
        affected = set(self.keys)
        if self.subject_keys is not None and event.kind in (ChangeKind.UPDATE, ChangeKind.DELETE):
            subject = event.subject_id(self.subject_field)
            if subject is not None:
                affected.update(self.subject_keys(subject))
        return frozenset(affected)


def fallback_rule(scope: str) -> ScopeRule:
    """Rule for a scope nobody registered: everything under its own domain."""
    return ScopeRule(scope=scope, keys=(QueryKey(scope),))


def default_scope_rules() -> list[ScopeRule]:
    """Rules wiring the dashboard tables to the dashboard's queries."""
    return [
        # Any booking change can move every dashboard widget
        ScopeRule(
            scope="bookings",
            keys=(BookingKeys.all, DashboardKeys.all),
            subject_keys=lambda booking_id: (BookingKeys.detail(booking_id),),
        ),
        ScopeRule(
            scope="customers",
            keys=(CustomerKeys.all, DashboardKeys.stats(), DashboardKeys.today_stats()),
            subject_keys=lambda customer_id: (CustomerKeys.detail(customer_id),),
        ),
        ScopeRule(
            scope="profiles",
            keys=(StaffKeys.all,),
            subject_keys=lambda staff_id: (StaffKeys.detail(staff_id),),
        ),
        ScopeRule(
            scope="teams",
            keys=(TeamKeys.all,),
            subject_keys=lambda team_id: (TeamKeys.detail(team_id),),
        ),
        ScopeRule(
            scope="team_members",
            keys=(TeamKeys.all, StaffKeys.all),
        ),
        ScopeRule(
            scope="service_packages",
            keys=(PackageKeys.all,),
            subject_keys=lambda package_id: (PackageKeys.detail(package_id),),
        ),
    ]
