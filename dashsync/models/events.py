"""
Change Event Models

Normalized change notifications from the remote store and the
invalidation requests derived from them. Both are transient: they are
consumed as soon as they are produced and never persisted.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import Field, ValidationError, field_validator

from dashsync.exceptions import DataValidationError
from dashsync.models.base import SyncModel
from dashsync.models.keys import QueryKey


class ChangeKind(str, Enum):
    """Kinds of row changes pushed by the change feed."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    WILDCARD = "*"


_KIND_ALIASES = {
    "insert": ChangeKind.INSERT,
    "update": ChangeKind.UPDATE,
    "delete": ChangeKind.DELETE,
    "*": ChangeKind.WILDCARD,
    "all": ChangeKind.WILDCARD,
    "wildcard": ChangeKind.WILDCARD,
}


class ChangeEvent(SyncModel):
    """A single normalized change notification."""

    scope: str = Field(min_length=1, description="Table or domain that changed")
    kind: ChangeKind
    payload: dict[str, Any] = Field(default_factory=dict)
    received_at: float = Field(default=0.0, description="Clock time of receipt")

    @field_validator("kind", mode="before")
    @classmethod
    def normalize_kind(cls, v: Any) -> Any:
        """Accept feed spellings such as 'UPDATE' or 'all'."""
        if isinstance(v, str):
            return _KIND_ALIASES.get(v.strip().lower(), v)
        return v

    def subject_id(self, field: str = "id") -> str | None:
        """
        Identifier of the changed row, if the payload carries one.

        Looks at the payload itself first, then at the ``new`` row image
        and finally at the ``old`` image (the only one a delete carries).
        """
        candidates = [self.payload]
        for image in ("new", "old"):
            row = self.payload.get(image)
            if isinstance(row, Mapping):
                candidates.append(row)

        for row in candidates:
            value = row.get(field)
            if value is not None and value != "":
                return str(value)
        return None

    @classmethod
    def from_raw(
        cls,
        raw: Any,
        received_at: float = 0.0,
        default_scope: str | None = None,
    ) -> ChangeEvent:
        """
        Normalize a raw feed message.

        Two shapes are recognized:
            {"scope": ..., "kind": ..., "payload": {...}}
            {"table": ..., "eventType": ..., "new": {...}, "old": {...}}

        Raises:
            DataValidationError: If the message cannot be normalized
        """
        if not isinstance(raw, Mapping):
            raise DataValidationError(f"Change message must be a mapping, got {type(raw).__name__}")

        scope = raw.get("scope") or raw.get("table") or default_scope
        kind = raw.get("kind", raw.get("eventType", raw.get("type")))

        payload = raw.get("payload")
        if payload is None:
            payload = {
                image: raw[image]
                for image in ("new", "old")
                if isinstance(raw.get(image), Mapping)
            }

        try:
            return cls(scope=scope, kind=kind, payload=payload, received_at=received_at)
        except ValidationError as e:
            raise DataValidationError(f"Malformed change message: {e.error_count()} error(s)") from e


@dataclass(frozen=True)
class InvalidationRequest:
    """A set of query keys to invalidate once ``deadline`` passes."""

    scope: str
    target_keys: frozenset[QueryKey]
    delay: float
    deadline: float
    event_count: int = 1
