"""
Tests for Change Event Models
=============================

Tests for dashsync/models/events.py
"""

import pytest
from pydantic import ValidationError

from dashsync.exceptions import DataValidationError
from dashsync.models.events import ChangeEvent, ChangeKind, InvalidationRequest
from dashsync.models.keys import QueryKey


class TestChangeEvent:
    """Tests for ChangeEvent."""

    @pytest.mark.parametrize(
        "raw,kind",
        [
            ("insert", ChangeKind.INSERT),
            ("UPDATE", ChangeKind.UPDATE),
            (" Delete ", ChangeKind.DELETE),
            ("*", ChangeKind.WILDCARD),
            ("all", ChangeKind.WILDCARD),
        ],
    )
    def test_kind_normalization(self, raw, kind):
        """Test feed spellings map onto ChangeKind."""
        assert ChangeEvent(scope="bookings", kind=raw).kind == kind

    def test_event_is_immutable(self):
        """Test events cannot be modified after creation."""
        event = ChangeEvent(scope="bookings", kind="insert")

        with pytest.raises(ValidationError):
            event.scope = "customers"

    def test_subject_id_lookup_order(self):
        """Test the subject id is read from payload, then new, then old."""
        assert ChangeEvent(scope="b", kind="update", payload={"id": 1}).subject_id() == "1"
        assert (
            ChangeEvent(scope="b", kind="update", payload={"new": {"id": "n"}, "old": {"id": "o"}}).subject_id()
            == "n"
        )
        assert ChangeEvent(scope="b", kind="delete", payload={"old": {"id": "o"}}).subject_id() == "o"
        assert ChangeEvent(scope="b", kind="delete", payload={}).subject_id() is None

    def test_subject_id_custom_field(self):
        """Test a rule can name another identifying column."""
        event = ChangeEvent(scope="b", kind="update", payload={"new": {"booking_id": "b7"}})

        assert event.subject_id("booking_id") == "b7"


class TestFromRaw:
    """Tests for raw message normalization."""

    def test_canonical_shape(self):
        """Test the {scope, kind, payload} shape."""
        event = ChangeEvent.from_raw(
            {"scope": "bookings", "kind": "update", "payload": {"id": "b1"}}, received_at=2.5
        )

        assert event.scope == "bookings"
        assert event.kind == ChangeKind.UPDATE
        assert event.payload == {"id": "b1"}
        assert event.received_at == 2.5

    def test_realtime_shape(self):
        """Test the {table, eventType, new, old} shape."""
        event = ChangeEvent.from_raw(
            {"table": "customers", "eventType": "DELETE", "new": {}, "old": {"id": "c1"}}
        )

        assert event.scope == "customers"
        assert event.kind == ChangeKind.DELETE
        assert event.subject_id() == "c1"

    def test_default_scope(self):
        """Test the channel scope fills in a missing scope."""
        event = ChangeEvent.from_raw({"kind": "insert"}, default_scope="teams")

        assert event.scope == "teams"

    @pytest.mark.parametrize(
        "raw",
        [
            "not a mapping",
            None,
            {"scope": "bookings"},
            {"scope": "bookings", "kind": "upsert"},
            {"kind": "insert"},
            {"scope": "bookings", "kind": "insert", "payload": "oops"},
        ],
    )
    def test_malformed_messages(self, raw):
        """Test malformed messages raise DataValidationError."""
        with pytest.raises(DataValidationError):
            ChangeEvent.from_raw(raw)


class TestInvalidationRequest:
    """Tests for InvalidationRequest."""

    def test_request_is_hashable_value(self):
        """Test requests are frozen values."""
        request = InvalidationRequest(
            scope="bookings",
            target_keys=frozenset({QueryKey("bookings")}),
            delay=0.1,
            deadline=0.1,
        )

        assert request.event_count == 1
        assert request == InvalidationRequest(
            scope="bookings",
            target_keys=frozenset({QueryKey("bookings")}),
            delay=0.1,
            deadline=0.1,
        )
