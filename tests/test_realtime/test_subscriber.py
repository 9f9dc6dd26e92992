"""
Tests for Change Event Subscriber
=================================

Tests for dashsync/realtime/subscriber.py
"""

from unittest.mock import MagicMock

import pytest

from dashsync.exceptions import SessionClosedError
from dashsync.models.events import ChangeEvent, ChangeKind
from dashsync.models.keys import BookingKeys, DashboardKeys
from dashsync.realtime.subscriber import ChangeEventSubscriber, SubscriberStats


@pytest.fixture
def mock_scheduler():
    """Create a mock invalidation scheduler."""
    scheduler = MagicMock()
    scheduler.on_event = MagicMock(return_value=MagicMock())
    scheduler.release_scopes = MagicMock(return_value=0)
    scheduler.known_scopes = MagicMock(return_value=["bookings", "customers"])
    return scheduler


class TestForwarding:
    """Tests for message normalization and forwarding."""

    @pytest.fixture
    async def subscriber(self, feed, mock_scheduler, clock):
        """Create an open subscriber on the in-memory feed."""
        subscriber = ChangeEventSubscriber(feed, mock_scheduler, ["bookings", "customers"], clock=clock)
        await subscriber.open()
        yield subscriber
        subscriber.close()

    async def test_open_subscribes_each_scope(self, subscriber, feed):
        """Test one feed registration per scope."""
        assert feed.subscriber_count("bookings") == 1
        assert feed.subscriber_count("customers") == 1
        assert subscriber.is_open

    async def test_canonical_message_forwarded(self, subscriber, feed, mock_scheduler, clock):
        """Test a {scope, kind, payload} message becomes a ChangeEvent."""
        await clock.advance(4.0)
        feed.publish("bookings", {"scope": "bookings", "kind": "update", "payload": {"id": "b1"}})

        event = mock_scheduler.on_event.call_args.args[0]
        assert isinstance(event, ChangeEvent)
        assert event.kind == ChangeKind.UPDATE
        assert event.subject_id() == "b1"
        assert event.received_at == 4.0
        assert subscriber.get_stats().forwarded == 1

    async def test_realtime_message_forwarded(self, subscriber, feed, mock_scheduler):
        """Test the {table, eventType, new, old} shape is accepted."""
        feed.publish("customers", {"table": "customers", "eventType": "INSERT", "new": {"id": "c1"}})

        event = mock_scheduler.on_event.call_args.args[0]
        assert event.scope == "customers"
        assert event.kind == ChangeKind.INSERT

    async def test_channel_scope_fills_missing_scope(self, subscriber, feed, mock_scheduler):
        """Test a message without a scope takes its channel's scope."""
        feed.publish("bookings", {"kind": "*"})

        assert mock_scheduler.on_event.call_args.args[0].scope == "bookings"

    @pytest.mark.parametrize(
        "raw",
        [
            "garbage",
            {"scope": "bookings"},
            {"scope": "bookings", "kind": "truncate"},
        ],
    )
    async def test_malformed_message_dropped(self, subscriber, feed, mock_scheduler, raw):
        """Test malformed messages are counted and never forwarded."""
        feed.publish("bookings", raw)

        mock_scheduler.on_event.assert_not_called()
        assert subscriber.get_stats().malformed == 1
        assert subscriber.get_stats().received == 1

    async def test_closed_scheduler_counts_as_dropped(self, subscriber, feed, mock_scheduler):
        """Test events refused by the scheduler are counted as dropped."""
        mock_scheduler.on_event.return_value = None

        feed.publish("bookings", {"kind": "insert"})

        assert subscriber.get_stats().dropped == 1
        assert subscriber.get_stats().forwarded == 0


class TestLifecycle:
    """Tests for open/close."""

    async def test_close_removes_registrations(self, feed, mock_scheduler, clock):
        """Test close unsubscribes and cancels pending windows synchronously."""
        subscriber = ChangeEventSubscriber(feed, mock_scheduler, ["bookings"], clock=clock)
        await subscriber.open()

        subscriber.close()

        assert feed.subscriber_count() == 0
        mock_scheduler.retain_scopes.assert_called_once_with(["bookings"])
        mock_scheduler.release_scopes.assert_called_once_with(["bookings"])
        assert feed.publish("bookings", {"kind": "insert"}) == 0
        mock_scheduler.on_event.assert_not_called()
        assert not subscriber.is_open

    async def test_late_message_after_close_is_dropped(self, feed, mock_scheduler, clock):
        """Test a message already in flight at close time is discarded."""
        subscriber = ChangeEventSubscriber(feed, mock_scheduler, ["bookings"], clock=clock)
        await subscriber.open()
        subscriber.close()

        subscriber._on_message("bookings", {"kind": "insert"})

        mock_scheduler.on_event.assert_not_called()
        assert subscriber.get_stats().dropped == 1

    async def test_open_defaults_to_known_scopes(self, feed, mock_scheduler, clock):
        """Test scopes default to the scheduler's rules."""
        subscriber = ChangeEventSubscriber(feed, mock_scheduler, clock=clock)
        await subscriber.open()

        assert subscriber.scopes == ["bookings", "customers"]
        subscriber.close()

    async def test_open_after_close_raises(self, feed, mock_scheduler, clock):
        """Test a closed subscriber cannot be reopened."""
        subscriber = ChangeEventSubscriber(feed, mock_scheduler, ["bookings"], clock=clock)
        subscriber.close()

        with pytest.raises(SessionClosedError):
            await subscriber.open()

    async def test_async_context_manager(self, feed, mock_scheduler, clock):
        """Test async with opens and closes the subscriber."""
        async with ChangeEventSubscriber(feed, mock_scheduler, ["teams"], clock=clock) as subscriber:
            assert feed.subscriber_count("teams") == 1

        assert feed.subscriber_count("teams") == 0
        assert isinstance(subscriber.get_stats(), SubscriberStats)


class TestEndToEnd:
    """Tests through the real scheduler and cache."""

    async def test_duplicated_and_reordered_events(self, feed, scheduler, cache, clock, make_loader):
        """Test duplicates and reordering still yield one correct refresh."""
        key = BookingKeys.detail("b1")
        loader = make_loader("v1", "v2")
        cache.subscribe(key, loader)
        await cache.fetch(key, loader)

        async with ChangeEventSubscriber(feed, scheduler, ["bookings"], clock=clock):
            feed.publish("bookings", {"kind": "update", "payload": {"id": "b1"}})
            feed.publish("bookings", {"kind": "insert", "payload": {"id": "b2"}})
            feed.publish("bookings", {"kind": "update", "payload": {"id": "b1"}})
            await clock.advance(0.3)

        assert loader.calls == 2
        assert cache.get(key) == "v2"
        assert scheduler.get_stats().dispatches == 1

    async def test_close_during_window_prevents_invalidation(self, feed, scheduler, cache, clock):
        """Test no invalidation fires for a subscriber closed mid-window."""
        cache.set_value(DashboardKeys.stats(), {"total": 1})
        subscriber = ChangeEventSubscriber(feed, scheduler, ["bookings"], clock=clock)
        await subscriber.open()

        feed.publish("bookings", {"kind": "insert"})
        subscriber.close()
        await clock.advance(1.0)

        assert cache.get(DashboardKeys.stats()) == {"total": 1}
        assert scheduler.get_stats().dispatches == 0

    async def test_close_keeps_windows_other_subscribers_need(self, feed, scheduler, cache, clock):
        """Test closing one of two channels on a scope keeps the pending window."""
        key = BookingKeys.list()
        cache.set_value(key, ["old"])
        view_a = ChangeEventSubscriber(feed, scheduler, ["bookings"], clock=clock)
        view_b = ChangeEventSubscriber(feed, scheduler, ["bookings"], clock=clock)
        await view_a.open()
        await view_b.open()

        feed.publish("bookings", {"kind": "insert", "payload": {"id": "b9"}})
        view_a.close()
        await clock.advance(0.5)

        assert scheduler.get_stats().cancelled == 0
        assert scheduler.get_stats().dispatches == 1
        assert cache.get(key) is None

        view_b.close()
        assert scheduler.listener_count("bookings") == 0

    async def test_last_close_on_scope_cancels_window(self, feed, scheduler, cache, clock):
        """Test the window is dropped once every channel on the scope is closed."""
        view_a = ChangeEventSubscriber(feed, scheduler, ["bookings"], clock=clock)
        view_b = ChangeEventSubscriber(feed, scheduler, ["bookings"], clock=clock)
        await view_a.open()
        await view_b.open()

        feed.publish("bookings", {"kind": "insert"})
        view_a.close()
        view_b.close()
        await clock.advance(0.5)

        assert scheduler.get_stats().cancelled == 1
        assert scheduler.get_stats().dispatches == 0
