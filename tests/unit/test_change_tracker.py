"""
Unit tests for the change tracker.

Tests cover:
- Ordered delivery and cursor advance
- Reorder window and sequence gap reporting
- Reconnect from the cursor and giving up
- Stop semantics
- Single blocking sequence resolution before connecting
"""

import asyncio

import pytest

from sofa_sdk.changes import (
    ChangeEvent,
    ChangeTracker,
    GapReason,
    SequenceGap,
    TrackerState,
    TrackingFailed,
)
from sofa_sdk.config import TrackerPolicy
from sofa_sdk.errors import NotFoundError, TransportError
from sofa_sdk.memory import InMemoryChangeFeed
from sofa_sdk.sequence import SequenceCursor


class RejectingFeed:
    """Feed whose every subscription is refused by the server."""

    def __init__(self):
        self.since_values = []

    async def subscribe(self, since, *, heartbeat_ms):
        self.since_values.append(since)
        raise NotFoundError("404 GET db/_changes", status=404)
        yield


class BrokenFeed:
    """Feed that fails with an unexpected error after one event."""

    async def subscribe(self, since, *, heartbeat_ms):
        yield ChangeEvent(since + 1, "a", "1-a")
        raise RuntimeError("feed bug")


def sequences(items):
    return [item.sequence for item in items if isinstance(item, ChangeEvent)]


class TestChangeTracker:
    """Tests for ChangeTracker."""

    @pytest.fixture
    def feed(self):
        return InMemoryChangeFeed()

    @pytest.fixture
    def resolutions(self):
        return []

    @pytest.fixture
    def cursor(self, resolutions):
        def resolver():
            resolutions.append(1)
            return 100

        return SequenceCursor(resolver)

    @pytest.fixture
    def items(self):
        return []

    @pytest.fixture
    async def make_tracker(self, feed, cursor, items):
        """Build trackers that are closed after the test."""
        trackers = []

        def make(source=None, **policy):
            policy.setdefault("initial_delay", 0.01)
            policy.setdefault("max_delay", 0.02)
            tracker = ChangeTracker(
                source or feed, cursor, items.append, TrackerPolicy(**policy), name="test"
            )
            trackers.append(tracker)
            return tracker

        yield make
        for tracker in trackers:
            await tracker.aclose()

    @pytest.mark.asyncio
    async def test_in_order_delivery(self, feed, cursor, items, make_tracker, wait_until):
        """Events 5, 6, 7 arrive as 5, 6, 7 and advance the cursor."""
        cursor.set(4)
        tracker = make_tracker()
        tracker.start()
        await feed.wait_for_subscribers(1)

        for seq, doc in [(5, "a"), (6, "b"), (7, "c")]:
            feed.publish(doc, "1-x", sequence=seq)

        assert await wait_until(lambda: len(items) == 3)
        assert sequences(items) == [5, 6, 7]
        assert cursor.peek() == 7
        assert tracker.state is TrackerState.TRACKING

    @pytest.mark.asyncio
    async def test_reorder_window_restores_order(self, feed, cursor, items, make_tracker, wait_until):
        """With a reorder window, 6, 5, 7 is delivered as 5, 6, 7."""
        cursor.set(4)
        tracker = make_tracker(reorder_window=2)
        tracker.start()
        await feed.wait_for_subscribers(1)

        for seq, doc in [(6, "b"), (5, "a"), (7, "c")]:
            feed.publish(doc, "1-x", sequence=seq)

        assert await wait_until(lambda: len(items) == 3)
        assert sequences(items) == [5, 6, 7]
        assert not any(isinstance(item, SequenceGap) for item in items)

    @pytest.mark.asyncio
    async def test_late_event_reported_as_gap(self, feed, cursor, items, make_tracker, wait_until):
        """Without a window, a late event becomes an out-of-order gap."""
        cursor.set(4)
        tracker = make_tracker()
        tracker.start()
        await feed.wait_for_subscribers(1)

        for seq, doc in [(6, "b"), (5, "a"), (7, "c")]:
            feed.publish(doc, "1-x", sequence=seq)

        assert await wait_until(lambda: len(items) == 3)
        assert isinstance(items[0], ChangeEvent) and items[0].sequence == 6
        assert items[1] == SequenceGap(expected=7, received=5, reason=GapReason.OUT_OF_ORDER)
        assert isinstance(items[2], ChangeEvent) and items[2].sequence == 7
        assert cursor.peek() == 7

    @pytest.mark.asyncio
    async def test_heartbeat_flushes_held_events(self, feed, cursor, items, make_tracker, wait_until):
        """A heartbeat releases a held event and reports the skipped sequence."""
        cursor.set(4)
        tracker = make_tracker(reorder_window=3)
        tracker.start()
        await feed.wait_for_subscribers(1)

        feed.publish("b", "1-x", sequence=6)
        await asyncio.sleep(0.05)
        assert items == []

        feed.heartbeat()

        assert await wait_until(lambda: len(items) == 2)
        assert items[0] == SequenceGap(expected=5, received=6, reason=GapReason.SKIPPED)
        assert sequences(items) == [6]

    @pytest.mark.asyncio
    async def test_large_jump_reported(self, feed, cursor, items, make_tracker, wait_until):
        """A jump larger than max_sequence_gap is reported before the event."""
        cursor.set(4)
        tracker = make_tracker(max_sequence_gap=3)
        tracker.start()
        await feed.wait_for_subscribers(1)

        feed.publish("a", "1-x", sequence=5)
        feed.publish("b", "1-x", sequence=10)

        assert await wait_until(lambda: len(items) == 3)
        assert items[1] == SequenceGap(expected=6, received=10, reason=GapReason.SKIPPED)
        assert sequences(items) == [5, 10]

    @pytest.mark.asyncio
    async def test_duplicate_event_dropped(self, feed, cursor, items, make_tracker, wait_until):
        """An event at the cursor position is not delivered again."""
        cursor.set(4)
        tracker = make_tracker()
        tracker.start()
        await feed.wait_for_subscribers(1)

        feed.publish("a", "1-x", sequence=5)
        feed.publish("a", "1-x", sequence=5)
        feed.publish("b", "1-x", sequence=6)

        assert await wait_until(lambda: len(items) == 2)
        assert sequences(items) == [5, 6]

    @pytest.mark.asyncio
    async def test_reconnect_resumes_from_cursor(self, feed, cursor, items, make_tracker, wait_until):
        """After a disconnect the feed is reopened from the last delivered sequence."""
        cursor.set(4)
        tracker = make_tracker()
        tracker.start()
        await feed.wait_for_subscribers(1)

        feed.publish("a", "1-x", sequence=5)
        assert await wait_until(lambda: len(items) == 1)

        feed.disconnect()
        assert await feed.wait_for_subscribers(2)
        feed.publish("b", "1-x", sequence=6)

        assert await wait_until(lambda: len(items) == 2)
        assert feed.since_values == [4, 5]
        assert sequences(items) == [5, 6]
        assert tracker.connection_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, feed, cursor, items, make_tracker, wait_until):
        """Persistent connection failures end in one TrackingFailed."""
        cursor.set(9)
        feed.fail_next_connects(10)
        tracker = make_tracker(max_attempts=2)
        tracker.start()

        assert await wait_until(lambda: len(items) == 1)
        failure = items[0]
        assert isinstance(failure, TrackingFailed)
        assert isinstance(failure.error, TransportError)
        assert failure.last_sequence == 9
        assert len(feed.since_values) == 3
        assert tracker.state is TrackerState.DISABLED

    @pytest.mark.asyncio
    async def test_recovers_within_attempts(self, feed, cursor, items, make_tracker, wait_until):
        """A failure streak shorter than the limit is invisible to the sink."""
        cursor.set(4)
        feed.fail_next_connects(2)
        tracker = make_tracker(max_attempts=3)
        tracker.start()
        assert await feed.wait_for_subscribers(3)

        feed.publish("a", "1-x", sequence=5)

        assert await wait_until(lambda: len(items) == 1)
        assert sequences(items) == [5]
        assert feed.since_values == [4, 4, 4]

    @pytest.mark.asyncio
    async def test_server_rejection_stops_tracking(self, cursor, items, make_tracker, wait_until):
        """A non-transport error stops tracking without retrying."""
        cursor.set(1)
        feed = RejectingFeed()
        tracker = make_tracker(feed)
        tracker.start()

        assert await wait_until(lambda: len(items) == 1)
        assert isinstance(items[0], TrackingFailed)
        assert isinstance(items[0].error, NotFoundError)
        assert feed.since_values == [1]
        assert not tracker.enabled

    @pytest.mark.asyncio
    async def test_nothing_emitted_after_stop(self, feed, cursor, items, make_tracker):
        """Events published after stop() never reach the sink."""
        cursor.set(4)
        tracker = make_tracker()
        tracker.start()
        await feed.wait_for_subscribers(1)

        tracker.stop()
        feed.publish("a", "1-x", sequence=5)
        await asyncio.sleep(0.05)

        assert items == []
        assert tracker.state is TrackerState.DISABLED

    @pytest.mark.asyncio
    async def test_resolves_sequence_once_before_connecting(
        self, feed, cursor, resolutions, make_tracker
    ):
        """start() does the blocking lookup before the feed is opened."""
        tracker = make_tracker()

        tracker.start()

        assert resolutions == [1]
        assert feed.since_values == []
        assert tracker.state is TrackerState.CONNECTING

        assert await feed.wait_for_subscribers(1)
        assert feed.since_values == [100]

        await tracker.aclose()
        tracker.start()
        assert await feed.wait_for_subscribers(2)
        assert resolutions == [1]

    @pytest.mark.asyncio
    async def test_start_twice_is_harmless(self, feed, cursor, make_tracker):
        """A second start() while running does not open a second connection."""
        cursor.set(0)
        tracker = make_tracker()
        tracker.start()
        tracker.start()
        await feed.wait_for_subscribers(1)
        await asyncio.sleep(0.02)
        assert len(feed.since_values) == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_reported(self, cursor, items, make_tracker, wait_until):
        """An unexpected feed error stops tracking with a TrackingFailed."""
        cursor.set(4)
        tracker = make_tracker(BrokenFeed())
        tracker.start()

        assert await wait_until(lambda: len(items) == 2)
        assert sequences(items) == [5]
        failure = items[1]
        assert isinstance(failure, TrackingFailed)
        assert failure.error.code == "TRACKER_ERROR"
        assert failure.last_sequence == 5
        assert tracker.state is TrackerState.DISABLED

        await tracker.aclose()


class TestChangeTrackerWithoutLoop:
    """Tests for ChangeTracker used outside an event loop."""

    def test_start_outside_loop_leaves_tracker_disabled(self):
        """A failed start() doesn't leave the tracker looking enabled."""
        resolutions = []
        cursor = SequenceCursor(lambda: resolutions.append(1) or 0)
        tracker = ChangeTracker(InMemoryChangeFeed(), cursor, lambda item: None)

        with pytest.raises(RuntimeError):
            tracker.start()

        assert tracker.state is TrackerState.DISABLED
        assert not tracker.enabled
        assert resolutions == []
