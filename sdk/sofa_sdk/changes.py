"""
Change tracking for Sofa SDK.

This module owns the persistent connection to a database's change feed:
- ChangeFeed: protocol every feed source implements
- HttpChangeFeed: continuous ``_changes`` feed over HTTP
- ChangeTracker: background task that keeps the feed open, reconnects,
  keeps events in sequence order and advances the SequenceCursor
- Notification types delivered to change listeners

Invariants:
    - Events reach the sink in ascending sequence order; an event that
      arrives too late to keep that order is reported as a SequenceGap
      instead of being delivered
    - The cursor only moves forward, and only past events that were handed
      to the sink
    - A reconnect resumes from the cursor, so nothing between the
      disconnect and the reconnect is skipped
    - Nothing is emitted after stop()

How to change safely:
    - Feed implementations must raise TransportError on disconnect; ending
      the iterator is treated the same way
    - Keep policy decisions (backoff, reorder window, gap limit) in
      TrackerPolicy
"""

from __future__ import annotations

import asyncio
import heapq
import json
import logging
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Protocol, Union

from .config import TrackerPolicy
from .errors import SofaError, TransportError
from .sequence import SequenceCursor, parse_sequence

if TYPE_CHECKING:
    from .document import Document
    from .transport import RestTransport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeEvent:
    """One row of the change feed.

    Attributes:
        sequence: Position of the change in the feed
        document_id: Id of the changed document
        revision_id: Winning revision after the change
        deleted: Whether the change deleted the document
    """

    sequence: int
    document_id: str
    revision_id: str
    deleted: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChangeEvent:
        """Create from a ``_changes`` row.

        Raises:
            ValueError: If required fields are missing or malformed
        """
        missing = [f for f in ("seq", "id", "changes") if f not in data]
        if missing:
            raise ValueError(f"Missing required fields: {missing}")
        changes = data["changes"]
        try:
            revision_id = changes[0]["rev"]
        except (KeyError, IndexError, TypeError) as e:
            raise ValueError(f"change row has no revision: {changes!r}") from e
        if not isinstance(data["id"], str) or not isinstance(revision_id, str):
            raise ValueError("change row id and revision must be strings")
        return cls(
            sequence=parse_sequence(data["seq"]),
            document_id=data["id"],
            revision_id=revision_id,
            deleted=bool(data.get("deleted", False)),
        )


class _Heartbeat:
    def __repr__(self) -> str:
        return "HEARTBEAT"


HEARTBEAT = _Heartbeat()
"""Marker yielded by a feed when the server sends a keep-alive."""

FeedItem = Union[ChangeEvent, _Heartbeat]


class GapReason(str, Enum):
    """Why sequence continuity could not be guaranteed."""

    OUT_OF_ORDER = "out_of_order"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class DatabaseChange:
    """An external change to a document.

    Never raised for changes made through the same Database object.
    """

    document: Document
    sequence: int
    revision_id: str
    deleted: bool = False


@dataclass(frozen=True)
class SequenceGap:
    """Changes may have been missed between two delivered notifications.

    Attributes:
        expected: Sequence number that should have come next
        received: Sequence number that arrived instead
        reason: OUT_OF_ORDER if ``received`` arrived after a later event
            was already delivered, SKIPPED if sequence numbers were jumped
    """

    expected: int
    received: int
    reason: GapReason


@dataclass(frozen=True)
class TrackingFailed:
    """Tracking stopped because the feed could not be re-established.

    Attributes:
        error: Last error seen
        last_sequence: Cursor value at the time tracking stopped
    """

    error: SofaError
    last_sequence: int | None


Notification = Union[DatabaseChange, SequenceGap, TrackingFailed]
TrackerItem = Union[ChangeEvent, SequenceGap, TrackingFailed]


class ChangeFeed(Protocol):
    """Source of change events for one database."""

    def subscribe(self, since: int, *, heartbeat_ms: int) -> AsyncIterator[FeedItem]:
        """Yield events with sequence > ``since`` until disconnected.

        Raises:
            TransportError: When the connection is lost
        """
        ...


def parse_feed_line(line: str) -> FeedItem | None:
    """Parse one line of a continuous ``_changes`` response.

    Returns:
        A ChangeEvent, HEARTBEAT for a blank keep-alive line, or None when the
        server signalled the end of the feed (``last_seq``)

    Raises:
        ValueError: If the line is not a valid change row
    """
    if not line.strip():
        return HEARTBEAT
    data = json.loads(line)
    if not isinstance(data, dict):
        raise ValueError(f"unexpected change row: {line!r}")
    if "last_seq" in data and "id" not in data:
        return None
    return ChangeEvent.from_dict(data)


class HttpChangeFeed:
    """Continuous ``_changes`` feed read through a RestTransport.

    Example:
        >>> feed = HttpChangeFeed(transport, "mydb/_changes")
        >>> async for item in feed.subscribe(since=42, heartbeat_ms=30000):
        ...     print(item)
    """

    def __init__(self, transport: RestTransport, path: str) -> None:
        self._transport = transport
        self._path = path

    async def subscribe(self, since: int, *, heartbeat_ms: int) -> AsyncIterator[FeedItem]:
        params = {"feed": "continuous", "since": since, "heartbeat": heartbeat_ms}
        async with aclosing(self._transport.stream_lines(self._path, params=params)) as lines:
            async for line in lines:
                try:
                    item = parse_feed_line(line)
                except ValueError as e:
                    logger.warning("Skipping bad change row", extra={"line": line, "error": str(e)})
                    continue
                if item is None:
                    break
                yield item
        raise TransportError(
            "change feed closed by server", url=self._transport.base_url + self._path
        )


class TrackerState(Enum):
    """Lifecycle of a ChangeTracker."""

    DISABLED = "disabled"
    CONNECTING = "connecting"
    TRACKING = "tracking"
    RECONNECTING = "reconnecting"


class ChangeTracker:
    """Keeps a change feed open and hands ordered events to a sink.

    The tracker is designed to run as a single background task per
    Database. The sink is called synchronously from that task with
    ChangeEvent, SequenceGap and TrackingFailed values in delivery order.

    Example:
        >>> tracker = ChangeTracker(feed, cursor, sink, TrackerPolicy())
        >>> tracker.start()   # resolves the cursor first if unknown
        >>> ...
        >>> await tracker.aclose()
    """

    def __init__(
        self,
        feed: ChangeFeed,
        cursor: SequenceCursor,
        sink: Callable[[TrackerItem], None],
        policy: TrackerPolicy | None = None,
        *,
        name: str = "",
    ) -> None:
        """Initialize the tracker.

        Args:
            feed: Change feed to consume
            cursor: Sequence cursor to resume from and advance
            sink: Receives ordered tracker output
            policy: Reconnect and gap policy
            name: Database name, for log context
        """
        self.feed = feed
        self.cursor = cursor
        self.policy = policy or TrackerPolicy()
        self.name = name
        self._sink = sink
        self._state = TrackerState.DISABLED
        self._task: asyncio.Task | None = None
        self._generation = 0
        self._held: list[tuple[int, ChangeEvent]] = []
        self._connections = 0

    @property
    def state(self) -> TrackerState:
        return self._state

    @property
    def enabled(self) -> bool:
        return self._state is not TrackerState.DISABLED

    @property
    def connection_count(self) -> int:
        """Number of feed connections opened so far."""
        return self._connections

    def start(self) -> None:
        """Start tracking from the cursor.

        Resolving an unknown cursor is a blocking HTTP call made here, before
        the feed connection is opened. Must be called with a running loop.
        """
        if self.enabled:
            logger.warning("Change tracker already running", extra={"database": self.name})
            return
        loop = asyncio.get_running_loop()
        since = self.cursor.get()
        self._generation += 1
        self._held.clear()
        self._set_state(TrackerState.CONNECTING)
        self._task = loop.create_task(self._run(self._generation))
        logger.info("Change tracking enabled", extra={"database": self.name, "since": since})

    def stop(self) -> None:
        """Stop tracking; nothing is emitted after this returns."""
        if not self.enabled and self._task is None:
            return
        self._generation += 1
        self._held.clear()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._set_state(TrackerState.DISABLED)
        logger.info("Change tracking disabled", extra={"database": self.name})

    async def aclose(self) -> None:
        """Stop and wait for the background task to finish."""
        self.stop()
        task, self._task = self._task, None
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _active(self, generation: int) -> bool:
        return generation == self._generation

    def _set_state(self, state: TrackerState) -> None:
        if state is not self._state:
            logger.debug(
                "Tracker state change",
                extra={"database": self.name, "from": self._state.value, "to": state.value},
            )
            self._state = state

    async def _run(self, generation: int) -> None:
        attempt = 0
        while self._active(generation):
            since = self.cursor.get()
            self._connections += 1
            try:
                feed = self.feed.subscribe(since, heartbeat_ms=self.policy.heartbeat_ms)
                async with aclosing(feed) as items:
                    async for item in items:
                        if not self._active(generation):
                            return
                        if self._state is not TrackerState.TRACKING:
                            self._set_state(TrackerState.TRACKING)
                            attempt = 0
                        if isinstance(item, ChangeEvent):
                            self._receive(item, generation)
                        else:
                            self._release(generation, force=True)
                raise TransportError("change feed ended")
            except TransportError as e:
                if not self._active(generation):
                    return
                attempt += 1
                # Held events are re-sent by the server when resuming from the cursor.
                self._held.clear()
                if self.policy.gives_up_after(attempt):
                    logger.error(
                        "Change feed reconnect failed, tracking stopped",
                        extra={"database": self.name, "attempts": attempt - 1, "error": str(e)},
                    )
                    self._fail(e, generation)
                    return
                delay = self.policy.delay_for(attempt)
                self._set_state(TrackerState.RECONNECTING)
                logger.warning(
                    "Change feed disconnected, reconnecting",
                    extra={
                        "database": self.name,
                        "attempt": attempt,
                        "delay": delay,
                        "since": self.cursor.peek(),
                        "error": str(e),
                    },
                )
                await asyncio.sleep(delay)
            except SofaError as e:
                if not self._active(generation):
                    return
                logger.error(
                    "Change feed rejected, tracking stopped",
                    extra={"database": self.name, "error": str(e)},
                )
                self._fail(e, generation)
                return
            except asyncio.CancelledError:
                logger.debug("Change tracker cancelled", extra={"database": self.name})
                raise
            except Exception as e:
                if not self._active(generation):
                    return
                logger.error(f"Change tracker error: {e}", exc_info=True)
                self._fail(
                    SofaError(f"change tracker error: {e}", code="TRACKER_ERROR"),
                    generation,
                )
                return

    def _fail(self, error: SofaError, generation: int) -> None:
        self._release(generation, force=True)
        self._emit(TrackingFailed(error=error, last_sequence=self.cursor.peek()), generation)
        if self._active(generation):
            self._set_state(TrackerState.DISABLED)
            self._task = None

    def _receive(self, event: ChangeEvent, generation: int) -> None:
        last = self.cursor.peek()
        if last is not None and event.sequence <= last:
            if event.sequence == last:
                logger.debug("Duplicate change event", extra={"sequence": event.sequence})
                return
            logger.warning(
                "Change event arrived out of order",
                extra={"database": self.name, "sequence": event.sequence, "cursor": last},
            )
            self._emit(
                SequenceGap(expected=last + 1, received=event.sequence, reason=GapReason.OUT_OF_ORDER),
                generation,
            )
            return
        if any(seq == event.sequence for seq, _ in self._held):
            return
        heapq.heappush(self._held, (event.sequence, event))
        self._release(generation, force=False)

    def _release(self, generation: int, *, force: bool) -> None:
        """Hand held events to the sink in sequence order.

        With a reorder window, an event waits while the sequence before it is
        missing, until the window overflows or a heartbeat arrives.
        """
        window = self.policy.reorder_window
        limit = self.policy.max_sequence_gap
        if window and limit is None:
            limit = 0
        while self._held and self._active(generation):
            seq, event = self._held[0]
            expected = (self.cursor.peek() or 0) + 1
            if window and seq != expected and not force and len(self._held) <= window:
                break
            heapq.heappop(self._held)
            if limit is not None and seq - expected > limit:
                self._emit(
                    SequenceGap(expected=expected, received=seq, reason=GapReason.SKIPPED),
                    generation,
                )
            self.cursor.advance(seq)
            self._emit(event, generation)

    def _emit(self, item: TrackerItem, generation: int) -> None:
        if not self._active(generation):
            return
        self._sink(item)
