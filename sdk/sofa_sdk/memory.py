"""
In-memory change feed implementation for testing.

This module provides a scriptable ChangeFeed for:
- Unit tests of change tracking and notification delivery
- Integration tests of the Database façade without a server
- Local development and debugging

Invariants:
    - All data is lost on process exit
    - Events are delivered in the order they were published, which lets
      tests simulate out-of-order network delivery
    - Disconnects and connection failures are injected explicitly

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the ChangeFeed protocol
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncIterator, List

from .changes import HEARTBEAT, ChangeEvent, FeedItem
from .errors import TransportError

logger = logging.getLogger(__name__)


class InMemoryChangeFeed:
    """In-memory implementation of ChangeFeed for testing.

    Attributes:
        since_values: ``since`` argument of every subscribe() call, in order

    Example:
        >>> feed = InMemoryChangeFeed()
        >>> feed.publish("doc1", "1-abc")
        1
        >>> async for item in feed.subscribe(0, heartbeat_ms=1000):
        ...     print(item)
    """

    def __init__(self, start_sequence: int = 0) -> None:
        """Initialize the feed.

        Args:
            start_sequence: Sequence number of the last change already in
                the database
        """
        self._items: List[FeedItem] = []
        self._next_sequence = start_sequence + 1
        self._new_item = asyncio.Event()
        self._generation = 0
        self._failing_connects = 0
        self.since_values: List[int] = []

    @property
    def update_seq(self) -> int:
        """Highest sequence number published so far."""
        return self._next_sequence - 1

    def publish(
        self,
        document_id: str,
        revision_id: str,
        *,
        deleted: bool = False,
        sequence: int | None = None,
    ) -> int:
        """Append a change event.

        Args:
            document_id: Changed document id
            revision_id: New revision id
            deleted: Whether the change is a deletion
            sequence: Explicit sequence number (for out-of-order scenarios)

        Returns:
            The sequence number of the event
        """
        if sequence is None:
            sequence = self._next_sequence
        self._next_sequence = max(self._next_sequence, sequence + 1)
        self._items.append(
            ChangeEvent(
                sequence=sequence,
                document_id=document_id,
                revision_id=revision_id,
                deleted=deleted,
            )
        )
        self._new_item.set()
        return sequence

    def heartbeat(self) -> None:
        """Deliver a keep-alive to connected subscribers."""
        self._items.append(HEARTBEAT)
        self._new_item.set()

    def disconnect(self) -> None:
        """Drop every open subscription with a TransportError."""
        self._generation += 1
        self._new_item.set()

    def fail_next_connects(self, count: int) -> None:
        """Make the next ``count`` subscribe() calls fail immediately."""
        self._failing_connects = count

    async def subscribe(self, since: int, *, heartbeat_ms: int) -> AsyncIterator[FeedItem]:
        """Yield published items after ``since``.

        Events at or below ``since`` are skipped; later ones (and heartbeats
        published after the subscription started) are yielded in publish
        order.
        """
        self.since_values.append(since)
        if self._failing_connects > 0:
            self._failing_connects -= 1
            raise TransportError("connection refused (injected)", url="memory://changes")

        generation = self._generation
        position = 0
        # Heartbeats are only meaningful to subscribers that were connected.
        skip_heartbeats_before = len(self._items)
        logger.debug("InMemoryChangeFeed subscribed", extra={"since": since})

        while True:
            if generation != self._generation:
                raise TransportError("connection lost (injected)", url="memory://changes")
            if position < len(self._items):
                item = self._items[position]
                position += 1
                if isinstance(item, ChangeEvent):
                    if item.sequence > since:
                        yield item
                elif position > skip_heartbeats_before:
                    yield item
                continue
            self._new_item.clear()
            await self._new_item.wait()

    # Testing helpers

    async def wait_for_subscribers(self, count: int, timeout: float = 5.0) -> bool:
        """Wait until subscribe() has been called ``count`` times.

        Returns:
            True if count reached, False if timeout
        """
        start = time.time()
        while time.time() - start < timeout:
            if len(self.since_values) >= count:
                return True
            await asyncio.sleep(0.01)
        return False
