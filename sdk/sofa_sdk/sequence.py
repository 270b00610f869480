"""
Change-feed position bookkeeping.

The cursor holds the last change sequence number this client has seen for a
database. It starts unknown; the first get() asks the server for its current
update sequence with a blocking HTTP call. Callers that persist the value on
shutdown and set() it again on startup get every change made in between once
tracking is re-enabled.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

logger = logging.getLogger(__name__)


def parse_sequence(value: Any) -> int:
    """Coerce a server sequence value to an int.

    Accepts plain integers and the ``"N-opaque"`` string form, whose numeric
    prefix is the position.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid sequence number: {value!r}")
    if isinstance(value, int):
        seq = value
    elif isinstance(value, str):
        seq = int(value.split("-", 1)[0])
    else:
        raise ValueError(f"invalid sequence number: {value!r}")
    if seq < 0:
        raise ValueError(f"sequence number must be >= 0, got {seq}")
    return seq


class SequenceCursor:
    """Last known change sequence number, resolved lazily.

    Example:
        >>> cursor = SequenceCursor(fetch_update_seq)
        >>> cursor.get()        # blocks on first call
        1042
        >>> cursor.set(1000)    # resume from persisted state
    """

    def __init__(self, resolver: Callable[[], int]) -> None:
        """Initialize the cursor.

        Args:
            resolver: Blocking callable returning the server's current
                update sequence
        """
        self._resolver = resolver
        self._value: int | None = None
        self._lock = threading.Lock()

    @property
    def known(self) -> bool:
        return self._value is not None

    def peek(self) -> int | None:
        """Current value without resolving it."""
        return self._value

    def get(self) -> int:
        """Return the sequence number, fetching it synchronously if unknown.

        This blocks the calling thread (and event loop) for one HTTP round
        trip the first time it is called.
        """
        with self._lock:
            if self._value is None:
                self._value = parse_sequence(self._resolver())
                logger.debug("Resolved sequence number", extra={"sequence": self._value})
            return self._value

    def set(self, value: int) -> None:
        """Override the cursor, e.g. with a value restored after a restart."""
        seq = parse_sequence(value)
        with self._lock:
            self._value = seq

    def advance(self, value: int) -> bool:
        """Move forward to ``value``; never moves backwards.

        Returns:
            True if the cursor changed
        """
        with self._lock:
            if self._value is not None and value <= self._value:
                return False
            self._value = value
            return True

    def reset(self) -> None:
        """Forget the position; the next get() asks the server again."""
        with self._lock:
            self._value = None
