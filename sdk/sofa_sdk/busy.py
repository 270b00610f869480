"""
Busy-set tracking for documents with in-flight network operations.

A counted set keyed by Document identity. Every fetch or write marks its
documents busy for the duration of the HTTP round trip; the Database uses
the set to hold back change notifications and to delay cache eviction.
"""

from __future__ import annotations

import threading
from collections import Counter
from contextlib import contextmanager
from typing import TYPE_CHECKING, Callable, Iterator

if TYPE_CHECKING:
    from .document import Document


class BusySet:
    """Reference counts of documents involved in in-flight operations.

    Counts never go negative; releasing a document that is not busy raises.
    """

    def __init__(self, on_release: Callable[[list[Document]], None] | None = None) -> None:
        """Initialize the busy set.

        Args:
            on_release: Called after every release with the documents whose
                count dropped to zero
        """
        self._counts: Counter[Document] = Counter()
        self._lock = threading.Lock()
        self._on_release = on_release

    def acquire(self, *documents: Document) -> None:
        with self._lock:
            for doc in documents:
                self._counts[doc] += 1

    def release(self, *documents: Document) -> list[Document]:
        """Decrement counts and return documents that became idle."""
        idle = []
        with self._lock:
            for doc in documents:
                count = self._counts.get(doc, 0)
                if count <= 0:
                    raise ValueError(f"release of non-busy document {doc!r}")
                if count == 1:
                    del self._counts[doc]
                    idle.append(doc)
                else:
                    self._counts[doc] = count - 1
        if self._on_release is not None:
            self._on_release(idle)
        return idle

    @contextmanager
    def track(self, *documents: Document) -> Iterator[None]:
        """Hold documents busy for the body of a ``with`` block.

        The release runs on every exit path, including exceptions and task
        cancellation.
        """
        self.acquire(*documents)
        try:
            yield
        finally:
            self.release(*documents)

    def count(self, document: Document) -> int:
        with self._lock:
            return self._counts.get(document, 0)

    def is_busy(self, document: Document) -> bool:
        return self.count(document) > 0

    def documents(self) -> list[Document]:
        """Snapshot of the currently busy documents."""
        with self._lock:
            return list(self._counts)

    def __len__(self) -> int:
        with self._lock:
            return len(self._counts)

    def __bool__(self) -> bool:
        return len(self) > 0
