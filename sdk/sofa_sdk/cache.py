"""
Identity cache for Document objects.

Each Database owns exactly one DocumentCache. The cache guarantees there is
never more than one live Document instance per document id, so every part of
the SDK (direct lookups, bulk write results, change notifications) hands the
caller the same object.

Invariants:
    - resolve(id) returns the same instance until that id is evicted
    - Insert-if-absent is atomic across threads and tasks
    - The cache never makes network calls
    - Ids retained through a clear() because they were busy are evicted
      once the owning Database reports them idle, unless they were
      resolved again after the clear
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Callable, Iterable

if TYPE_CHECKING:
    from .document import Document

logger = logging.getLogger(__name__)


class DocumentCache:
    """Deduplicating registry of Document instances keyed by id.

    Thread safety:
        All mutations happen under one lock, so two concurrent resolutions
        of the same id cannot construct two instances.
    """

    def __init__(self, factory: Callable[[str | None], Document]) -> None:
        """Initialize the cache.

        Args:
            factory: Builds a new Document for an id (None for untitled)
        """
        self._factory = factory
        self._documents: dict[str, Document] = {}
        self._stale: set[str] = set()
        self._lock = threading.Lock()

    def resolve(self, document_id: str) -> Document:
        """Return the cached Document for an id, creating it if needed."""
        if not document_id:
            raise ValueError("document_id must be a non-empty string")
        with self._lock:
            doc = self._documents.get(document_id)
            if doc is None:
                doc = self._factory(document_id)
                self._documents[document_id] = doc
            else:
                # Looked up after the clear: it is the current instance now.
                self._stale.discard(document_id)
            return doc

    def get(self, document_id: str) -> Document | None:
        """Return the cached Document without creating one."""
        with self._lock:
            return self._documents.get(document_id)

    def create_untitled(self) -> Document:
        """Return a fresh Document with no id; it is not cached until adopted."""
        return self._factory(None)

    def adopt(self, document: Document) -> Document:
        """Register a formerly untitled document under its new id.

        If another instance already holds that id, the cached one wins and is
        returned; callers must use the return value.
        """
        document_id = document.document_id
        if not document_id:
            raise ValueError("cannot adopt a document that has no id")
        with self._lock:
            existing = self._documents.get(document_id)
            if existing is not None:
                self._stale.discard(document_id)
                return existing
            self._documents[document_id] = document
            return document

    def clear(self, retain: Iterable[Document] = ()) -> None:
        """Drop every cached instance except those in ``retain``.

        Retained documents stay resolvable (so in-flight completions map back
        to the instance the caller already holds) and are marked stale; call
        discard_stale() for each once it is idle.
        """
        keep = {doc.document_id for doc in retain if doc.document_id}
        with self._lock:
            dropped = len(self._documents)
            self._documents = {
                doc_id: doc for doc_id, doc in self._documents.items() if doc_id in keep
            }
            self._stale = set(self._documents)
            dropped -= len(self._documents)
        logger.debug("Document cache cleared", extra={"dropped": dropped, "retained": len(keep)})

    def discard_stale(self, document: Document) -> None:
        """Evict a document that survived clear() only because it was busy."""
        document_id = document.document_id
        with self._lock:
            if document_id not in self._stale:
                return
            self._stale.discard(document_id)
            if self._documents.get(document_id) is document:
                del self._documents[document_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._documents)

    def __contains__(self, document_id: object) -> bool:
        with self._lock:
            return document_id in self._documents
