"""
Bulk document writes for Sofa SDK.

Translates a list of property sets into one ``_bulk_docs`` request and maps
the per-row response back onto identity-cached Document objects.

Invariants:
    - One HTTP request per write() call
    - Entries succeed or fail independently; a failed entry never rolls
      back or hides the others
    - Every successful entry resolves to the cached Document for its id,
      or to the caller's Document when documents are passed in; untitled
      documents are adopted into the cache under their new id
    - Every document involved is busy for the whole round trip, and its new
      revision is recorded before it stops being busy
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Mapping, Sequence

from .errors import ConflictError, PartialBulkFailure, RemoteError, SofaError

if TYPE_CHECKING:
    from .database import Database
    from .document import Document

logger = logging.getLogger(__name__)


@dataclass
class BulkEntryResult:
    """Outcome of one entry in a bulk write.

    Attributes:
        index: Position of the entry in the request
        document: Document the entry was written to (None if the server
            rejected an entry that had no id)
        revision_id: New revision id on success
        error: Error for this entry on failure
    """

    index: int
    document: Document | None
    revision_id: str | None = None
    error: SofaError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BulkWriteResult:
    """Aggregate outcome of a bulk write, one entry per input property set."""

    entries: list[BulkEntryResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(entry.ok for entry in self.entries)

    @property
    def documents(self) -> list[Document | None]:
        """Written documents in request order; None where the entry failed."""
        return [entry.document if entry.ok else None for entry in self.entries]

    @property
    def failures(self) -> list[BulkEntryResult]:
        return [entry for entry in self.entries if not entry.ok]

    def raise_for_failures(self) -> None:
        """Raise PartialBulkFailure if any entry failed."""
        if not self.ok:
            raise PartialBulkFailure(self)


def _row_error(row: Mapping[str, Any], url: str) -> SofaError:
    error = row.get("error", "unknown_error")
    reason = row.get("reason")
    msg = f"{error}: {reason}" if reason else str(error)
    if row.get("id"):
        msg = f"{row['id']}: {msg}"
    if error == "conflict":
        return ConflictError(msg, status=409, method="POST", url=url, body=dict(row))
    if error == "forbidden":
        return RemoteError(msg, status=403, method="POST", url=url, body=dict(row))
    return RemoteError(msg, status=500, method="POST", url=url, body=dict(row))


class BulkWriteCoordinator:
    """Issues bulk writes on behalf of a Database.

    Example:
        >>> result = await db.put_changes([{"title": "new"}, {"_id": "a", "_rev": "1-x", "n": 2}])
        >>> result.documents
        [Document(0f1e..., rev=1-...), Document(a, rev=2-...)]
    """

    def __init__(self, database: Database) -> None:
        self._database = database

    def build_request(self, properties: Sequence[Mapping[str, Any]]) -> dict[str, Any]:
        """Build the ``_bulk_docs`` body; input property sets are not modified."""
        return {"docs": [dict(props) for props in properties]}

    async def write(
        self,
        properties: Sequence[Mapping[str, Any]],
        documents: Sequence[Document] | None = None,
    ) -> BulkWriteResult:
        """Write every property set in one request.

        Args:
            properties: Property sets; ``_id`` selects the document to update
                (or create with that id) and ``_rev`` must then hold its
                current revision. Entries without ``_id`` create new documents
                with server-assigned ids.
            documents: Optional documents to write over, one per property set;
                each entry takes its id and current revision from the document

        Returns:
            BulkWriteResult with one entry per property set

        Raises:
            TransportError: If the request itself failed
            RemoteError: If the server rejected the whole request
        """
        db = self._database
        if documents is not None:
            if len(documents) != len(properties):
                raise ValueError("properties and documents must have the same length")
            properties = [self._over_document(p, d) for p, d in zip(properties, documents)]
            targets = list(documents)
        else:
            targets = [self._target_for(props) for props in properties]
        body = self.build_request(properties)
        path = db._path("_bulk_docs")

        with db._busy.track(*targets):
            response = await db.transport.request("POST", path, body=body)
            rows = response.body or []
            if len(rows) != len(targets):
                raise RemoteError(
                    f"bulk write returned {len(rows)} rows for {len(targets)} entries",
                    status=response.status,
                    method="POST",
                    url=db.transport.base_url + path,
                    body=rows,
                )
            result = BulkWriteResult()
            for index, (props, target, row) in enumerate(zip(properties, targets, rows)):
                result.entries.append(self._apply_row(index, props, target, row, path))

        failures = len(result.failures)
        if failures:
            logger.warning(
                "Bulk write partially failed",
                extra={"database": db.name, "entries": len(rows), "failed": failures},
            )
        else:
            logger.debug("Bulk write", extra={"database": db.name, "entries": len(rows)})
        return result

    @staticmethod
    def _over_document(props: Mapping[str, Any], document: Document) -> dict[str, Any]:
        updated = dict(props)
        if document.document_id:
            updated["_id"] = document.document_id
        if document.revision_id:
            updated["_rev"] = document.revision_id
        else:
            updated.pop("_rev", None)
        return updated

    def _target_for(self, props: Mapping[str, Any]) -> Document:
        document_id = props.get("_id")
        if document_id:
            return self._database._cache.resolve(document_id)
        return self._database._cache.create_untitled()

    def _apply_row(
        self,
        index: int,
        props: Mapping[str, Any],
        target: Document,
        row: Mapping[str, Any],
        path: str,
    ) -> BulkEntryResult:
        db = self._database
        if "error" in row or "rev" not in row:
            return BulkEntryResult(
                index=index,
                document=None if target.is_untitled else target,
                error=_row_error(row, db.transport.base_url + path),
            )

        if target.is_untitled:
            target.document_id = row["id"]
        cached = db._cache.adopt(target)
        rev = row["rev"]
        snapshot = dict(props)
        snapshot["_id"] = target.document_id
        snapshot["_rev"] = rev
        deleted = bool(props.get("_deleted", False))
        target._update(rev, snapshot, deleted=deleted)
        if cached is not target:
            cached._update(rev, dict(snapshot), deleted=deleted)
        db._note_local_revision(target.document_id, rev)
        return BulkEntryResult(index=index, document=target, revision_id=rev)
