"""
Client-side representation of a remote document.

A Document wraps the latest revision this client knows about. Instances are
owned by their Database's identity cache: obtain them through
Database.document_with_id() or Database.untitled_document(), never by calling
the constructor directly.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

if TYPE_CHECKING:
    from .database import Database

logger = logging.getLogger(__name__)


def quote_document_id(document_id: str) -> str:
    """URL-encode a document id, keeping the ``_design/`` prefix literal."""
    if document_id.startswith("_design/"):
        return "_design/" + quote(document_id[len("_design/"):], safe="")
    return quote(document_id, safe="")


class Document:
    """A named document within a Database.

    Attributes:
        database: Owning Database
        document_id: Document id (None until an untitled document is saved)
        revision_id: Latest revision id known to this client
        properties: Last fetched or written property snapshot, None if stale
        deleted: Whether the latest known revision is a deletion
    """

    def __init__(self, database: Database, document_id: str | None = None) -> None:
        self.database = database
        self.document_id = document_id
        self.revision_id: str | None = None
        self.properties: dict[str, Any] | None = None
        self.deleted = False

    def __repr__(self) -> str:
        return f"Document({self.document_id or '<untitled>'}, rev={self.revision_id})"

    @property
    def is_untitled(self) -> bool:
        return self.document_id is None

    def _path(self) -> str:
        return self.database._path(quote_document_id(self.document_id or ""))

    async def fetch(self) -> dict[str, Any]:
        """GET the current revision and update the local snapshot.

        Returns:
            The document properties (including ``_id`` and ``_rev``)

        Raises:
            NotFoundError: If the document doesn't exist
            TransportError: If the server is unreachable
        """
        if self.is_untitled:
            raise ValueError("an untitled document has nothing to fetch")
        with self.database._busy.track(self):
            response = await self.database.transport.request("GET", self._path())
            body = response.body
            self._update(body.get("_rev"), body, deleted=False)
        return body

    async def put_properties(self, properties: dict[str, Any]) -> Document:
        """Write a new revision.

        An untitled document is created with a server-assigned id (POST) and
        then registered in the identity cache. Otherwise the document is PUT
        over its current known revision.

        Returns:
            The Document holding the new revision (use it; for an untitled
            document whose id is already cached, this is the cached instance)

        Raises:
            ConflictError: If the known revision is no longer current
        """
        body = {k: v for k, v in properties.items() if k not in ("_id", "_rev")}
        if self.revision_id:
            body["_rev"] = self.revision_id

        # Local revisions are noted before the busy mark is released.
        with self.database._busy.track(self):
            if self.is_untitled:
                response = await self.database.transport.request(
                    "POST", self.database._path(), body=body
                )
                self.document_id = response.body["id"]
                doc = self.database._cache.adopt(self)
            else:
                response = await self.database.transport.request("PUT", self._path(), body=body)
                doc = self
            rev = response.body["rev"]
            body["_id"] = doc.document_id
            body["_rev"] = rev
            doc._update(rev, body, deleted=False)
            self.database._note_local_revision(doc.document_id, rev)
        return doc

    async def delete(self) -> None:
        """Delete the document at its current known revision.

        Raises:
            ConflictError: If the known revision is no longer current
            NotFoundError: If the document doesn't exist
        """
        if self.is_untitled or not self.revision_id:
            raise ValueError("delete needs a saved document with a known revision")
        with self.database._busy.track(self):
            response = await self.database.transport.request(
                "DELETE", self._path(), params={"rev": self.revision_id}
            )
            rev = response.body["rev"]
            self._update(rev, None, deleted=True)
            self.database._note_local_revision(self.document_id, rev)

    def _update(self, revision_id: str | None, properties: dict[str, Any] | None, *, deleted: bool) -> None:
        self.revision_id = revision_id
        self.properties = properties
        self.deleted = deleted

    def _apply_external_change(self, revision_id: str, deleted: bool) -> bool:
        """Record a revision reported by the change feed.

        Returns:
            False if this client already knew about the revision
        """
        if revision_id == self.revision_id:
            return False
        logger.debug(
            "External change",
            extra={"document_id": self.document_id, "revision_id": revision_id},
        )
        self._update(revision_id, None, deleted=deleted)
        return True
