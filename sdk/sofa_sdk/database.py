"""
Database façade for Sofa SDK.

This module provides the main client interface:
- Database: one remote database; owns the document identity cache, the
  busy set, the sequence cursor, change tracking, bulk writes and
  replication

Example:
    >>> async with Database.from_url("http://127.0.0.1:5984/inbox") as db:
    ...     doc = db.document_with_id("welcome")
    ...     await doc.fetch()
    ...     db.on_change = print
    ...     db.tracks_changes = True

Invariants:
    - At most one Document instance per id per Database
    - Change notifications are delivered in feed order, only while tracking
      is enabled, and never for revisions written through this Database
    - While any document is busy, change notifications are queued and
      flushed together, in arrival order, once the busy set drains
    - Disabling tracking discards queued notifications
"""

from __future__ import annotations

import logging
from collections import OrderedDict, deque
from typing import Any, Callable, Mapping, Sequence
from urllib.parse import unquote

from .bulk import BulkWriteCoordinator, BulkWriteResult
from .busy import BusySet
from .cache import DocumentCache
from .changes import (
    ChangeEvent,
    ChangeFeed,
    ChangeTracker,
    DatabaseChange,
    HttpChangeFeed,
    Notification,
    TrackerItem,
    TrackerState,
)
from .config import SofaSettings, TrackerPolicy
from .document import Document
from .replication import ReplicationCoordinator, ReplicationJob, ReplicationOptions
from .sequence import SequenceCursor
from .server import Server
from .transport import RestTransport

logger = logging.getLogger(__name__)

ChangeListener = Callable[[Notification], None]

# Upper bound on remembered local revisions awaiting their feed echo.
LOCAL_REVISION_LIMIT = 1000


class Database:
    """A database on a Server; the factory for its Documents.

    Obtain one from Server.database() (shared per server and name) or
    Database.from_url() (a new, independent instance every call).
    """

    def __init__(
        self,
        server: Server,
        name: str,
        *,
        change_feed: ChangeFeed | None = None,
        policy: TrackerPolicy | None = None,
    ) -> None:
        """Initialize the façade. Makes no server calls.

        Args:
            server: Parent server
            name: Database name
            change_feed: Change feed source (defaults to the HTTP ``_changes`` feed)
            policy: Change tracker policy (defaults to the server's settings)
        """
        self.server = server
        self.name = name
        self.transport: RestTransport = server.transport
        self.on_change: ChangeListener | None = None

        self._cache = DocumentCache(lambda document_id: Document(self, document_id))
        self._busy = BusySet(on_release=self._busy_released)
        self._cursor = SequenceCursor(self._fetch_update_seq)
        self._tracker = ChangeTracker(
            change_feed or HttpChangeFeed(self.transport, self._path("_changes")),
            self._cursor,
            self._on_tracker_item,
            policy or TrackerPolicy.from_settings(server.settings),
            name=name,
        )
        self._bulk = BulkWriteCoordinator(self)
        self._replication = ReplicationCoordinator(self)
        self._listeners: list[ChangeListener] = []
        self._deferred: deque[TrackerItem] = deque()
        self._local_revisions: OrderedDict[tuple[str, str], None] = OrderedDict()
        self._owns_server = False

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        settings: SofaSettings | None = None,
        transport: RestTransport | None = None,
        **kwargs: Any,
    ) -> Database:
        """Instantiate a Database directly from its URL.

        Unlike Server.database(), calling this twice with the same URL gives
        two distinct Database objects (with two distinct parent Servers), each
        with its own identity cache.
        """
        server_url, _, name = url.rstrip("/").rpartition("/")
        if not server_url or not name:
            raise ValueError(f"not a database URL: {url!r}")
        server = Server(server_url + "/", settings=settings, transport=transport)
        db = server.database(unquote(name), **kwargs)
        db._owns_server = True
        return db

    def __repr__(self) -> str:
        return f"Database({self.url})"

    async def __aenter__(self) -> Database:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Shut down; also closes the transport of a from_url() Database."""
        await self.shutdown()
        if self._owns_server:
            await self.server.close()

    async def shutdown(self) -> None:
        """Wait for triggered replication requests and stop tracking.

        The transport stays open; Server.close() calls this for every
        Database it handed out.
        """
        await self._replication.drain()
        await self.stop_tracking()

    @property
    def url(self) -> str:
        return self.server.url + self._path()

    def _path(self, *parts: str) -> str:
        return self.server.database_path(self.name) + "/".join(parts)

    # Database lifecycle

    async def create(self) -> None:
        """Create the database on the server.

        Raises:
            ConflictError: If a database with this name already exists (412)
        """
        await self.transport.request("PUT", self._path())
        logger.info("Database created", extra={"database": self.name})

    async def delete(self) -> None:
        """Delete the database on the server and forget cached documents."""
        await self.transport.request("DELETE", self._path())
        self.clear_document_cache()
        logger.info("Database deleted", extra={"database": self.name})

    def get_document_count(self) -> int:
        """Current number of documents. (Synchronous: blocks for one round trip.)"""
        response = self.transport.request_sync("GET", self._path())
        return int(response.body["doc_count"])

    def _fetch_update_seq(self) -> Any:
        response = self.transport.request_sync("GET", self._path())
        return response.body["update_seq"]

    # Documents

    def document_with_id(self, document_id: str) -> Document:
        """The Document for an id. Makes no server calls.

        Documents are cached, so there is never more than one instance in
        this Database with the same id.
        """
        return self._cache.resolve(document_id)

    def untitled_document(self) -> Document:
        """A new Document with no id; saving it assigns one."""
        return self._cache.create_untitled()

    def clear_document_cache(self) -> None:
        """Forget cached Documents; later lookups return new instances.

        Documents with operations in flight stay cached until those finish.
        """
        self._cache.clear(retain=self._busy.documents())

    async def put_changes(self, properties: Sequence[Mapping[str, Any]]) -> BulkWriteResult:
        """Bulk-write multiple documents in one HTTP call.

        A property set with ``_id`` updates (or creates) that document and must
        carry its current ``_rev`` when updating; one without ``_id`` always
        creates a new document with a server-assigned id. Entries fail
        independently; check the result or call raise_for_failures().
        """
        return await self._bulk.write(properties)

    async def put_changes_to_documents(
        self,
        properties: Sequence[Mapping[str, Any]],
        documents: Sequence[Document],
    ) -> BulkWriteResult:
        """Bulk-write each property set over the matching document's current revision."""
        return await self._bulk.write(properties, documents)

    def _note_local_revision(self, document_id: str | None, revision_id: str) -> None:
        if not document_id:
            return
        self._local_revisions[(document_id, revision_id)] = None
        while len(self._local_revisions) > LOCAL_REVISION_LIMIT:
            self._local_revisions.popitem(last=False)

    def _busy_released(self, idle: list[Document]) -> None:
        for doc in idle:
            self._cache.discard_stale(doc)
        if not self._busy:
            self._flush_deferred()

    # Change tracking

    @property
    def tracks_changes(self) -> bool:
        """Whether change tracking is enabled. Off by default.

        Only external changes are reported, not ones made through this
        Database. Enabling opens a persistent connection to the server and
        must happen inside a running event loop; if the sequence number is
        not known yet it is fetched first with a blocking call.
        """
        return self._tracker.enabled

    @tracks_changes.setter
    def tracks_changes(self, enabled: bool) -> None:
        if enabled:
            self.start_tracking()
        else:
            self._deferred.clear()
            self._tracker.stop()

    @property
    def tracker_state(self) -> TrackerState:
        return self._tracker.state

    def start_tracking(self) -> None:
        """Enable change tracking (same as ``tracks_changes = True``)."""
        self._tracker.start()

    async def stop_tracking(self) -> None:
        """Disable change tracking and wait for the connection to close."""
        self._deferred.clear()
        await self._tracker.aclose()

    @property
    def last_sequence_number(self) -> int:
        """Last change sequence number received from the database.

        If not known yet it is fetched with a blocking query. Save it on
        shutdown and restore it before enabling tracking to be notified of
        everything that changed in the meantime.
        """
        return self._cursor.get()

    @last_sequence_number.setter
    def last_sequence_number(self, value: int) -> None:
        self._cursor.set(value)

    def add_change_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def remove_change_listener(self, listener: ChangeListener) -> None:
        self._listeners.remove(listener)

    def _on_tracker_item(self, item: TrackerItem) -> None:
        if self._busy or self._deferred:
            self._deferred.append(item)
            return
        self._deliver(item)

    def _flush_deferred(self) -> None:
        if self._deferred:
            logger.debug(
                "Flushing deferred changes",
                extra={"database": self.name, "count": len(self._deferred)},
            )
        while self._deferred and not self._busy:
            self._deliver(self._deferred.popleft())

    def _deliver(self, item: TrackerItem) -> None:
        if isinstance(item, ChangeEvent):
            notification = self._external_change(item)
            if notification is None:
                return
        else:
            notification = item

        listeners = ([self.on_change] if self.on_change else []) + list(self._listeners)
        for listener in listeners:
            try:
                listener(notification)
            except Exception:
                logger.exception(
                    "Change listener failed",
                    extra={"database": self.name, "notification": repr(notification)},
                )

    def _external_change(self, event: ChangeEvent) -> DatabaseChange | None:
        key = (event.document_id, event.revision_id)
        if key in self._local_revisions:
            del self._local_revisions[key]
            logger.debug(
                "Ignoring local change",
                extra={"document_id": event.document_id, "revision_id": event.revision_id},
            )
            return None
        doc = self._cache.resolve(event.document_id)
        if not doc._apply_external_change(event.revision_id, event.deleted):
            return None
        return DatabaseChange(
            document=doc,
            sequence=event.sequence,
            revision_id=event.revision_id,
            deleted=event.deleted,
        )

    # Replication

    def pull(
        self,
        source_url: str,
        options: ReplicationOptions = ReplicationOptions.NONE,
    ) -> ReplicationJob:
        """Trigger replication from a source database into this one.

        Must be called inside a running event loop. The returned job completes
        when the server answers; its result describes what occurred.
        """
        return self._replication.pull(source_url, options)

    def push(
        self,
        target_url: str,
        options: ReplicationOptions = ReplicationOptions.NONE,
    ) -> ReplicationJob:
        """Trigger replication from this database to a target database."""
        return self._replication.push(target_url, options)
