"""
Sofa Python SDK - Client library for CouchDB-style document databases.

This SDK provides an asynchronous façade over a remote database's REST API:
- Server and Database handles with per-database document identity caching
- Change tracking over the continuous change feed, with ordered
  notifications for external changes only
- Bulk writes with per-entry results
- Push/pull replication with create-target, continuous and cancel options

Example:
    >>> from sofa_sdk import Server, ReplicationOptions
    >>>
    >>> async with Server("http://127.0.0.1:5984/") as server:
    ...     db = server.database("inbox")
    ...     result = await db.put_changes([{"subject": "hello"}])
    ...     db.on_change = lambda change: print(change)
    ...     db.tracks_changes = True
    ...     job = db.pull("http://peer:5984/inbox", ReplicationOptions.CONTINUOUS)
    ...     await job.wait()

Invariants:
    - One Document instance per id per Database
    - Notifications arrive in feed order and never for local writes
    - Server-side bulk and replication failures are reported in results

Version: 1.0.0
"""

__version__ = "1.0.0"

from .bulk import BulkEntryResult, BulkWriteResult
from .changes import (
    ChangeEvent,
    DatabaseChange,
    GapReason,
    SequenceGap,
    TrackerState,
    TrackingFailed,
)
from .config import SofaSettings, TrackerPolicy
from .database import Database
from .document import Document
from .errors import (
    ConflictError,
    NotFoundError,
    PartialBulkFailure,
    RemoteError,
    ReplicationError,
    SofaError,
    TransportError,
)
from .memory import InMemoryChangeFeed
from .replication import ReplicationJob, ReplicationOptions, ReplicationResult
from .server import Server

__all__ = [
    # Version
    "__version__",
    # Entry points
    "Server",
    "Database",
    "Document",
    # Configuration
    "SofaSettings",
    "TrackerPolicy",
    # Change tracking
    "ChangeEvent",
    "DatabaseChange",
    "SequenceGap",
    "GapReason",
    "TrackingFailed",
    "TrackerState",
    "InMemoryChangeFeed",
    # Bulk writes
    "BulkWriteResult",
    "BulkEntryResult",
    # Replication
    "ReplicationOptions",
    "ReplicationJob",
    "ReplicationResult",
    # Errors
    "SofaError",
    "TransportError",
    "RemoteError",
    "NotFoundError",
    "ConflictError",
    "PartialBulkFailure",
    "ReplicationError",
]
