"""
Push/pull replication for Sofa SDK.

The server does the actual replication; this module shapes the request sent
to its ``_replicate`` endpoint and interprets what comes back:
- ReplicationOptions: create-target, continuous and cancel flags
- ReplicationJob: handle for one triggered request
- ReplicationResult: what the job reported (document counts or error)

Invariants:
    - A trigger never raises for server-side failure; the job's result
      carries a ReplicationError instead
    - Cancel is sent with the same ``continuous`` setting as the job it
      cancels, and never with ``create_target``
    - Cancelling something that is not running (a finished one-shot job, or
      an already cancelled continuous job) is a successful no-op
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum, IntFlag
from typing import TYPE_CHECKING, Any

from .errors import NotFoundError, ReplicationError, SofaError

if TYPE_CHECKING:
    from .database import Database

logger = logging.getLogger(__name__)


class ReplicationOptions(IntFlag):
    """Option flags for push and pull replication."""

    NONE = 0
    CREATE_TARGET = 1  # create the destination database if it doesn't exist
    CONTINUOUS = 2  # stay active until cancelled
    CANCEL = 4  # cancel a replication in progress


class ReplicationDirection(str, Enum):
    PUSH = "push"
    PULL = "pull"


@dataclass
class ReplicationResult:
    """Completion report of a replication job.

    Attributes:
        ok: Whether the server accepted and completed the request
        active: A continuous job was started and is still running
        canceled: A running job was stopped by this request
        no_op: A cancel found nothing to stop
        session_id: Replication session id (one-shot jobs)
        local_id: Replication id (continuous jobs)
        no_changes: Source had nothing new
        docs_read: Documents read from the source
        docs_written: Documents written to the target
        doc_write_failures: Documents that failed to write
        body: Raw response body
        error: Failure detail when not ok
    """

    ok: bool
    active: bool = False
    canceled: bool = False
    no_op: bool = False
    session_id: str | None = None
    local_id: str | None = None
    no_changes: bool = False
    docs_read: int = 0
    docs_written: int = 0
    doc_write_failures: int = 0
    body: Any = None
    error: ReplicationError | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReplicationResult:
        """Create from a ``_replicate`` response body.

        The counts come from the newest history entry, which describes the
        session that just ran.
        """
        history = data.get("history") or [{}]
        latest = history[0]
        return cls(
            ok=bool(data.get("ok", False)),
            session_id=data.get("session_id"),
            local_id=data.get("_local_id"),
            no_changes=bool(data.get("no_changes", False)),
            docs_read=int(latest.get("docs_read", 0)),
            docs_written=int(latest.get("docs_written", 0)),
            doc_write_failures=int(latest.get("doc_write_failures", 0)),
            body=data,
        )

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


@dataclass(eq=False)
class ReplicationJob:
    """Handle for one push or pull request.

    The option set is fixed when the job is triggered. Await wait() for the
    ReplicationResult; a continuous job completes as soon as the server has
    started it, and stays ``active`` until a matching cancel succeeds.
    """

    direction: ReplicationDirection
    source: str
    target: str
    options: ReplicationOptions
    result: ReplicationResult | None = None
    canceled: bool = False
    _task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self.result is not None

    @property
    def active(self) -> bool:
        return self.result is not None and self.result.active and not self.canceled

    async def wait(self) -> ReplicationResult:
        """Wait for the server's answer."""
        if self._task is None:
            raise RuntimeError("replication job was never triggered")
        return await asyncio.shield(self._task)


class ReplicationCoordinator:
    """Shapes and triggers replication requests for one Database.

    Example:
        >>> job = db.pull("http://peer:5984/mydb", ReplicationOptions.CONTINUOUS)
        >>> (await job.wait()).active
        True
        >>> await db.pull("http://peer:5984/mydb", ReplicationOptions.CANCEL).wait()
    """

    def __init__(self, database: Database) -> None:
        self._database = database
        self._running: dict[tuple[str, str], ReplicationJob] = {}
        self._pending: set[asyncio.Task] = set()

    def pull(self, source_url: str, options: ReplicationOptions = ReplicationOptions.NONE) -> ReplicationJob:
        """Replicate from ``source_url`` into this database."""
        return self._trigger(ReplicationDirection.PULL, source_url, self._database.name, options)

    def push(self, target_url: str, options: ReplicationOptions = ReplicationOptions.NONE) -> ReplicationJob:
        """Replicate from this database to ``target_url``."""
        return self._trigger(ReplicationDirection.PUSH, self._database.name, target_url, options)

    @property
    def pending_count(self) -> int:
        """Triggered requests the server hasn't answered yet."""
        return len(self._pending)

    async def drain(self) -> None:
        """Wait until every triggered request has been answered."""
        if self._pending:
            logger.debug("Waiting for replication requests", extra={"pending": len(self._pending)})
            await asyncio.wait(list(self._pending))

    def running_job(self, source: str, target: str) -> ReplicationJob | None:
        """The active continuous job for a source/target pair, if any."""
        return self._running.get((source, target))

    def build_body(self, source: str, target: str, options: ReplicationOptions) -> dict[str, Any]:
        """Encode a ``_replicate`` request body."""
        options = ReplicationOptions(options)
        body: dict[str, Any] = {"source": source, "target": target}
        if options & ReplicationOptions.CANCEL:
            body["cancel"] = True
            running = self._running.get((source, target))
            if options & ReplicationOptions.CONTINUOUS or (
                running is not None and running.options & ReplicationOptions.CONTINUOUS
            ):
                body["continuous"] = True
            return body
        if options & ReplicationOptions.CREATE_TARGET:
            body["create_target"] = True
        if options & ReplicationOptions.CONTINUOUS:
            body["continuous"] = True
        return body

    def _trigger(
        self,
        direction: ReplicationDirection,
        source: str,
        target: str,
        options: ReplicationOptions,
    ) -> ReplicationJob:
        options = ReplicationOptions(options)
        job = ReplicationJob(direction=direction, source=source, target=target, options=options)
        body = self.build_body(source, target, options)
        job._task = asyncio.get_running_loop().create_task(self._run(job, body))
        self._pending.add(job._task)
        job._task.add_done_callback(self._pending.discard)
        logger.info(
            "Replication triggered",
            extra={
                "direction": direction.value,
                "source": source,
                "target": target,
                "options": int(options),
            },
        )
        return job

    async def _run(self, job: ReplicationJob, body: dict[str, Any]) -> ReplicationResult:
        cancel = bool(job.options & ReplicationOptions.CANCEL)
        transport = self._database.server.transport
        try:
            response = await transport.request("POST", "_replicate", body=body)
        except NotFoundError as e:
            if cancel:
                result = ReplicationResult(ok=True, no_op=True, body=e.body)
            else:
                result = self._failed(job, e)
        except SofaError as e:
            result = self._failed(job, e)
        else:
            data = response.body if isinstance(response.body, dict) else {}
            result = ReplicationResult.from_dict(data)
            if not result.ok:
                result.error = ReplicationError(
                    f"replication {job.source} -> {job.target} not ok: {data}",
                    source=job.source,
                    target=job.target,
                    status=response.status,
                )

        key = (job.source, job.target)
        if result.ok and cancel:
            running = self._running.pop(key, None)
            if running is not None:
                running.canceled = True
            result.canceled = not result.no_op
        elif result.ok and job.options & ReplicationOptions.CONTINUOUS:
            result.active = True
            self._running[key] = job

        job.result = result
        logger.info(
            "Replication finished" if result.ok else "Replication failed",
            extra={
                "direction": job.direction.value,
                "source": job.source,
                "target": job.target,
                "docs_written": result.docs_written,
                "canceled": result.canceled,
                "no_op": result.no_op,
                "error": str(result.error) if result.error else None,
            },
        )
        return result

    @staticmethod
    def _failed(job: ReplicationJob, error: SofaError) -> ReplicationResult:
        return ReplicationResult(
            ok=False,
            body=getattr(error, "body", None),
            error=ReplicationError(
                f"replication {job.source} -> {job.target} failed: {error.message}",
                source=job.source,
                target=job.target,
                status=getattr(error, "status", None),
            ),
        )
