"""
Error types for Sofa SDK.

This module defines all exception types raised by the SDK:
- SofaError: Base exception
- TransportError: Network failures and change-feed disconnects
- RemoteError: Non-success HTTP response from the database server
- NotFoundError: Document or database does not exist
- ConflictError: Revision mismatch or duplicate creation
- PartialBulkFailure: Some entries of a bulk write failed
- ReplicationError: A replication job failed

Invariants:
    - All errors inherit from SofaError
    - Errors include context for debugging
    - Per-entry and per-job failures are carried in results, not raised
      by the operation that produced them
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from .bulk import BulkWriteResult


class SofaError(Exception):
    """Base exception for all Sofa SDK errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "SOFA_ERROR"
        self.details = details or {}


class TransportError(SofaError):
    """The request never produced an HTTP response.

    Raised when:
    - Server is unreachable
    - Connection drops or times out
    - The change feed is closed underneath the tracker
    """

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="TRANSPORT_ERROR",
            details={"url": url},
        )
        self.url = url


class RemoteError(SofaError):
    """The server answered with a non-success status."""

    code_name = "HTTP_ERROR"

    def __init__(
        self,
        message: str,
        status: int,
        method: Optional[str] = None,
        url: Optional[str] = None,
        body: Any = None,
    ) -> None:
        super().__init__(
            message,
            code=self.code_name,
            details={"status": status, "method": method, "url": url},
        )
        self.status = status
        self.method = method
        self.url = url
        self.body = body


class NotFoundError(RemoteError):
    """Resource not found (HTTP 404)."""

    code_name = "NOT_FOUND"


class ConflictError(RemoteError):
    """Update rejected by the server.

    Raised when:
    - The revision id sent with an update is not the current one (409)
    - A database or document with that name already exists (412)
    """

    code_name = "CONFLICT"


class PartialBulkFailure(SofaError):
    """Bulk write where some entries succeeded and some failed.

    Attributes:
        result: The complete BulkWriteResult, including successful entries
    """

    def __init__(self, result: BulkWriteResult) -> None:
        failures = result.failures
        count = len(failures)
        msg = "bulk write failed for {} entry" if count == 1 else "bulk write failed for {} entries"
        super().__init__(
            msg.format(count),
            code="PARTIAL_BULK_FAILURE",
            details={
                "failed_indexes": [entry.index for entry in failures],
                "succeeded": len(result.entries) - count,
            },
        )
        self.result = result


class ReplicationError(SofaError):
    """A replication job failed.

    Reported through ReplicationResult.error rather than raised by the
    trigger call.
    """

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        target: Optional[str] = None,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(
            message,
            code="REPLICATION_ERROR",
            details={"source": source, "target": target, "status": status},
        )
        self.source = source
        self.target = target
        self.status = status


_STATUS_ERRORS: Dict[int, type[RemoteError]] = {
    404: NotFoundError,
    409: ConflictError,
    412: ConflictError,
}


def error_for_status(
    status: int,
    method: Optional[str] = None,
    url: Optional[str] = None,
    body: Any = None,
) -> RemoteError:
    """Build the exception matching an HTTP error response.

    Args:
        status: HTTP status code (>= 400)
        method: Request method
        url: Request URL
        body: Parsed response body, if any

    Returns:
        NotFoundError, ConflictError or a generic RemoteError
    """
    error_cls = _STATUS_ERRORS.get(status, RemoteError)
    msg = f"{status} {method or ''} {url or ''}".strip()
    if isinstance(body, dict) and body.get("error"):
        msg += f": {body['error']}"
        if body.get("reason"):
            msg += f" ({body['reason']})"
    return error_cls(msg, status=status, method=method, url=url, body=body)
