"""
Server entry point for Sofa SDK.

A Server is the factory for Database objects. Looking a database up by name
through the same Server always returns the same Database, so its identity
cache and change tracking are shared by every caller.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

from .config import SofaSettings
from .transport import HttpTransport, RestTransport

if TYPE_CHECKING:
    from .database import Database

logger = logging.getLogger(__name__)


class Server:
    """A database server reachable over HTTP.

    Example:
        >>> async with Server("http://127.0.0.1:5984/") as server:
        ...     db = server.database("inbox")
        ...     await db.create()
    """

    def __init__(
        self,
        url: str | None = None,
        *,
        settings: SofaSettings | None = None,
        transport: RestTransport | None = None,
    ) -> None:
        """Initialize the server handle.

        Args:
            url: Server base URL (defaults to settings.server_url)
            settings: SDK settings (loaded from environment when omitted)
            transport: Optional pre-built transport, mainly for tests
        """
        self.settings = settings or SofaSettings()
        url = url or self.settings.server_url
        if not url.endswith("/"):
            url += "/"
        self.url = url
        self.transport = transport or HttpTransport(url, timeout=self.settings.request_timeout)
        self._databases: dict[str, Database] = {}
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Server({self.url})"

    async def __aenter__(self) -> Server:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Shut down every database handed out, then close the transport."""
        with self._lock:
            databases = list(self._databases.values())
        for db in databases:
            await db.shutdown()
        await self.transport.close()

    def database(self, name: str, **kwargs: Any) -> Database:
        """Return the Database with this name, creating the handle if needed.

        Makes no server calls; the database doesn't need to exist yet.
        Keyword arguments are only used when the handle is first created.
        """
        from .database import Database

        with self._lock:
            db = self._databases.get(name)
            if db is None:
                db = Database(self, name, **kwargs)
                self._databases[name] = db
            return db

    def get_version(self) -> str:
        """Server version string. (Synchronous: blocks for one round trip.)"""
        response = self.transport.request_sync("GET", "")
        return str(response.body.get("version"))

    def generate_uuids(self, count: int = 1) -> list[str]:
        """Ask the server for fresh unique ids. (Synchronous)"""
        response = self.transport.request_sync("GET", "_uuids", params={"count": count})
        return list(response.body.get("uuids", []))

    def get_databases(self) -> list[Database]:
        """Databases on the server, as Database handles. (Synchronous)"""
        response = self.transport.request_sync("GET", "_all_dbs")
        names = response.body if isinstance(response.body, list) else []
        return [self.database(name) for name in names if isinstance(name, str)]

    def database_path(self, name: str) -> str:
        """Path of a database relative to the server URL."""
        return quote(name, safe="") + "/"
