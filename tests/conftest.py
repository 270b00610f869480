"""
Shared fixtures for the Sofa SDK test suite.

FakeCouch is a small in-process stand-in for the database server's REST API,
served through httpx.MockTransport. Writes made through it are published to
an InMemoryChangeFeed per database, the way a real server's change feed
would report them.
"""

import asyncio
import json
import time
import uuid

import httpx
import pytest

from sofa_sdk import InMemoryChangeFeed, Server, SofaSettings, TrackerPolicy
from sofa_sdk.transport import HttpTransport

BASE_URL = "http://couch.test/"


def _json(status: int, payload) -> httpx.Response:
    return httpx.Response(status, json=payload)


class FakeCouch:
    """Minimal document server: databases, documents, _bulk_docs, _replicate."""

    def __init__(self) -> None:
        self.databases: dict[str, dict[str, dict]] = {}
        self.update_seqs: dict[str, int] = {}
        self.feeds: dict[str, InMemoryChangeFeed] = {}
        self.replications: dict[tuple[str, str], dict] = {}
        self.replication_bodies: list[dict] = []
        self.replication_failure: httpx.Response | None = None
        self.requests: list[tuple[str, str]] = []
        self.offline = False

    def add_database(self, name: str) -> InMemoryChangeFeed:
        self.databases[name] = {}
        self.update_seqs[name] = 0
        self.feeds[name] = InMemoryChangeFeed()
        return self.feeds[name]

    def external_write(self, db: str, doc_id: str, body: dict) -> str:
        """Write as another client would; returns the new revision."""
        status, payload = self._write(db, doc_id, dict(body))
        assert status == 201, payload
        return payload["rev"]

    def requests_for(self, method: str, path: str) -> int:
        return sum(1 for r in self.requests if r == (method, path))

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.offline:
            raise httpx.ConnectError("connection refused", request=request)
        path = request.url.path
        method = request.method
        self.requests.append((method, path))
        body = json.loads(request.content) if request.content else None
        segments = [s for s in path.split("/") if s]

        if not segments:
            return _json(200, {"couchdb": "Welcome", "version": "3.3.3"})
        head = segments[0]
        if head == "_uuids":
            count = int(request.url.params.get("count", "1"))
            return _json(200, {"uuids": [uuid.uuid4().hex for _ in range(count)]})
        if head == "_all_dbs":
            return _json(200, sorted(self.databases))
        if head == "_replicate":
            return self._replicate(body)

        if len(segments) == 1:
            return self._database_request(method, head, body)
        if head not in self.databases:
            return _json(404, {"error": "not_found", "reason": "Database does not exist."})

        rest = "/".join(segments[1:])
        if rest == "_bulk_docs" and method == "POST":
            return self._bulk_docs(head, body)
        return self._document_request(method, head, rest, body, request.url.params)

    def _database_request(self, method, db, body) -> httpx.Response:
        exists = db in self.databases
        if method == "PUT":
            if exists:
                return _json(412, {"error": "file_exists", "reason": "The database could not be created."})
            self.add_database(db)
            return _json(201, {"ok": True})
        if not exists:
            return _json(404, {"error": "not_found", "reason": "Database does not exist."})
        if method == "DELETE":
            del self.databases[db]
            return _json(200, {"ok": True})
        if method == "POST":
            status, payload = self._write(db, uuid.uuid4().hex, body)
            return _json(status, payload)
        docs = self.databases[db]
        return _json(
            200,
            {
                "db_name": db,
                "doc_count": sum(1 for d in docs.values() if not d.get("_deleted")),
                "update_seq": self.update_seqs[db],
            },
        )

    def _document_request(self, method, db, doc_id, body, params) -> httpx.Response:
        docs = self.databases[db]
        if method == "GET":
            doc = docs.get(doc_id)
            if doc is None or doc.get("_deleted"):
                return _json(404, {"error": "not_found", "reason": "missing"})
            return _json(200, doc)
        if method == "PUT":
            status, payload = self._write(db, doc_id, body)
            return _json(status, payload)
        if method == "DELETE":
            status, payload = self._write(db, doc_id, {"_rev": params.get("rev"), "_deleted": True})
            return _json(200 if status == 201 else status, payload)
        return _json(405, {"error": "method_not_allowed"})

    def _bulk_docs(self, db, body) -> httpx.Response:
        rows = []
        for doc in body["docs"]:
            doc_id = doc.get("_id") or uuid.uuid4().hex
            status, payload = self._write(db, doc_id, dict(doc))
            if status == 201:
                rows.append({"ok": True, "id": doc_id, "rev": payload["rev"]})
            else:
                rows.append({"id": doc_id, **payload})
        return _json(201, rows)

    def _write(self, db, doc_id, body):
        docs = self.databases[db]
        current = docs.get(doc_id)
        rev = body.get("_rev")
        live = current is not None and not current.get("_deleted")
        if (live and rev != current["_rev"]) or (current is None and rev is not None):
            return 409, {"error": "conflict", "reason": "Document update conflict."}
        generation = int(current["_rev"].split("-")[0]) + 1 if current else 1
        new_rev = f"{generation}-{uuid.uuid4().hex[:12]}"
        stored = dict(body)
        stored["_id"] = doc_id
        stored["_rev"] = new_rev
        docs[doc_id] = stored
        self.update_seqs[db] += 1
        self.feeds[db].publish(
            doc_id, new_rev, deleted=bool(body.get("_deleted")), sequence=self.update_seqs[db]
        )
        return 201, {"ok": True, "id": doc_id, "rev": new_rev}

    def _replicate(self, body) -> httpx.Response:
        self.replication_bodies.append(body)
        if self.replication_failure is not None:
            return self.replication_failure
        key = (body["source"], body["target"])
        if body.get("cancel"):
            if key not in self.replications:
                return _json(404, {"error": "not_found", "reason": "missing"})
            del self.replications[key]
            return _json(200, {"ok": True, "_local_id": "abc123+continuous"})
        if body.get("continuous"):
            self.replications[key] = body
            return _json(202, {"ok": True, "_local_id": "abc123+continuous"})
        return _json(
            200,
            {
                "ok": True,
                "session_id": "s-1",
                "source_last_seq": 12,
                "history": [
                    {"docs_read": 3, "docs_written": 3, "doc_write_failures": 0},
                    {"docs_read": 9, "docs_written": 9, "doc_write_failures": 0},
                ],
            },
        )


async def _wait_until(predicate, timeout: float = 2.0) -> bool:
    start = time.time()
    while time.time() - start < timeout:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


@pytest.fixture
def wait_until():
    """Poll a predicate from async tests."""
    return _wait_until


@pytest.fixture
def couch():
    """Fake server with an empty ``inbox`` database."""
    fake = FakeCouch()
    fake.add_database("inbox")
    return fake


@pytest.fixture
def transport(couch):
    """HttpTransport wired to the fake server."""
    mock = httpx.MockTransport(couch.handler)
    return HttpTransport(BASE_URL, async_transport=mock, sync_transport=mock)


@pytest.fixture
def policy():
    """Tracker policy with short reconnect delays."""
    return TrackerPolicy(initial_delay=0.01, max_delay=0.05, max_attempts=3)


@pytest.fixture
async def server(transport):
    """Server handle on the fake server."""
    server = Server(BASE_URL, settings=SofaSettings(), transport=transport)
    yield server
    await server.close()


@pytest.fixture
def feed(couch):
    """Change feed of the ``inbox`` database."""
    return couch.feeds["inbox"]


@pytest.fixture
def database(server, feed, policy):
    """The ``inbox`` Database, tracking through the in-memory feed."""
    return server.database("inbox", change_feed=feed, policy=policy)
