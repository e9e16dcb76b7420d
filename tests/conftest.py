"""Pytest configuration and fixtures."""

import contextlib
import json
import threading
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlparse

import pytest
import requests
from requests.adapters import BaseAdapter
from requests.structures import CaseInsensitiveDict

from rcclient.app import Application
from rcclient.config import (
    Config,
    ConnectivityConfig,
    RemoteConfig,
    SessionConfig,
    StoreConfig,
    SyncConfig,
)
from rcclient.db import LocalStore
from rcclient.events import EventBus

BASE_URL = "http://rc.test"
RESOURCES = ("users", "clients", "budgets", "contracts", "financial")


class FakeServer(BaseAdapter):
    """In-process stand-in for the REST API, mounted on a requests.Session.

    Keeps records with a per-record ``serverVersion`` and a global change
    log that backs the ``since`` cursor of pulls.
    """

    def __init__(self) -> None:
        super().__init__()
        self.users = {
            "admin": {"id": 1, "password": "secret", "role": "admin", "permissions": []},
            "viewer": {
                "id": 2,
                "password": "secret",
                "role": "user",
                "permissions": ["dashboard_access", "clients_view"],
            },
        }
        self.records: dict[str, dict[int, dict[str, Any]]] = {r: {} for r in RESOURCES}
        self.changes: list[dict[str, Any]] = []
        self.requests: list[tuple[str, str, Any]] = []
        self.tokens: set[str] = set()
        self.next_id = 500
        self.failed_logins = 0
        self.offline = False
        # Status codes returned, in order, by the next POST/PUT/DELETE requests
        self.push_failures: list[int] = []
        # Pulls of these resources return nothing, as if the server lagged
        self.hidden: set[str] = set()
        # PUTs always answer 409 with the current record
        self.always_conflict = False
        # When set, the first pull blocks until the event is set
        self.pull_hold: threading.Event | None = None
        self.pull_entered = threading.Event()

    # Test helpers

    def seed(self, resource: str, record_id: int, **fields: Any) -> dict[str, Any]:
        """Store a record as if another client had created it."""
        item = {**fields, "id": record_id, "serverVersion": 1}
        self.records[resource][record_id] = item
        self._log(resource, item)
        return item

    def edit(self, resource: str, record_id: int, **fields: Any) -> dict[str, Any]:
        """Change a record server-side, bumping its version."""
        current = self.records[resource][record_id]
        item = {**current, **fields, "serverVersion": current["serverVersion"] + 1}
        self.records[resource][record_id] = item
        self._log(resource, item)
        return item

    def remove(self, resource: str, record_id: int) -> None:
        current = self.records[resource].pop(record_id)
        self._log(resource, {"id": record_id, "deleted": True, "serverVersion": current["serverVersion"] + 1})

    def calls(self, method: str, path: str | None = None) -> list[tuple[str, str, Any]]:
        return [r for r in self.requests if r[0] == method and (path is None or r[1] == path)]

    def _log(self, resource: str, item: dict[str, Any]) -> None:
        self.changes.append({"seq": len(self.changes) + 1, "resource": resource, "item": dict(item)})

    # Transport

    def send(self, request, stream=False, timeout=None, verify=True, cert=None, proxies=None):
        if self.offline:
            raise requests.ConnectionError("server unreachable")

        url = urlparse(request.url)
        query = {k: v[0] for k, v in parse_qs(url.query).items()}
        body = json.loads(request.body) if request.body else None
        self.requests.append((request.method, url.path, body))

        status, payload, headers = self._dispatch(request.method, url.path, query, body, request.headers)
        return self._response(request, status, payload, headers)

    def close(self) -> None:
        pass

    @staticmethod
    def _response(request, status: int, payload: Any, headers: dict[str, str] | None = None):
        response = requests.Response()
        response.status_code = status
        response._content = json.dumps(payload).encode("utf-8") if payload is not None else b""
        response.headers = CaseInsensitiveDict({"Content-Type": "application/json", **(headers or {})})
        response.encoding = "utf-8"
        response.url = request.url
        response.request = request
        return response

    def _dispatch(self, method: str, path: str, query: dict[str, str], body: Any, headers: Any):
        if path == "/api/health":
            return 200, {"status": "ok"}, None
        if path == "/api/auth/login" and method == "POST":
            return self._login(body)

        token = headers.get("Authorization", "").removeprefix("Bearer ")
        if token not in self.tokens:
            return 401, {"error": "Authentication required"}, None

        parts = path.split("/")[2:]
        resource = parts[0]
        record_id = int(parts[1]) if len(parts) > 1 else None

        if method in ("POST", "PUT", "DELETE") and self.push_failures:
            return self.push_failures.pop(0), {"error": "injected failure"}, None

        if method == "GET" and record_id is None:
            return self._pull(resource, query)
        if method == "GET":
            item = self.records[resource].get(record_id)
            return (200, item, None) if item else (404, {"error": "Not found"}, None)
        if method == "POST":
            return self._create(resource, body)
        if method == "PUT":
            return self._update(resource, record_id, body)
        if method == "DELETE":
            return self._delete(resource, record_id, query)
        return 405, {"error": "Method not allowed"}, None

    def _login(self, body: dict[str, Any]):
        if self.failed_logins >= 5:
            return 429, {"error": "Too many login attempts"}, {"Retry-After": "60"}
        user = self.users.get(body.get("username"))
        if user is None or user["password"] != body.get("password"):
            self.failed_logins += 1
            return 401, {"error": "Invalid credentials"}, None

        self.failed_logins = 0
        token = f"token-{len(self.tokens) + 1}"
        self.tokens.add(token)
        principal = {
            "id": user["id"],
            "username": body["username"],
            "role": user["role"],
            "permissions": user["permissions"],
        }
        return 200, {"token": token, "principal": principal}, None

    def _pull(self, resource: str, query: dict[str, str]):
        if self.pull_hold is not None and not self.pull_entered.is_set():
            self.pull_entered.set()
            self.pull_hold.wait(5)

        since = int(query.get("since", 0))
        limit = int(query.get("limit", 100))
        changes = [] if resource in self.hidden else [
            c for c in self.changes if c["resource"] == resource and c["seq"] > since
        ]
        page = changes[:limit]
        cursor = str(page[-1]["seq"]) if page else (str(since) if since else None)
        return 200, {
            "items": [c["item"] for c in page],
            "nextCursor": cursor,
            "hasMore": len(changes) > limit,
        }, None

    def _create(self, resource: str, body: dict[str, Any]):
        record_id = self.next_id
        self.next_id += 1
        item = {**body, "id": record_id, "serverVersion": 1}
        self.records[resource][record_id] = item
        self._log(resource, item)
        return 201, item, None

    def _update(self, resource: str, record_id: int, body: dict[str, Any]):
        current = self.records[resource].get(record_id)
        if current is None:
            return 404, {"error": "Not found"}, None
        if self.always_conflict:
            return 409, {"serverVersion": current["serverVersion"], "record": current}, None
        if body.get("serverVersion") != current["serverVersion"]:
            return 409, {"serverVersion": current["serverVersion"]}, None

        fields = {k: v for k, v in body.items() if k not in ("id", "serverVersion")}
        item = {**current, **fields, "serverVersion": current["serverVersion"] + 1}
        self.records[resource][record_id] = item
        self._log(resource, item)
        return 200, item, None

    def _delete(self, resource: str, record_id: int, query: dict[str, str]):
        current = self.records[resource].get(record_id)
        if current is None:
            return 404, {"error": "Not found"}, None
        if "serverVersion" in query and int(query["serverVersion"]) != current["serverVersion"]:
            return 409, {"serverVersion": current["serverVersion"]}, None
        self.remove(resource, record_id)
        return 204, None, None


@pytest.fixture
def server() -> FakeServer:
    """Fake REST server."""
    return FakeServer()


@pytest.fixture
def http(server: FakeServer) -> requests.Session:
    """requests session routed to the fake server."""
    session = requests.Session()
    session.mount(BASE_URL, server)
    return session


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Configuration pointing every file at a temporary directory."""
    return Config(
        store=StoreConfig(path=tmp_path / "rc.sqlite", snapshot_interval=0),
        remote=RemoteConfig(base_url=BASE_URL),
        sync=SyncConfig(tick_interval=3600, backoff_base=2, backoff_max=300),
        connectivity=ConnectivityConfig(debounce=0, probe_enabled=False),
        session=SessionConfig(storage_path=tmp_path / "session.json"),
    )


@pytest.fixture
def open_app(config: Config, http: requests.Session):
    """Factory for a running Application: ``async with open_app(online=True) as app``."""

    @contextlib.asynccontextmanager
    async def factory(online: bool = False):
        app = Application(config, http)
        await app.open(online=online)
        try:
            yield app
        finally:
            await app.close()

    return factory


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def store(bus: EventBus):
    """Open in-memory store without permission checks."""
    store = LocalStore(None, bus=bus).open()
    yield store
    store.close()


@pytest.fixture
def temp_db(tmp_path: Path) -> Path:
    """Path for a file-backed store."""
    return tmp_path / "store.sqlite"


@pytest.fixture
def recorder(bus: EventBus):
    """Collects every event published on ``bus``."""
    events: list[dict[str, Any]] = []
    bus.subscribe("*", events.append)
    return events
