"""Tests for the application composition root."""

import asyncio

import pytest

from rcclient.app import Application
from rcclient.errors import UnauthenticatedError


class TestLifecycle:
    """Opening and closing the client core."""

    def test_open_offline_by_default(self, config, http):
        """Without probing the client starts offline and idle."""

        async def scenario():
            async with Application(config, http) as app:
                return app.online, app.principal, app.pending_changes, app.engine.cycles

        assert asyncio.run(scenario()) == (False, None, 0, 0)

    def test_probe_decides_initial_state(self, config, http, server):
        """With probing enabled the health endpoint decides."""
        config.connectivity.probe_enabled = True

        async def scenario():
            async with Application(config, http) as app:
                return app.online

        assert asyncio.run(scenario()) is True
        assert server.calls("GET", "/api/health")

    def test_session_survives_restart(self, open_app):
        """A second application picks up the stored session."""

        async def scenario():
            async with open_app() as app:
                await app.sign_in("admin", "secret")
            async with open_app() as app:
                return app.principal

        assert asyncio.run(scenario()).username == "admin"

    def test_pending_changes_survive_restart(self, open_app):
        """Offline writes persist in the store file."""

        async def scenario():
            async with open_app() as app:
                await app.sign_in("admin", "secret")
                app.store.put("clients", {"name": "Ana", "email": "ana@x.com"})
            async with open_app() as app:
                return app.pending_changes, app.collection("clients")

        pending, clients = asyncio.run(scenario())

        assert pending == 1
        assert [c["name"] for c in clients] == ["Ana"]

    def test_sign_out_keeps_journal(self, open_app):
        async def scenario():
            async with open_app() as app:
                await app.sign_in("admin", "secret")
                app.store.put("clients", {"name": "Ana", "email": "ana@x.com"})
                app.sign_out()
                return app.pending_changes, app.engine.can_sync()

        assert asyncio.run(scenario()) == (1, False)


class TestAccess:
    """Reads and writes go through the session gate."""

    def test_collection_requires_session(self, open_app):
        async def scenario():
            async with open_app() as app:
                with pytest.raises(UnauthenticatedError):
                    app.collection("clients")

        asyncio.run(scenario())

    def test_collection_filters(self, open_app):
        """Collections accept where clauses and predicates."""

        async def scenario():
            async with open_app() as app:
                await app.sign_in("admin", "secret")
                app.store.put("clients", {"name": "Ana", "email": "ana@x.com", "is_active": False})
                app.store.put("clients", {"name": "Bia", "email": "bia@x.com"})
                return (
                    app.collection("clients", {"is_active": True}),
                    app.collection("clients", predicate=lambda c: c["name"].startswith("A")),
                )

        active, starting_with_a = asyncio.run(scenario())

        assert [c["name"] for c in active] == ["Bia"]
        assert [c["name"] for c in starting_with_a] == ["Ana"]
