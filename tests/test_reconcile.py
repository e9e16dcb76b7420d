"""Tests for applying server state to the local store."""

import pytest

from rcclient.db import journal
from rcclient.errors import RecordValidationError
from rcclient.models import BUDGETS, CLIENTS, SyncStatus
from rcclient.sync import reconcile

SERVER_BUDGET = {"id": 7, "clientId": 1, "title": "Reforma", "amount": 100.0, "serverVersion": 1}


def apply(store, item, spec=BUDGETS):
    with store.begin() as conn:
        return reconcile.apply_remote(store, conn, spec, item)


def row(store, entity, record_id):
    with store.engine.connect() as conn:
        return store.fetch_row(conn, entity, record_id)


def chain(store, entity, record_id):
    with store.engine.connect() as conn:
        return journal.chain(conn, entity, record_id)


class TestMergeFields:
    """Tests for merge_fields function."""

    def test_touched_fields_keep_local_values(self):
        local = {"title": "Mine", "amount": 200.0, "status": "Pending"}
        server = {"title": "Theirs", "amount": 100.0, "status": "Approved"}

        merged = reconcile.merge_fields(BUDGETS, local, server, {"amount"})

        assert merged["amount"] == 200.0
        assert merged["title"] == "Theirs"
        assert merged["status"] == "Approved"


class TestApplyRemote:
    """Tests for apply_remote function."""

    def test_insert_unknown_record(self, store):
        assert apply(store, SERVER_BUDGET) == reconcile.INSERTED

        inserted = row(store, "budgets", 7)
        assert inserted["sync_status"] == SyncStatus.SYNCED
        assert inserted["server_version"] == 1

    def test_older_version_skipped(self, store):
        """Versions at or below the local one are ignored."""
        apply(store, {**SERVER_BUDGET, "serverVersion": 3})

        assert apply(store, {**SERVER_BUDGET, "title": "Old", "serverVersion": 2}) == reconcile.SKIPPED
        assert row(store, "budgets", 7)["title"] == "Reforma"

    def test_synced_record_overwritten(self, store):
        apply(store, SERVER_BUDGET)

        outcome = apply(store, {**SERVER_BUDGET, "title": "Nova", "serverVersion": 2})

        assert outcome == reconcile.UPDATED
        assert row(store, "budgets", 7)["title"] == "Nova"

    def test_pending_delete_rebased(self, store):
        """A newer version under a local delete retargets the delete."""
        apply(store, SERVER_BUDGET)
        store.remove("budgets", 7)

        outcome = apply(store, {**SERVER_BUDGET, "title": "Nova", "serverVersion": 2})

        assert outcome == reconcile.REBASED
        (entry,) = chain(store, "budgets", 7)
        assert (entry.op, entry.base_version) == ("delete", 2)
        assert row(store, "budgets", 7)["sync_status"] == SyncStatus.PENDING_DELETE

    def test_remote_delete_of_pending_delete(self, store):
        """Both sides deleted: the record and its chain go away."""
        apply(store, SERVER_BUDGET)
        store.remove("budgets", 7)

        assert apply(store, {"id": 7, "deleted": True}) == reconcile.DELETED
        assert row(store, "budgets", 7) is None
        assert chain(store, "budgets", 7) == []

    def test_remote_delete_of_unknown_record(self, store):
        assert apply(store, {"id": 99, "deleted": True}) == reconcile.SKIPPED

    def test_item_without_id(self, store):
        with pytest.raises(RecordValidationError):
            apply(store, {"title": "x"})

    def test_relocates_local_create(self, store):
        """The local record moves to the next free id and keeps its chain."""
        store.put("clients", {"name": "Ana", "email": "ana@x.com"})

        outcome = apply(store, {"id": 1, "name": "Bruno", "email": "bruno@x.com", "serverVersion": 1}, CLIENTS)

        assert outcome == reconcile.INSERTED
        assert row(store, "clients", 1)["name"] == "Bruno"
        assert row(store, "clients", 2)["name"] == "Ana"
        assert [e.op for e in chain(store, "clients", 2)] == ["create"]


class TestApplyAck:
    """Tests for apply_ack function."""

    def test_create_rekeys_to_server_id(self, store):
        """Children follow their parent's server id."""
        client = store.put("clients", {"name": "Ana", "email": "ana@x.com"})
        store.put("budgets", {"client_id": client["id"], "title": "T", "amount": 10})
        (entry,) = chain(store, "clients", client["id"])

        with store.begin() as conn:
            new_id = reconcile.apply_ack(store, conn, CLIENTS, entry, {"id": 500, "serverVersion": 1})

        assert new_id == 500
        assert row(store, "clients", 500)["sync_status"] == SyncStatus.SYNCED
        assert row(store, "budgets", 1)["client_id"] == 500
        assert chain(store, "budgets", 1)[0].payload["clientId"] == 500

    def test_remaining_entries_rebased(self, store):
        """Entries queued behind the acknowledged one target the new version."""
        apply(store, SERVER_BUDGET)
        store.patch("budgets", 7, {"amount": 150})
        (first,) = chain(store, "budgets", 7)
        with store.begin() as conn:
            journal.mark_dispatched(conn, first.id)
        store.patch("budgets", 7, {"amount": 175})

        with store.begin() as conn:
            reconcile.apply_ack(store, conn, BUDGETS, first, {"id": 7, "serverVersion": 2})

        (second,) = chain(store, "budgets", 7)
        assert second.base_version == 2
        assert row(store, "budgets", 7)["sync_status"] == SyncStatus.PENDING_UPDATE


class TestResolve:
    """Tests for resolve function."""

    def test_unknown_choice(self, store):
        with store.begin() as conn:
            with pytest.raises(ValueError):
                reconcile.resolve(store, conn, BUDGETS, 7, "mine")

    def test_accept_server_drops_rejected_create(self, store):
        """A create the server refused is removed on acceptServer."""
        client = store.put("clients", {"name": "Ana", "email": "ana@x.com"})
        (entry,) = chain(store, "clients", client["id"])
        with store.begin() as conn:
            journal.suspend(conn, entry, "rejected")
            assert reconcile.resolve(store, conn, CLIENTS, client["id"], reconcile.ACCEPT_SERVER) is None

        assert row(store, "clients", client["id"]) is None
        assert store.pending_count() == 0


class TestParkDuplicate:
    """Tests for park_duplicate function."""

    MESSAGE = "UNIQUE constraint failed: clients.email"

    def test_parks_local_change(self, store):
        """The pending local record holding the value goes into conflict."""
        mine = store.put("clients", {"name": "Ana", "email": "ana@x.com"})
        item = {"id": 700, "name": "Ana S.", "email": "ana@x.com", "serverVersion": 1}

        with store.begin() as conn:
            parked = reconcile.park_duplicate(store, conn, CLIENTS, item, self.MESSAGE)

        assert parked == (mine["id"], "duplicate email of server record 700")
        (entry,) = chain(store, "clients", mine["id"])
        assert entry.suspended
        assert entry.server_payload["id"] == 700
        assert row(store, "clients", mine["id"])["sync_status"] == SyncStatus.CONFLICT

    def test_synced_holder_not_parked(self, store):
        """A synced record is never blamed; the item is left to be skipped."""
        apply(store, {"id": 1, "name": "Ana", "email": "ana@x.com", "serverVersion": 1}, CLIENTS)
        item = {"id": 2, "name": "Other", "email": "ana@x.com", "serverVersion": 1}

        with store.begin() as conn:
            assert reconcile.park_duplicate(store, conn, CLIENTS, item, self.MESSAGE) is None

    def test_non_integer_id(self, store):
        with pytest.raises(RecordValidationError):
            apply(store, {"id": "seven", "title": "x"})

    def test_other_constraints_not_parked(self, store):
        """Only unique violations point at a local record."""
        store.put("clients", {"name": "Ana", "email": "ana@x.com"})
        item = {"id": 700, "name": "Ana S.", "email": "ana@x.com", "serverVersion": 1}

        with store.begin() as conn:
            parked = reconcile.park_duplicate(
                store, conn, CLIENTS, item, "NOT NULL constraint failed: clients.email"
            )

        assert parked is None
        assert store.conflicts() == []
