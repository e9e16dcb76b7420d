"""Tests for local store snapshots."""

import asyncio

import pytest

from rcclient.db import LocalStore
from rcclient.errors import MigrationFailed, SnapshotNotFoundError, StorageUnavailableError

ANA = {"name": "Ana", "email": "ana@x.com"}
BRUNO = {"name": "Bruno", "email": "bruno@x.com"}


@pytest.fixture
def snapshot_dir(tmp_path):
    return tmp_path / "snapshots"


@pytest.fixture
def file_store(temp_db, snapshot_dir, bus):
    store = LocalStore(temp_db, bus=bus, snapshot_dir=snapshot_dir, max_snapshots=3).open()
    yield store
    store.close()


class TestCreate:
    """Tests for creating and listing snapshots."""

    def test_create_and_list(self, file_store, snapshot_dir):
        file_store.put("clients", ANA)

        snapshot = file_store.snapshots.create("before import")

        assert snapshot.path.parent == snapshot_dir
        assert snapshot.name.endswith("_before-import.sqlite")
        assert snapshot.label == "before-import"
        assert snapshot.schema_version == file_store.schema_version
        assert file_store.snapshots.list_snapshots() == [snapshot]
        assert file_store.snapshots.latest() == snapshot

    def test_newest_first(self, file_store):
        first = file_store.snapshots.create("one")
        second = file_store.snapshots.create("two")

        assert [s.name for s in file_store.snapshots.list_snapshots()] == [second.name, first.name]

    def test_prunes_beyond_limit(self, file_store):
        """Only the configured number of snapshots is kept."""
        created = [file_store.snapshots.create(f"n{i}") for i in range(5)]

        kept = file_store.snapshots.list_snapshots()

        assert [s.name for s in kept] == [s.name for s in reversed(created[2:])]
        assert not created[0].path.exists()

    def test_publishes_created(self, file_store, recorder):
        snapshot = file_store.snapshots.create()

        assert recorder == [
            {
                "name": snapshot.name,
                "label": "manual",
                "createdAt": snapshot.created_ms,
                "topic": "snapshotCreated",
            }
        ]

    def test_foreign_files_ignored(self, file_store, snapshot_dir):
        snapshot_dir.mkdir(parents=True, exist_ok=True)
        (snapshot_dir / "notes.txt").write_text("x")
        (snapshot_dir / "rc_garbage.sqlite").write_text("x")

        assert file_store.snapshots.list_snapshots() == []

    def test_memory_store_refused(self, snapshot_dir):
        store = LocalStore(None, snapshot_dir=snapshot_dir).open()

        with pytest.raises(StorageUnavailableError):
            store.snapshots.create()
        store.close()

    def test_disabled_without_directory(self, temp_db):
        store = LocalStore(temp_db).open()

        assert store.snapshots is None
        store.close()


class TestRestore:
    """Tests for restoring snapshots."""

    def test_rewinds_records_and_journal(self, file_store):
        file_store.put("clients", ANA)
        snapshot = file_store.snapshots.create()
        file_store.put("clients", BRUNO)

        file_store.snapshots.restore(snapshot.name)

        assert [c["name"] for c in file_store.find("clients")] == ["Ana"]
        assert file_store.pending_count() == 1

    def test_resets_pull_cursors(self, file_store):
        """The next sync pulls the server state again."""
        with file_store.begin() as conn:
            file_store.set_state(conn, "cursor:clients", "42")
            file_store.set_state(conn, "last_sync_at", "1")
        snapshot = file_store.snapshots.create()

        file_store.snapshots.restore(snapshot.name)

        assert file_store.read_state("cursor:clients") is None
        assert file_store.read_state("last_sync_at") == "1"

    def test_publishes_restored(self, file_store, recorder):
        snapshot = file_store.snapshots.create()
        recorder.clear()

        file_store.snapshots.restore(snapshot.name)

        assert recorder == [
            {
                "name": snapshot.name,
                "label": "manual",
                "schemaVersion": file_store.schema_version,
                "topic": "snapshotRestored",
            }
        ]

    def test_unknown_name(self, file_store):
        file_store.put("clients", ANA)

        with pytest.raises(SnapshotNotFoundError):
            file_store.snapshots.restore("rc_20260101T000000000000_nope.sqlite")
        # The store was never closed
        assert file_store.count("clients") == 1

    def test_name_outside_directory(self, file_store, tmp_path):
        """Only files inside the snapshot directory can be restored."""
        outside = file_store.snapshots.create()
        moved = tmp_path / outside.name
        outside.path.rename(moved)

        with pytest.raises(SnapshotNotFoundError):
            file_store.snapshots.restore(f"../{moved.name}")


class TestMigrationSnapshots:
    """Tests for the snapshot taken before a schema upgrade."""

    def test_upgrade_takes_snapshot(self, temp_db, snapshot_dir):
        LocalStore(temp_db).open(target_version=2).close()

        store = LocalStore(temp_db, snapshot_dir=snapshot_dir).open()

        (snapshot,) = store.snapshots.list_snapshots()
        assert snapshot.label == "pre-migration-v2"
        assert snapshot.schema_version == 2
        assert store.schema_version == 3
        store.close()

    def test_fresh_and_current_stores_skip_snapshot(self, temp_db, snapshot_dir):
        store = LocalStore(temp_db, snapshot_dir=snapshot_dir).open()
        store.close()
        store.open()

        assert store.snapshots.list_snapshots() == []
        store.close()

    def test_restore_leaves_quarantine(self, temp_db, snapshot_dir):
        """A failed upgrade is undone by restoring its snapshot at the old version."""
        store = LocalStore(temp_db).open(target_version=2)
        store.put("clients", ANA)
        with store.engine.begin() as conn:
            conn.exec_driver_sql(
                "INSERT INTO financial (type, description, amount, date, sync_status) "
                "VALUES ('Expense', 'Cimento', 10, 'someday', 0)"
            )
        store.close()

        store = LocalStore(temp_db, snapshot_dir=snapshot_dir).open()
        assert isinstance(store.migration_error, MigrationFailed)
        snapshot = store.snapshots.latest()

        store.snapshots.restore(snapshot.name, target_version=2)

        assert store.migration_error is None
        assert store.read_only is False
        assert store.schema_version == 2
        assert [c["name"] for c in store.find("clients")] == ["Ana"]
        store.close()


class TestApplicationSnapshots:
    """Tests for automatic snapshots taken by the application."""

    def test_snapshot_on_open(self, config, open_app):
        config.store.snapshot_interval = 3600

        async def scenario():
            async with open_app() as app:
                return app.store.snapshots.list_snapshots()

        (snapshot,) = asyncio.run(scenario())
        assert snapshot.label == "auto"
        assert snapshot.path.parent == config.store.path.parent / "snapshots"

    def test_recent_snapshot_not_repeated(self, config, open_app):
        config.store.snapshot_interval = 3600

        async def scenario():
            async with open_app():
                pass
            async with open_app() as app:
                return app.store.snapshots.list_snapshots()

        assert len(asyncio.run(scenario())) == 1

    def test_disabled_by_zero_interval(self, open_app):
        async def scenario():
            async with open_app() as app:
                return app.store.snapshots.list_snapshots()

        assert asyncio.run(scenario()) == []
