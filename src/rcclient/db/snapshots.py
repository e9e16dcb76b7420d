"""Point-in-time copies of the local store file.

Snapshots are taken with SQLite's online backup API, so they are
consistent even while the store is open. A snapshot holds the whole store:
entity rows, the sync journal and the schema version. Restoring one
rewinds pending changes as well; pull cursors are reset so the next sync
fetches the server state again.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError

from .. import audit
from ..errors import SnapshotNotFoundError, StorageUnavailableError
from ..events import SNAPSHOT_CREATED, SNAPSHOT_RESTORED, EventBus
from .migrations import Migrator

if TYPE_CHECKING:
    from .store import LocalStore

logger = structlog.get_logger(__name__)

_STAMP = "%Y%m%dT%H%M%S%f"
# rc_20261018T101500123456_pre-migration-v2.sqlite
_NAME_RE = re.compile(r"^rc_(\d{8}T\d{12})_([a-z0-9-]+)\.sqlite$")


@dataclass(frozen=True)
class Snapshot:
    """A snapshot file and what it holds."""

    name: str
    path: Path
    created_at: datetime
    label: str
    schema_version: int

    @property
    def created_ms(self) -> int:
        return int(self.created_at.timestamp() * 1000)


def _slug(label: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", label.lower()).strip("-") or "manual"


def _sqlite_engine(path: Path) -> Engine:
    return create_engine(f"sqlite:///{path}", echo=False)


def _backup(source: Engine, target: Engine) -> None:
    """Copy one SQLite database over another with the online backup API."""
    src = source.raw_connection()
    try:
        dst = target.raw_connection()
        try:
            src.driver_connection.backup(dst.driver_connection)
        finally:
            dst.close()
    finally:
        src.close()


class SnapshotManager:
    """Creates, lists, prunes and restores snapshots of a file-backed store."""

    def __init__(
        self,
        store: "LocalStore",
        directory: Path | str,
        *,
        keep: int = 5,
        bus: EventBus | None = None,
    ):
        self._store = store
        self.directory = Path(directory)
        self.keep = keep
        self._bus = bus

    def _store_file(self) -> Path:
        path = self._store.path
        if path is None or str(path) == ":memory:" or self._store.is_fallback():
            raise StorageUnavailableError("Snapshots need a file-backed store")
        return Path(path)

    def _describe(self, path: Path) -> Snapshot | None:
        match = _NAME_RE.match(path.name)
        if match is None:
            return None
        created = datetime.strptime(match.group(1), _STAMP).replace(tzinfo=timezone.utc)
        engine = _sqlite_engine(path)
        try:
            version = Migrator().current_version(engine)
        finally:
            engine.dispose()
        return Snapshot(path.name, path, created, match.group(2), version)

    # Queries

    def list_snapshots(self) -> list[Snapshot]:
        """Snapshots in the directory, newest first."""
        if not self.directory.is_dir():
            return []
        described = (self._describe(p) for p in sorted(self.directory.glob("rc_*.sqlite"), reverse=True))
        return [s for s in described if s is not None]

    def latest(self) -> Snapshot | None:
        snapshots = self.list_snapshots()
        return snapshots[0] if snapshots else None

    def get(self, name: str) -> Snapshot:
        path = self.directory / name
        snapshot = None
        if Path(name).name == name and path.is_file():
            snapshot = self._describe(path)
        if snapshot is None:
            raise SnapshotNotFoundError(name)
        return snapshot

    # Commands

    def create(self, label: str = "manual") -> Snapshot:
        """Copy the open store into a new snapshot and prune old ones.

        Raises:
            StorageUnavailableError: The store is in memory, or the
                snapshot file cannot be written.
        """
        self._store_file()
        now = datetime.now(timezone.utc)
        path = self.directory / f"rc_{now.strftime(_STAMP)}_{_slug(label)}.sqlite"

        target = None
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            target = _sqlite_engine(path)
            _backup(self._store.engine, target)
        except (OSError, DBAPIError) as exc:
            raise StorageUnavailableError(f"Cannot write snapshot {path}: {exc}") from exc
        finally:
            if target is not None:
                target.dispose()

        snapshot = self.get(path.name)
        logger.info("snapshot_created", name=snapshot.name, schema_version=snapshot.schema_version)
        audit.log_snapshot("created", snapshot.name, snapshot.label, snapshot.schema_version)
        if self._bus is not None:
            self._bus.publish(
                SNAPSHOT_CREATED,
                {"name": snapshot.name, "label": snapshot.label, "createdAt": snapshot.created_ms},
            )
        self.prune()
        return snapshot

    def prune(self) -> list[Snapshot]:
        """Delete all but the ``keep`` newest snapshots."""
        removed = self.list_snapshots()[self.keep:]
        for snapshot in removed:
            snapshot.path.unlink()
            logger.debug("snapshot_pruned", name=snapshot.name)
        return removed

    def restore(self, name: str, target_version: int | None = None) -> Snapshot:
        """Replace the store's contents with a snapshot and reopen it.

        The store is reopened at ``target_version`` (default: latest), so a
        snapshot taken before a failed upgrade can be restored at its own
        version to leave read-only quarantine.

        Raises:
            SnapshotNotFoundError: No snapshot called ``name``.
        """
        store_file = self._store_file()
        snapshot = self.get(name)

        self._store.close()
        source = _sqlite_engine(snapshot.path)
        target = _sqlite_engine(store_file)
        try:
            _backup(source, target)
        except DBAPIError as exc:
            raise StorageUnavailableError(f"Cannot restore snapshot {name}: {exc}") from exc
        finally:
            source.dispose()
            target.dispose()
            self._store.open(target_version)

        if not self._store.read_only:
            with self._store.begin() as conn:
                self._store.reset_cursors(conn)

        logger.warning(
            "snapshot_restored",
            name=snapshot.name,
            schema_version=self._store.schema_version,
            read_only=self._store.read_only,
        )
        audit.log_snapshot("restored", snapshot.name, snapshot.label, snapshot.schema_version)
        if self._bus is not None:
            self._bus.publish(
                SNAPSHOT_RESTORED,
                {
                    "name": snapshot.name,
                    "label": snapshot.label,
                    "schemaVersion": self._store.schema_version,
                },
            )
        return snapshot
