"""Local store: transactional entity storage that writes the sync journal.

Every user-visible write runs in one SQLite transaction together with the
journal change describing it, so either both land or neither does.
"""

import re
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable, Iterator

import structlog
from sqlalchemy import delete, func, inspect, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, OperationalError

from ..errors import (
    ConstraintError,
    MigrationFailed,
    RecordNotFoundError,
    RecordValidationError,
    StorageFullError,
    StorageUnavailableError,
)
from ..events import LOCAL_CHANGED, EventBus
from ..models import (
    EntitySpec,
    SyncStatus,
    children_of,
    get_entity,
    normalize_email,
    normalize_tax_id,
    now_ms,
)
from . import journal
from .engine import create_store_engine
from .migrations import MIGRATIONS, Migration, Migrator
from .snapshots import SnapshotManager
from .tables import ENTITY_TABLES, sync_state

if TYPE_CHECKING:
    from ..session import SessionGate

logger = structlog.get_logger(__name__)

Record = dict[str, Any]
Predicate = Callable[[Record], bool]

# Lookups are normalized the same way stored values are
_NORMALIZERS = {"email": normalize_email, "tax_id": normalize_tax_id}

_CONSTRAINT_RE = re.compile(r"constraint failed: (\w+)\.(\w+)")

META_FIELDS = ("id", "server_version", "sync_status", "created_at", "updated_at")


def _row_to_dict(row: Any) -> Record:
    """Convert SQLAlchemy row to dict."""
    return dict(row._mapping)


def server_image(spec: EntitySpec, row: Record) -> Record:
    """Wire image of a row as the server last acknowledged it."""
    return {**spec.to_wire(row), "id": row["id"], "serverVersion": row["server_version"]}


class StoreTransaction:
    """Entity operations bound to one open transaction."""

    def __init__(
        self,
        store: "LocalStore",
        conn: Connection,
        readwrite: bool,
        entities: Iterable[str] | None,
        changes: list[Record],
    ):
        self.conn = conn
        self._store = store
        self._readwrite = readwrite
        self._entities = set(entities) if entities is not None else None
        self._changes = changes

    def _spec(self, entity: str, write: bool = False) -> EntitySpec:
        spec = get_entity(entity)
        if self._entities is not None and entity not in self._entities:
            raise ValueError(f"Entity {entity} is not part of this transaction")
        if write and not self._readwrite:
            raise StorageUnavailableError("Transaction is read-only")
        self._store._authorize(spec, write)
        return spec

    # Reads

    def get(self, entity: str, record_id: int) -> Record | None:
        self._spec(entity)
        row = self._store.fetch_row(self.conn, entity, record_id)
        if row is None or row["sync_status"] == SyncStatus.PENDING_DELETE:
            return None
        return row

    def find(
        self,
        entity: str,
        where: dict[str, Any] | None = None,
        predicate: Predicate | None = None,
        limit: int | None = None,
        offset: int = 0,
        order_by: str | None = None,
    ) -> list[Record]:
        """Live records matching ``where`` (indexed equality) and ``predicate``.

        ``order_by`` names a column, prefixed with "-" for descending order.
        """
        self._spec(entity)
        stmt = self._store._select(entity, where, order_by)
        if predicate is None:
            if limit is not None:
                stmt = stmt.limit(limit)
            if offset:
                stmt = stmt.offset(offset)
            return [_row_to_dict(row) for row in self.conn.execute(stmt)]

        rows = [r for r in map(_row_to_dict, self.conn.execute(stmt)) if predicate(r)]
        end = None if limit is None else offset + limit
        return rows[offset:end]

    def count(
        self,
        entity: str,
        where: dict[str, Any] | None = None,
        predicate: Predicate | None = None,
    ) -> int:
        if predicate is not None:
            return len(self.find(entity, where, predicate))
        self._spec(entity)
        stmt = self._store._select(entity, where, None)
        return self.conn.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()

    # Writes

    def put(self, entity: str, record: Record) -> Record:
        """Create a record, or fully replace it when ``record`` carries an id."""
        spec = self._spec(entity, write=True)
        values = {k: v for k, v in record.items() if k not in META_FIELDS}
        if record.get("id") is not None:
            return self._update(spec, record["id"], values, replace=True)

        row = spec.validate(values)
        now = now_ms()
        row.update(
            server_version=None,
            sync_status=SyncStatus.PENDING_CREATE,
            created_at=now,
            updated_at=now,
        )
        record_id = self._store.insert_row(self.conn, entity, row)
        row["id"] = record_id
        journal.record_create(self.conn, entity, record_id, spec.to_wire(row), now)
        self._changes.append({"entity": entity, "id": record_id, "op": journal.CREATE})
        return self._store.fetch_row(self.conn, entity, record_id)

    def patch(self, entity: str, record_id: int, partial: Record) -> Record:
        spec = self._spec(entity, write=True)
        values = {k: v for k, v in partial.items() if k not in META_FIELDS}
        return self._update(spec, record_id, values)

    def _update(self, spec: EntitySpec, record_id: int, values: Record, replace: bool = False) -> Record:
        current = self._store.fetch_row(self.conn, spec.name, record_id)
        if current is None or current["sync_status"] == SyncStatus.PENDING_DELETE:
            raise RecordNotFoundError(spec.name, record_id)

        base = {} if replace else {f: current[f] for f in spec.fields if f in current}
        validated = spec.validate({**base, **values})
        changed = [f for f in spec.fields if f in current and validated[f] != current[f]]
        if not changed:
            return current

        status = SyncStatus(current["sync_status"])
        now = max(now_ms(), current["created_at"])
        new_values = {f: validated[f] for f in changed}
        new_values["updated_at"] = now
        if status == SyncStatus.SYNCED:
            new_values["sync_status"] = SyncStatus.PENDING_UPDATE
        self._store.update_row(self.conn, spec.name, record_id, new_values)

        updated = {**current, **new_values}
        journal.record_update(
            self.conn,
            spec.name,
            record_id,
            spec.to_wire(updated),
            changed,
            current["server_version"],
            server_image(spec, current) if status == SyncStatus.SYNCED else None,
            now,
        )
        self._changes.append({"entity": spec.name, "id": record_id, "op": journal.UPDATE})
        return updated

    def remove(self, entity: str, record_id: int) -> None:
        """Delete a record: erase it if the server never saw it, else tombstone it."""
        spec = self._spec(entity, write=True)
        current = self._store.fetch_row(self.conn, entity, record_id)
        if current is None or current["sync_status"] == SyncStatus.PENDING_DELETE:
            raise RecordNotFoundError(entity, record_id)

        status = SyncStatus(current["sync_status"])
        now = max(now_ms(), current["created_at"])
        erase = journal.record_delete(
            self.conn,
            entity,
            record_id,
            current["server_version"],
            server_image(spec, current) if status == SyncStatus.SYNCED else None,
            now,
        )
        if erase:
            self._store.delete_row(self.conn, entity, record_id)
        else:
            self._store.update_row(
                self.conn,
                entity,
                record_id,
                {"sync_status": SyncStatus.PENDING_DELETE, "updated_at": now},
            )
        self._changes.append({"entity": entity, "id": record_id, "op": journal.DELETE})


class LocalStore:
    """SQLite-backed store for the domain entities and the sync journal."""

    def __init__(
        self,
        path: Path | str | None,
        *,
        bus: EventBus | None = None,
        gate: "SessionGate | None" = None,
        migrations: tuple[Migration, ...] | list[Migration] = MIGRATIONS,
        allow_fallback: bool = True,
        backlog_soft_limit: int = 10_000,
        snapshot_dir: Path | str | None = None,
        max_snapshots: int = 5,
    ):
        """Initialize the store. Nothing is opened until ``open()``.

        Args:
            path: SQLite file path, or None for an in-memory store.
            bus: Receives ``localChanged`` after every committed write.
            gate: When set, reads and writes are permission-checked.
            migrations: Ordered schema migrations.
            allow_fallback: Use memory when the file cannot be opened.
            backlog_soft_limit: Journal size considered a backlog.
            snapshot_dir: Enables snapshots, including one before every
                schema upgrade of an existing store.
            max_snapshots: Snapshots kept in ``snapshot_dir``.
        """
        self._path = path
        self._bus = bus
        self._gate = gate
        self._migrator = Migrator(migrations)
        self._allow_fallback = allow_fallback
        self.backlog_soft_limit = backlog_soft_limit
        self._engine: Engine | None = None
        self._fallback = False
        self._live: dict[str, list[str]] = {}
        self.schema_version = 0
        self.migration_error: MigrationFailed | None = None
        self.snapshots: SnapshotManager | None = None
        if snapshot_dir is not None:
            self.snapshots = SnapshotManager(self, snapshot_dir, keep=max_snapshots, bus=bus)

    @property
    def path(self) -> Path | str | None:
        return self._path

    @property
    def gate(self) -> "SessionGate | None":
        return self._gate

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise StorageUnavailableError("Local store is not open")
        return self._engine

    def open(self, target_version: int | None = None) -> "LocalStore":
        """Open the store and migrate it to ``target_version`` (default: latest).

        A failed migration leaves the store open in read-only quarantine
        with ``migration_error`` set.
        """
        if self._engine is not None:
            return self

        self._engine, self._fallback = create_store_engine(self._path, self._allow_fallback)
        self.migration_error = None
        try:
            self._snapshot_before_upgrade(target_version)
            self.schema_version = self._migrator.upgrade(self._engine, target_version)
        except MigrationFailed as exc:
            self.migration_error = exc
            self.schema_version = exc.from_version
            logger.error(
                "store_quarantined",
                from_version=exc.from_version,
                to_version=exc.to_version,
                error=str(exc.cause),
            )
        except StorageUnavailableError:
            self.close()
            raise

        self._reflect()
        if not self.read_only:
            with self._engine.begin() as conn:
                journal.reset_dispatched(conn)

        logger.info(
            "store_opened",
            path=str(self._path),
            schema_version=self.schema_version,
            fallback=self._fallback,
            read_only=self.read_only,
        )
        return self

    def _snapshot_before_upgrade(self, target_version: int | None) -> None:
        if self.snapshots is None or self._fallback:
            return
        current = self._migrator.current_version(self.engine)
        target = self._migrator.latest if target_version is None else target_version
        if 0 < current < target:
            self.snapshots.create(f"pre-migration v{current}")

    def close(self) -> None:
        """Close the store."""
        if self._engine:
            self._engine.dispose()
            self._engine = None
        self._live = {}

    def is_fallback(self) -> bool:
        """True when the file store was unavailable and memory is used instead."""
        return self._fallback

    @property
    def read_only(self) -> bool:
        return self.migration_error is not None

    def _reflect(self) -> None:
        """Record which columns exist at the persisted schema version."""
        inspector = inspect(self.engine)
        tables = set(inspector.get_table_names())
        self._live = {
            name: [c["name"] for c in inspector.get_columns(name)]
            for name in ENTITY_TABLES
            if name in tables
        }

    def _columns(self, entity: str) -> list[str]:
        if entity not in self._live:
            raise StorageUnavailableError(f"Entity store {entity} does not exist")
        return self._live[entity]

    def _require_writable(self) -> None:
        if self._engine is None:
            raise StorageUnavailableError("Local store is not open")
        if self.migration_error is not None:
            raise StorageUnavailableError(
                "Local store is read-only after a failed migration"
            ) from self.migration_error

    def _authorize(self, spec: EntitySpec, write: bool) -> None:
        if self._gate is not None:
            self._gate.require_permission(spec.manage_permission if write else spec.view_permission)

    def _select(self, entity: str, where: dict[str, Any] | None, order_by: str | None):
        table = ENTITY_TABLES[entity]
        live = self._columns(entity)
        stmt = select(*[table.c[name] for name in live]).where(
            table.c.sync_status != SyncStatus.PENDING_DELETE
        )

        for field, value in (where or {}).items():
            if field not in live:
                raise ValueError(f"Unknown field {field!r} for {entity}")
            if field in _NORMALIZERS:
                value = _NORMALIZERS[field](value)
            column = table.c[field]
            stmt = stmt.where(column.is_(None) if value is None else column == value)

        if order_by:
            name = order_by.lstrip("-")
            if name not in live:
                raise ValueError(f"Unknown field {name!r} for {entity}")
            column = table.c[name]
            stmt = stmt.order_by(column.desc() if order_by.startswith("-") else column, table.c.id)
        else:
            stmt = stmt.order_by(table.c.id)
        return stmt

    @contextmanager
    def _translate_errors(self) -> Iterator[None]:
        try:
            yield
        except IntegrityError as exc:
            message = str(exc.orig)
            match = _CONSTRAINT_RE.search(message)
            entity = match.group(1) if match else "store"
            if "UNIQUE" in message.upper():
                raise ConstraintError(entity, message) from exc
            raise RecordValidationError(entity, message) from exc
        except OperationalError as exc:
            message = str(exc.orig)
            if "full" in message.lower():
                raise StorageFullError(message) from exc
            raise StorageUnavailableError(message) from exc

    @contextmanager
    def transaction(
        self,
        readwrite: bool = True,
        entities: Iterable[str] | None = None,
    ) -> Iterator[StoreTransaction]:
        """Explicit multi-entity transaction.

        Example:
            with store.transaction(entities=["clients", "budgets"]) as tx:
                client = tx.put("clients", {...})
                tx.put("budgets", {"client_id": client["id"], ...})
        """
        engine = self.engine
        if readwrite:
            self._require_writable()
        changes: list[Record] = []
        with self._translate_errors():
            with engine.begin() as conn:
                yield StoreTransaction(self, conn, readwrite, entities, changes)

        if self._bus is not None:
            for change in changes:
                self._bus.publish(LOCAL_CHANGED, change)

    # Single-operation shortcuts

    def get(self, entity: str, record_id: int) -> Record | None:
        with self.transaction(readwrite=False, entities=[entity]) as tx:
            return tx.get(entity, record_id)

    def find(
        self,
        entity: str,
        where: dict[str, Any] | None = None,
        predicate: Predicate | None = None,
        limit: int | None = None,
        offset: int = 0,
        order_by: str | None = None,
    ) -> list[Record]:
        with self.transaction(readwrite=False, entities=[entity]) as tx:
            return tx.find(entity, where, predicate, limit, offset, order_by)

    def count(
        self,
        entity: str,
        where: dict[str, Any] | None = None,
        predicate: Predicate | None = None,
    ) -> int:
        with self.transaction(readwrite=False, entities=[entity]) as tx:
            return tx.count(entity, where, predicate)

    def put(self, entity: str, record: Record) -> Record:
        with self.transaction(entities=[entity]) as tx:
            return tx.put(entity, record)

    def patch(self, entity: str, record_id: int, partial: Record) -> Record:
        with self.transaction(entities=[entity]) as tx:
            return tx.patch(entity, record_id, partial)

    def remove(self, entity: str, record_id: int) -> None:
        with self.transaction(entities=[entity]) as tx:
            tx.remove(entity, record_id)

    # Journal views

    def pending_count(self) -> int:
        """Number of journal entries awaiting the server."""
        with self.engine.connect() as conn:
            return journal.count(conn)

    def backlog_high(self) -> bool:
        return self.pending_count() > self.backlog_soft_limit

    def conflicts(self) -> list[Record]:
        """Records parked in conflict, with their local and last known server images."""
        with self.engine.connect() as conn:
            return [
                {
                    "entity": entry.entity,
                    "id": entry.local_id,
                    "op": entry.op,
                    "reason": entry.last_error,
                    "local": self.fetch_row(conn, entry.entity, entry.local_id),
                    "server": entry.server_payload,
                }
                for entry in journal.suspended_entries(conn)
            ]

    # Row-level access for the sync engine. No permission checks, no journal.

    @contextmanager
    def begin(self) -> Iterator[Connection]:
        """Writable connection with store error translation."""
        self._require_writable()
        with self._translate_errors():
            with self.engine.begin() as conn:
                yield conn

    def fetch_row(self, conn: Connection, entity: str, record_id: int) -> Record | None:
        """Row by id, tombstones included."""
        table = ENTITY_TABLES[entity]
        columns = [table.c[name] for name in self._columns(entity)]
        row = conn.execute(select(*columns).where(table.c.id == record_id)).first()
        return _row_to_dict(row) if row else None

    def rows_where(self, conn: Connection, entity: str, column: str, value: Any) -> list[Record]:
        """Rows whose ``column`` equals ``value``, tombstones included."""
        table = ENTITY_TABLES[entity]
        columns = [table.c[name] for name in self._columns(entity)]
        stmt = select(*columns).where(table.c[column] == value).order_by(table.c.id)
        return [_row_to_dict(row) for row in conn.execute(stmt)]

    def insert_row(self, conn: Connection, entity: str, values: Record) -> int:
        live = self._columns(entity)
        values = {k: v for k, v in values.items() if k in live}
        result = conn.execute(ENTITY_TABLES[entity].insert().values(**values))
        return result.inserted_primary_key[0]

    def update_row(self, conn: Connection, entity: str, record_id: int, values: Record) -> None:
        table = ENTITY_TABLES[entity]
        live = self._columns(entity)
        values = {k: v for k, v in values.items() if k in live and k != "id"}
        conn.execute(update(table).where(table.c.id == record_id).values(**values))

    def delete_row(self, conn: Connection, entity: str, record_id: int) -> None:
        table = ENTITY_TABLES[entity]
        conn.execute(delete(table).where(table.c.id == record_id))

    def rekey(self, conn: Connection, entity: str, old_id: int, new_id: int) -> None:
        """Move a record to a new id, rewriting child references and its chain."""
        if old_id == new_id:
            return
        table = ENTITY_TABLES[entity]
        conn.execute(update(table).where(table.c.id == old_id).values(id=new_id))
        for child, column in children_of(entity):
            child_table = ENTITY_TABLES[child.name]
            conn.execute(
                update(child_table)
                .where(child_table.c[column] == old_id)
                .values({column: new_id})
            )
        journal.rekey(conn, entity, old_id, new_id)

    def relocate(self, conn: Connection, entity: str, record_id: int) -> int:
        """Move a local-only record out of the way of a server id."""
        table = ENTITY_TABLES[entity]
        new_id = (conn.execute(select(func.max(table.c.id))).scalar() or 0) + 1
        self.rekey(conn, entity, record_id, new_id)
        logger.info("record_relocated", entity=entity, old_id=record_id, new_id=new_id)
        return new_id

    def get_state(self, conn: Connection, key: str) -> str | None:
        row = conn.execute(select(sync_state.c.value).where(sync_state.c.key == key)).first()
        return row[0] if row else None

    def set_state(self, conn: Connection, key: str, value: str | None) -> None:
        stmt = sqlite_insert(sync_state).values(key=key, value=value)
        stmt = stmt.on_conflict_do_update(index_elements=["key"], set_={"value": value})
        conn.execute(stmt)

    def reset_cursors(self, conn: Connection) -> None:
        """Forget pull positions so the next sync fetches everything again."""
        conn.execute(delete(sync_state).where(sync_state.c.key.like("cursor:%")))

    def read_state(self, key: str) -> str | None:
        with self.engine.connect() as conn:
            return self.get_state(conn, key)
