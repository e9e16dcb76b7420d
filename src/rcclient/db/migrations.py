"""Versioned schema migrations applied atomically when the store opens.

Every pending migration runs inside one transaction together with the
``schema_meta`` update, so an upgrade either fully commits or leaves the
persisted version untouched. Data transforms only touch rows still in
their old shape, which makes a retried upgrade safe.
"""

import json
from dataclasses import dataclass
from typing import Callable

import structlog
from sqlalchemy import select, text
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine

from .. import audit
from ..errors import MigrationFailed, StorageUnavailableError
from ..models import DEFAULT_PERMISSIONS, normalize_email, normalize_tax_id, now_ms, to_epoch_ms
from .schema import (
    CLIENT_TAX_ID_INDEX,
    FINANCIAL_INDEXES,
    FINANCIAL_V3,
    SCHEMA_META,
    V1_STATEMENTS,
)
from .tables import schema_meta

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Migration:
    """One schema version step."""

    version: int
    description: str
    apply: Callable[[Connection], None]


def _has_column(conn: Connection, table: str, column: str) -> bool:
    rows = conn.exec_driver_sql(f"PRAGMA table_info({table})").fetchall()
    return any(row[1] == column for row in rows)


def _column_type(conn: Connection, table: str, column: str) -> str | None:
    for row in conn.exec_driver_sql(f"PRAGMA table_info({table})").fetchall():
        if row[1] == column:
            return row[2].upper()
    return None


def _create_base_schema(conn: Connection) -> None:
    for statement in V1_STATEMENTS:
        conn.exec_driver_sql(statement)


def _add_permissions_and_tags(conn: Connection) -> None:
    if not _has_column(conn, "users", "permissions"):
        conn.exec_driver_sql("ALTER TABLE users ADD COLUMN permissions TEXT")
    conn.execute(
        text("UPDATE users SET permissions = :permissions WHERE permissions IS NULL"),
        {"permissions": json.dumps(list(DEFAULT_PERMISSIONS))},
    )

    if not _has_column(conn, "budgets", "tags"):
        conn.exec_driver_sql("ALTER TABLE budgets ADD COLUMN tags TEXT")
    conn.exec_driver_sql("UPDATE budgets SET tags = '[]' WHERE tags IS NULL")


def _date_to_ms(value) -> int:
    converted = to_epoch_ms(value)
    if not isinstance(converted, int) or isinstance(converted, bool):
        raise ValueError(f"Unparseable financial date: {value!r}")
    return converted


def _normalize_client_identifiers(conn: Connection) -> None:
    rows = conn.exec_driver_sql("SELECT id, email, tax_id FROM clients").fetchall()
    for client_id, email, tax_id in rows:
        new_email, new_tax_id = normalize_email(email), normalize_tax_id(tax_id)
        if (new_email, new_tax_id) != (email, tax_id):
            conn.execute(
                text("UPDATE clients SET email = :email, tax_id = :tax_id WHERE id = :id"),
                {"email": new_email, "tax_id": new_tax_id, "id": client_id},
            )

    for statement in CLIENT_TAX_ID_INDEX:
        conn.exec_driver_sql(statement)


def _rebuild_financial_dates(conn: Connection) -> None:
    if _column_type(conn, "financial", "date") == "TEXT":
        conn.exec_driver_sql("DROP TABLE IF EXISTS financial_v3")
        conn.exec_driver_sql(FINANCIAL_V3)

        rows = conn.exec_driver_sql("SELECT * FROM financial").mappings().all()
        for row in rows:
            values = dict(row)
            values["date"] = _date_to_ms(values["date"])
            columns = list(values)
            conn.execute(
                text(
                    f"INSERT INTO financial_v3 ({', '.join(columns)}) "
                    f"VALUES ({', '.join(':' + c for c in columns)})"
                ),
                values,
            )

        conn.exec_driver_sql("DROP TABLE financial")
        conn.exec_driver_sql("ALTER TABLE financial_v3 RENAME TO financial")

    for statement in FINANCIAL_INDEXES:
        conn.exec_driver_sql(statement)

    # Pending payloads still carrying ISO dates
    entries = conn.exec_driver_sql(
        "SELECT id, payload FROM sync_journal WHERE entity = 'financial' AND payload IS NOT NULL"
    ).fetchall()
    for entry_id, raw in entries:
        payload = json.loads(raw)
        if isinstance(payload.get("date"), str):
            payload["date"] = _date_to_ms(payload["date"])
            conn.execute(
                text("UPDATE sync_journal SET payload = :payload WHERE id = :id"),
                {"payload": json.dumps(payload), "id": entry_id},
            )


def _normalize_and_convert(conn: Connection) -> None:
    _normalize_client_identifiers(conn)
    if not _has_column(conn, "users", "last_login"):
        conn.exec_driver_sql("ALTER TABLE users ADD COLUMN last_login INTEGER")
    _rebuild_financial_dates(conn)


MIGRATIONS: tuple[Migration, ...] = (
    Migration(1, "Initial entity stores, sync journal and sync state", _create_base_schema),
    Migration(2, "User permissions and budget tags with defaults", _add_permissions_and_tags),
    Migration(
        3,
        "Normalize client email and tax id, add last login, epoch-ms financial dates",
        _normalize_and_convert,
    ),
)

CURRENT_VERSION = MIGRATIONS[-1].version


class Migrator:
    """Applies pending migrations in strict ascending order."""

    def __init__(self, migrations: tuple[Migration, ...] | list[Migration] = MIGRATIONS):
        versions = [m.version for m in migrations]
        if versions != list(range(1, len(versions) + 1)):
            raise ValueError(f"Migrations must be numbered 1..N without gaps, got {versions}")
        self.migrations = tuple(migrations)

    @property
    def latest(self) -> int:
        return self.migrations[-1].version if self.migrations else 0

    def current_version(self, engine: Engine) -> int:
        """Persisted schema version, 0 for an empty store."""
        with engine.connect() as conn:
            return self._read_version(conn)

    @staticmethod
    def _read_version(conn: Connection) -> int:
        exists = conn.exec_driver_sql(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'schema_meta'"
        ).first()
        if exists is None:
            return 0
        row = conn.execute(
            select(schema_meta.c.current_version).where(schema_meta.c.id == 1)
        ).first()
        return row[0] if row else 0

    @staticmethod
    def _write_version(conn: Connection, version: int) -> None:
        stmt = sqlite_insert(schema_meta).values(id=1, current_version=version, updated_at=now_ms())
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={"current_version": version, "updated_at": stmt.excluded.updated_at},
        )
        conn.execute(stmt)

    def upgrade(self, engine: Engine, target: int | None = None) -> int:
        """Bring the store up to ``target`` (default: latest).

        Returns:
            The schema version after the upgrade.

        Raises:
            MigrationFailed: If any migration raised. Nothing was committed.
            StorageUnavailableError: If the store is newer than ``target``.
        """
        target = self.latest if target is None else target
        if not 0 <= target <= self.latest:
            raise ValueError(f"Unknown schema version {target} (latest is {self.latest})")

        current = self.current_version(engine)
        if current > target:
            raise StorageUnavailableError(
                f"Local store is at schema v{current}, newer than v{target}"
            )
        if current == target:
            return current

        pending = [m for m in self.migrations if current < m.version <= target]
        try:
            with engine.begin() as conn:
                conn.exec_driver_sql(SCHEMA_META)
                for migration in pending:
                    logger.info(
                        "migration_applying",
                        version=migration.version,
                        description=migration.description,
                    )
                    migration.apply(conn)
                self._write_version(conn, target)
        except Exception as exc:
            logger.error("migration_failed", from_version=current, to_version=target, error=str(exc))
            audit.log_migration_failed(current, target, str(exc))
            raise MigrationFailed(current, target, exc) from exc

        audit.log_migration(current, target, [m.version for m in pending])
        return target
