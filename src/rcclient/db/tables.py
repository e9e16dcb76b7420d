"""SQLAlchemy table definitions for the local store (current schema version).

The DDL that creates these tables lives in ``schema.py`` and is applied by
the migrator. These objects are used to build queries only.
"""

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)

# Query-side table objects only, never used to emit DDL
metadata = MetaData()


def _sync_columns() -> list[Column]:
    """Columns every entity row carries for the sync lifecycle."""
    return [
        Column("server_version", Integer),
        Column("sync_status", Integer, nullable=False, server_default="1"),
        Column("created_at", BigInteger, nullable=False),
        Column("updated_at", BigInteger, nullable=False),
        CheckConstraint("sync_status BETWEEN 0 AND 4", name="sync_status_check"),
    ]


# Singleton schema version marker
schema_meta = Table(
    "schema_meta",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("current_version", Integer, nullable=False),
    Column("updated_at", BigInteger),
)

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("username", String(50), nullable=False, unique=True),
    Column("email", String(200), unique=True),
    Column("password_hash", Text, nullable=False, server_default=""),
    Column("role", String(20), nullable=False, server_default="user"),
    Column("permissions", JSON(none_as_null=True)),
    Column("last_login", BigInteger),
    *_sync_columns(),
    sqlite_autoincrement=True,
)

clients = Table(
    "clients",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(200), nullable=False),
    Column("email", String(200), nullable=False, unique=True),
    Column("phone", String(30)),
    Column("address", Text),
    # Digits only, unique when present (partial index uq_clients_tax_id)
    Column("tax_id", String(14)),
    Column("is_active", Boolean, server_default="1"),
    *_sync_columns(),
    sqlite_autoincrement=True,
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("client_id", Integer, nullable=False, index=True),
    Column("title", String(200), nullable=False),
    Column("description", Text),
    Column("amount", Float, nullable=False),
    Column("status", String(20), nullable=False, server_default="Pending"),
    Column("tags", JSON(none_as_null=True)),
    *_sync_columns(),
    CheckConstraint("amount > 0", name="amount_positive"),
    CheckConstraint(
        "status IN ('Pending', 'Approved', 'Rejected', 'Cancelled')",
        name="status_check",
    ),
    sqlite_autoincrement=True,
)

contracts = Table(
    "contracts",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("client_id", Integer, nullable=False, index=True),
    Column("budget_id", Integer, index=True),
    Column("title", String(200), nullable=False),
    Column("terms", Text),
    Column("value", Float, nullable=False),
    Column("start_date", BigInteger, nullable=False),
    Column("end_date", BigInteger, nullable=False),
    Column("status", String(20), nullable=False, server_default="Active"),
    *_sync_columns(),
    CheckConstraint("value > 0", name="value_positive"),
    CheckConstraint(
        "status IN ('Active', 'Completed', 'Suspended')",
        name="status_check",
    ),
    sqlite_autoincrement=True,
)

financial = Table(
    "financial",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("type", String(10), nullable=False, index=True),
    Column("description", Text, nullable=False),
    Column("amount", Float, nullable=False),
    Column("date", BigInteger, nullable=False, index=True),
    Column("category", String(100)),
    Column("reference_id", String(64)),
    *_sync_columns(),
    CheckConstraint("amount > 0", name="amount_positive"),
    CheckConstraint("type IN ('Income', 'Expense')", name="type_check"),
    sqlite_autoincrement=True,
)

# Pending local mutations, drained FIFO per (entity, local_id) chain
sync_journal = Table(
    "sync_journal",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("entity", String(20), nullable=False),
    Column("local_id", Integer, nullable=False),
    Column("op", String(10), nullable=False),
    Column("payload", JSON(none_as_null=True)),
    Column("changed_fields", JSON(none_as_null=True)),
    Column("base_version", Integer),
    Column("server_payload", JSON(none_as_null=True)),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("last_error", Text),
    Column("enqueued_at", BigInteger, nullable=False),
    Column("next_attempt_at", BigInteger, nullable=False, server_default="0"),
    Column("dispatched", Boolean, nullable=False, server_default="0"),
    Column("suspended", Boolean, nullable=False, server_default="0"),
    CheckConstraint("op IN ('create', 'update', 'delete')", name="op_check"),
    Index("ix_sync_journal_chain", "entity", "local_id"),
    sqlite_autoincrement=True,
)

# Pull cursors and other small sync state
sync_state = Table(
    "sync_state",
    metadata,
    Column("key", String(100), primary_key=True),
    Column("value", Text),
)

ENTITY_TABLES: dict[str, Table] = {
    "users": users,
    "clients": clients,
    "budgets": budgets,
    "contracts": contracts,
    "financial": financial,
}
