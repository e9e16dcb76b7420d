"""Database engine factory for the local SQLite store."""

from pathlib import Path

import structlog
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.pool import StaticPool

from ..errors import StorageUnavailableError

logger = structlog.get_logger(__name__)


def _configure_sqlite(engine: Engine) -> Engine:
    """Hand transaction control to SQLAlchemy so DDL can run inside one.

    pysqlite otherwise commits implicitly before DDL statements, which
    would break the all-or-nothing schema upgrade.
    """

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


def create_memory_engine() -> Engine:
    """Create an in-memory engine shared by every connection."""
    engine = create_engine(
        "sqlite://",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    return _configure_sqlite(engine)


def create_store_engine(
    path: Path | str | None,
    allow_fallback: bool = True,
) -> tuple[Engine, bool]:
    """Create the engine backing the local store.

    Args:
        path: SQLite file path. None or ":memory:" keeps the store in memory.
        allow_fallback: Use an in-memory store when the file cannot be opened.

    Returns:
        Tuple of (engine, is_fallback).

    Raises:
        StorageUnavailableError: If the file cannot be opened and fallback
            is not allowed.
    """
    if path is None or str(path) == ":memory:":
        return create_memory_engine(), False

    path = Path(path)
    engine = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        engine = _configure_sqlite(
            create_engine(
                f"sqlite:///{path}",
                echo=False,
                connect_args={"check_same_thread": False},
            )
        )
        # Touch the file header so unreadable files fail here
        with engine.connect() as conn:
            conn.exec_driver_sql("PRAGMA schema_version")
    except (OSError, DBAPIError) as exc:
        if engine is not None:
            engine.dispose()
        if not allow_fallback:
            raise StorageUnavailableError(f"Cannot open local store at {path}: {exc}") from exc
        logger.warning("store_fallback", path=str(path), error=str(exc))
        return create_memory_engine(), True

    return engine, False
