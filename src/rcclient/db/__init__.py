"""Local store layer with SQLAlchemy Core over SQLite."""

from .engine import create_memory_engine, create_store_engine
from .migrations import CURRENT_VERSION, MIGRATIONS, Migration, Migrator
from .store import LocalStore, StoreTransaction
from .tables import ENTITY_TABLES

__all__ = [
    "CURRENT_VERSION",
    "ENTITY_TABLES",
    "LocalStore",
    "MIGRATIONS",
    "Migration",
    "Migrator",
    "StoreTransaction",
    "create_memory_engine",
    "create_store_engine",
]
