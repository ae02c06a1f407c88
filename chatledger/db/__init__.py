"""
Database Layer for the Conversation Ledger

Provides:
- PostgreSQL schema (schema.sql)
- LedgerStore abstraction (InMemory for dev, Postgres for prod)
- Connection configuration
"""

from .store import (
    LedgerStore,
    InMemoryLedgerStore,
    PostgresLedgerStore,
    EventStoreError,
    PersistenceError,
    ConcurrencyError,
    LockTimeoutError,
)
from .config import DatabaseConfig, LedgerStoreDriver, get_store_driver, load_database_config

__all__ = [
    "LedgerStore",
    "InMemoryLedgerStore",
    "PostgresLedgerStore",
    "EventStoreError",
    "PersistenceError",
    "ConcurrencyError",
    "LockTimeoutError",
    "DatabaseConfig",
    "LedgerStoreDriver",
    "load_database_config",
    "get_store_driver",
]
