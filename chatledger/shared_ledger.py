"""
Shared Ledger Instance

This module holds the process-wide ledger store and service.
Supports both in-memory (development) and PostgreSQL (production) modes.

Mode is determined by environment variables:
- LEDGER_STORE_DRIVER: Explicit driver selection (memory, psycopg2)
- DATABASE_URL or DATABASE_HOST: Database connection (auto-selects psycopg2)
- Neither set: Use in-memory (default for development)

One service instance per process matters: the per-conversation locks live
on the service, so two instances in one process would not serialize
appends against each other.
"""

from threading import Lock
from typing import Optional

from chatledger.core import ConversationLedgerService, LedgerConfig
from chatledger.db.config import (
    DatabaseConfig,
    LedgerStoreDriver,
    load_database_config,
    get_store_driver,
)
from chatledger.db.store import InMemoryLedgerStore, LedgerStore, PostgresLedgerStore
from chatledger.observability import get_logger

logger = get_logger(__name__)

_init_lock = Lock()
_store: Optional[LedgerStore] = None
_ledger: Optional[ConversationLedgerService] = None


def _create_store() -> LedgerStore:
    """
    Create the appropriate LedgerStore based on configuration.

    Returns:
        InMemoryLedgerStore for development/testing
        PostgresLedgerStore for production (when DATABASE_URL is set)
    """
    driver = get_store_driver()

    if driver == LedgerStoreDriver.MEMORY:
        logger.info("Using in-memory ledger store (no persistence)")
        return InMemoryLedgerStore()

    config = load_database_config()
    if config is None:
        logger.warning(
            "Store driver configured but no database configured; falling back to in-memory store",
            driver=driver.value,
        )
        return InMemoryLedgerStore()

    return _create_psycopg2_store(config)


def _create_psycopg2_store(config: DatabaseConfig) -> LedgerStore:
    """Create PostgresLedgerStore with psycopg2."""
    import psycopg2

    def connection_factory():
        return psycopg2.connect(config.to_dsn())

    # Fail fast if the database is unreachable
    test_conn = connection_factory()
    test_conn.close()

    logger.info(
        "PostgreSQL ledger store connected",
        target=config.describe(),
    )
    return PostgresLedgerStore(connection_factory)


def get_store() -> LedgerStore:
    """Get (creating on first use) the shared ledger store."""
    global _store
    with _init_lock:
        if _store is None:
            _store = _create_store()
        return _store


def get_ledger() -> ConversationLedgerService:
    """Get (creating on first use) the shared ledger service."""
    global _ledger
    store = get_store()
    with _init_lock:
        if _ledger is None:
            _ledger = ConversationLedgerService(store=store, config=LedgerConfig.from_env())
        return _ledger


def reset() -> None:
    """Drop the shared instances (closing the store). For tests and shutdown."""
    global _store, _ledger
    with _init_lock:
        if _store is not None:
            _store.close()
        _store = None
        _ledger = None
