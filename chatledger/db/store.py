"""
Ledger Store Abstraction

This module defines the LedgerStore interface and provides two implementations:
- InMemoryLedgerStore: For development and testing
- PostgresLedgerStore: For production with full durability

The LedgerStore is responsible for:
- Atomic append of a fully-hashed entry (one write, final hash included)
- Ordering and durability guarantees
- Rejecting any entry that does not extend the stored tail

The ConversationLedgerService retains responsibility for:
- Genesis bootstrap
- Hashing
- Per-conversation serialization of appends
- Validation

WRITE CONTRACT:
No reader may ever observe an entry with an unset or placeholder hash.
There is no "insert, then update the hash" path: the entry arrives with its
id and hash already computed and is written in a single statement.

UNIQUENESS CONTRACT:
(conversation_id, id) and (conversation_id, previous_hash) are unique.
A second writer racing on the same tail gets ConcurrencyError and must
re-read the tail.
"""

from abc import ABC, abstractmethod
from threading import Lock
from typing import Any, Callable, Optional

from ..schemas import GENESIS_PREVIOUS_HASH, LedgerEntry


# ============================================================
# EXCEPTIONS
# ============================================================

class EventStoreError(Exception):
    """Base exception for ledger store errors."""
    pass


class PersistenceError(EventStoreError):
    """Raised when storage is unreachable or a write is rejected. Nothing was written."""
    pass


class ConcurrencyError(EventStoreError):
    """Raised when an append races another writer on the same conversation tail."""
    pass


class LockTimeoutError(EventStoreError):
    """Raised when lock acquisition times out (conversation busy)."""
    pass


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class LedgerStore(ABC):
    """
    Abstract base class for ledger storage.

    Implementations must ensure:
    1. Atomic append: an entry is either fully committed or absent
    2. No gaps in per-conversation ids
    3. No duplicate ids or previous hashes within a conversation
    4. Reads only return committed entries
    """

    @abstractmethod
    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """
        Persist a fully-populated entry.

        Raises:
            ConcurrencyError: The entry does not extend the current tail
            PersistenceError: Storage failed; nothing was written
        """
        pass

    @abstractmethod
    def get_last(self, conversation_id: int) -> Optional[LedgerEntry]:
        """Most recent entry of a conversation, or None if it has no chain yet."""
        pass

    @abstractmethod
    def get_chain(self, conversation_id: int) -> list[LedgerEntry]:
        """All entries of a conversation, ascending by id."""
        pass

    @abstractmethod
    def get_all(self) -> list[LedgerEntry]:
        """All entries across conversations, ordered by id (then conversation)."""
        pass

    @abstractmethod
    def list_conversations(self) -> list[int]:
        """Ids of every conversation that has a chain, ascending."""
        pass

    @abstractmethod
    def get_entry_count(self, conversation_id: Optional[int] = None) -> int:
        """Number of entries in one conversation, or in the whole ledger."""
        pass

    def close(self) -> None:
        """Release storage resources."""
        pass


def _all_order(entry: LedgerEntry) -> tuple[int, int]:
    return (entry.id, entry.conversation_id)


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryLedgerStore(LedgerStore):
    """
    In-memory implementation of LedgerStore.

    Suitable for:
    - Development
    - Testing
    - Single-instance deployments without persistence requirements

    NOT suitable for:
    - Production (no durability)
    - Multi-instance deployments (no shared state)

    The internal lock only makes each individual read or write atomic.
    It is NOT the per-conversation critical section; that belongs to the
    service.
    """

    def __init__(self):
        self._chains: dict[int, list[LedgerEntry]] = {}
        self._lock = Lock()

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        with self._lock:
            chain = self._chains.get(entry.conversation_id, [])
            tail = chain[-1] if chain else None

            if tail is None:
                if entry.id != 0 or entry.previous_hash != GENESIS_PREVIOUS_HASH:
                    raise ConcurrencyError(
                        f"Conversation {entry.conversation_id} has no chain; "
                        f"expected genesis (id 0), got id {entry.id}"
                    )
            else:
                if entry.id != tail.id + 1:
                    raise ConcurrencyError(
                        f"Id mismatch in conversation {entry.conversation_id}: "
                        f"expected {tail.id + 1}, got {entry.id}"
                    )
                if entry.previous_hash != tail.hash:
                    raise ConcurrencyError(
                        f"Previous hash mismatch in conversation {entry.conversation_id}: "
                        f"expected {tail.hash[:16]}..., got {entry.previous_hash[:16]}..."
                    )

            # Copy-on-write so readers holding an old list never see a partial append
            self._chains[entry.conversation_id] = [*chain, entry]
            return entry

    def get_last(self, conversation_id: int) -> Optional[LedgerEntry]:
        chain = self._chains.get(conversation_id)
        return chain[-1] if chain else None

    def get_chain(self, conversation_id: int) -> list[LedgerEntry]:
        return list(self._chains.get(conversation_id, []))

    def get_all(self) -> list[LedgerEntry]:
        with self._lock:
            entries = [e for chain in self._chains.values() for e in chain]
        return sorted(entries, key=_all_order)

    def list_conversations(self) -> list[int]:
        with self._lock:
            return sorted(cid for cid, chain in self._chains.items() if chain)

    def get_entry_count(self, conversation_id: Optional[int] = None) -> int:
        if conversation_id is not None:
            return len(self._chains.get(conversation_id, []))
        with self._lock:
            return sum(len(chain) for chain in self._chains.values())

    def clear(self) -> None:
        """Clear all entries (for testing only)."""
        with self._lock:
            self._chains.clear()


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

_ENTRY_COLUMNS = """
    id,
    conversation_id,
    timestamp,
    sender,
    message,
    previous_hash,
    hash
"""


class PostgresLedgerStore(LedgerStore):
    """
    PostgreSQL implementation of LedgerStore.

    Provides:
    - Full ACID guarantees
    - Concurrency safety via UNIQUE (conversation_id, id) and
      UNIQUE (conversation_id, previous_hash)
    - Durability (entries survive restarts)
    - Multi-instance support (shared database)
    - Lock/statement timeouts to prevent hanging

    THREAD SAFETY:
    Every call opens its own connection from the factory; no connection or
    cursor state is kept on the store.

    Requirements:
    - PostgreSQL 12+
    - Tables created from schema.sql
    - psycopg2 for connection

    Usage:
        store = PostgresLedgerStore(connection_factory)
        store.append(entry)
    """

    # Timeouts to prevent hanging under load
    LOCK_TIMEOUT_MS = 2000  # 2 seconds
    STATEMENT_TIMEOUT_MS = 10000  # 10 seconds

    # SQLSTATE codes
    PGCODE_UNIQUE_VIOLATION = '23505'
    PGCODE_LOCK_NOT_AVAILABLE = '55P03'
    PGCODE_QUERY_CANCELED = '57014'

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Initialize PostgreSQL ledger store.

        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            lock_timeout_ms: How long to wait for row locks (ms). Default 2000.
            statement_timeout_ms: Max statement execution time (ms). Default 10000.
        """
        self._connection_factory = connection_factory
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms

    def _connect(self):
        try:
            return self._connection_factory()
        except Exception as e:
            raise PersistenceError(f"Could not connect to ledger database: {e}") from e

    def _classify(self, e: Exception) -> Optional[str]:
        """
        Determine the kind of database failure.

        Returns:
            "conflict" - Unique constraint violation (racing writer)
            "lock" - Lock timeout or NOWAIT refusal
            "statement" - Statement timeout
            None - Anything else

        NOTE: PostgreSQL uses 57014 (query_canceled) for BOTH lock_timeout and
        statement_timeout. We distinguish by checking the error message.
        """
        pgcode = getattr(e, 'pgcode', None)
        err_msg = (getattr(e, 'pgerror', None) or str(e)).lower()

        if pgcode == self.PGCODE_UNIQUE_VIOLATION:
            return "conflict"

        if pgcode == self.PGCODE_LOCK_NOT_AVAILABLE:
            return "lock"

        if pgcode == self.PGCODE_QUERY_CANCELED:
            if 'lock timeout' in err_msg or 'lock_timeout' in err_msg:
                return "lock"
            return "statement"

        return None

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Insert the entry, final hash included, in one transaction."""
        conn = self._connect()
        conn.autocommit = False
        cursor = conn.cursor()
        committed = False

        try:
            # SET LOCAL ensures timeouts are transaction-scoped and won't leak
            cursor.execute(f"SET LOCAL lock_timeout = '{self._lock_timeout_ms}ms'")
            cursor.execute(f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'")

            # The WHERE clause makes the insert conditional on extending the
            # committed tail; the unique constraints catch the remaining races.
            cursor.execute(f"""
                INSERT INTO ledger_entries ({_ENTRY_COLUMNS})
                SELECT %s, %s, %s, %s, %s, %s, %s
                WHERE COALESCE(
                    (SELECT hash FROM ledger_entries
                     WHERE conversation_id = %s
                     ORDER BY id DESC LIMIT 1),
                    %s
                ) = %s
            """, (
                entry.id,
                entry.conversation_id,
                entry.timestamp,
                entry.sender,
                entry.message,
                entry.previous_hash,
                entry.hash,
                entry.conversation_id,
                GENESIS_PREVIOUS_HASH,
                entry.previous_hash,
            ))

            if cursor.rowcount != 1:
                raise ConcurrencyError(
                    f"Entry {entry.id} does not extend the tail of "
                    f"conversation {entry.conversation_id}"
                )

            conn.commit()
            committed = True
            return entry

        except EventStoreError:
            raise
        except Exception as e:
            kind = self._classify(e)
            if kind == "conflict":
                raise ConcurrencyError(
                    f"Conversation {entry.conversation_id} tail moved: "
                    f"id {entry.id} or its previous hash is already taken"
                ) from e
            if kind == "lock":
                raise LockTimeoutError(
                    "Conversation busy - could not acquire lock. Try again."
                ) from e
            if kind == "statement":
                raise PersistenceError(
                    "Query timed out - statement took too long."
                ) from e
            raise PersistenceError(f"Could not persist ledger entry: {e}") from e
        finally:
            if not committed:
                try:
                    conn.rollback()
                except Exception:
                    pass  # Connection might be broken
            try:
                cursor.close()
            finally:
                conn.close()

    def _fetch(self, query: str, params: tuple = ()) -> list[tuple]:
        conn = self._connect()
        cursor = conn.cursor()

        try:
            cursor.execute(query, params)
            return cursor.fetchall()
        except Exception as e:
            raise PersistenceError(f"Could not read ledger: {e}") from e
        finally:
            cursor.close()
            conn.close()

    def get_last(self, conversation_id: int) -> Optional[LedgerEntry]:
        rows = self._fetch(f"""
            SELECT {_ENTRY_COLUMNS}
            FROM ledger_entries
            WHERE conversation_id = %s
            ORDER BY id DESC
            LIMIT 1
        """, (conversation_id,))
        return self._row_to_entry(rows[0]) if rows else None

    def get_chain(self, conversation_id: int) -> list[LedgerEntry]:
        rows = self._fetch(f"""
            SELECT {_ENTRY_COLUMNS}
            FROM ledger_entries
            WHERE conversation_id = %s
            ORDER BY id
        """, (conversation_id,))
        return [self._row_to_entry(row) for row in rows]

    def get_all(self) -> list[LedgerEntry]:
        rows = self._fetch(f"""
            SELECT {_ENTRY_COLUMNS}
            FROM ledger_entries
            ORDER BY id, conversation_id
        """)
        return [self._row_to_entry(row) for row in rows]

    def list_conversations(self) -> list[int]:
        rows = self._fetch("""
            SELECT DISTINCT conversation_id
            FROM ledger_entries
            ORDER BY conversation_id
        """)
        return [row[0] for row in rows]

    def get_entry_count(self, conversation_id: Optional[int] = None) -> int:
        if conversation_id is None:
            rows = self._fetch("SELECT COUNT(*) FROM ledger_entries")
        else:
            rows = self._fetch(
                "SELECT COUNT(*) FROM ledger_entries WHERE conversation_id = %s",
                (conversation_id,),
            )
        return rows[0][0]

    def _row_to_entry(self, row: tuple) -> LedgerEntry:
        """Convert a database row to a LedgerEntry."""
        return LedgerEntry(
            id=row[0],
            conversation_id=row[1],
            timestamp=row[2],
            sender=row[3],
            message=row[4],
            previous_hash=row[5],
            hash=row[6],
        )
