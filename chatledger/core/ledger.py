"""
Conversation Ledger Service - The Heart of the System

This is an append-only, per-conversation hash chain.
Nothing is "edited". Messages happen, and each one is recorded.

The ledger:
- Bootstraps a genesis entry the first time a conversation is used
- Serializes appends per conversation
- Produces hashes
- Chains entries together
- Validates whole chains on demand

Rules (enforced in code):
- Exactly one genesis entry per conversation, previous_hash == "0"
- Every other entry points at the hash of the entry before it
- Every entry's hash matches its own fields
- Entries are never updated or deleted

CONCURRENCY:
The critical section spans "read tail → compute candidate → persist".
It is held per conversation (ConversationLockRegistry), so appends to
different conversations never contend. The store's uniqueness constraints
are the second line of defence for multi-process deployments: a racing
writer gets ConcurrencyError and the whole sequence is retried from a fresh
read of the tail, never with a stale previous_hash.
"""

import os
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Iterator, Optional

from ..db.store import (
    ConcurrencyError,
    EventStoreError,
    InMemoryLedgerStore,
    LedgerStore,
    LockTimeoutError,
)
from ..observability import conversation_id_var, get_logger, get_metrics
from ..schemas import (
    GENESIS_MESSAGE,
    GENESIS_PREVIOUS_HASH,
    GENESIS_SENDER,
    ChainValidation,
    LedgerEntry,
    ValidationReason,
)
from .hasher import Hasher

logger = get_logger(__name__)


class LedgerError(Exception):
    """Base exception for ledger errors."""
    pass


class InvalidEntryError(LedgerError):
    """Raised when an append is called with unusable input."""
    pass


@dataclass
class LedgerConfig:
    """Configuration for the conversation ledger."""
    lock_timeout_seconds: float = 10.0  # Max wait for a conversation's lock
    max_append_retries: int = 3  # Retries after a ConcurrencyError

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        """Load configuration from environment variables."""
        return cls(
            lock_timeout_seconds=float(os.environ.get("CHATLEDGER_LOCK_TIMEOUT_SECONDS", "10.0")),
            max_append_retries=int(os.environ.get("CHATLEDGER_APPEND_RETRIES", "3")),
        )


class ConversationLockRegistry:
    """
    One lock per conversation, created on first use.

    The registry lock is only held while looking up or creating a
    conversation's lock, never while an append runs.
    """

    def __init__(self):
        self._locks: dict[int, Lock] = {}
        self._registry_lock = Lock()

    def _lock_for(self, conversation_id: int) -> Lock:
        with self._registry_lock:
            lock = self._locks.get(conversation_id)
            if lock is None:
                lock = Lock()
                self._locks[conversation_id] = lock
            return lock

    @contextmanager
    def hold(self, conversation_id: int, timeout: Optional[float] = None) -> Iterator[None]:
        """
        Hold a conversation's lock for the duration of the block.

        Raises:
            LockTimeoutError: The lock was not acquired within timeout seconds
        """
        lock = self._lock_for(conversation_id)
        acquired = lock.acquire(timeout=timeout) if timeout is not None else lock.acquire()
        if not acquired:
            raise LockTimeoutError(
                f"Conversation {conversation_id} busy - could not acquire lock "
                f"within {timeout}s. Try again."
            )
        try:
            yield
        finally:
            lock.release()

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ConversationLedgerService:
    """
    The conversation ledger service.

    Handles genesis bootstrap, hashing, per-conversation serialization and
    validation. Storage is delegated to a LedgerStore implementation.

    CHAIN INTEGRITY GUARANTEES:
    - Ids are contiguous per conversation (0, 1, 2, ...)
    - previous_hash is "0" ONLY for the genesis entry (id 0)
    - No entry is ever visible without its final hash
    - A conversation's chain cannot fork
    """

    def __init__(
        self,
        store: Optional[LedgerStore] = None,
        config: Optional[LedgerConfig] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        """
        Initialize the service.

        Args:
            store: LedgerStore implementation for persistence.
                   If None, creates an InMemoryLedgerStore.
            config: Lock timeout and retry settings (defaults if None)
            clock: Source of entry timestamps; must return aware datetimes
        """
        self._store = store if store is not None else InMemoryLedgerStore()
        self._config = config or LedgerConfig()
        self._clock = clock
        self._locks = ConversationLockRegistry()

    @property
    def store(self) -> LedgerStore:
        """Get the underlying ledger store."""
        return self._store

    @property
    def config(self) -> LedgerConfig:
        return self._config

    # ================================================================
    # APPEND
    # ================================================================

    def append(self, conversation_id: int, sender: str, message: str) -> LedgerEntry:
        """
        Record a message in a conversation's chain.

        Flow (under the conversation's lock):
        1. Read the tail; bootstrap genesis if the chain does not exist
        2. Build the next entry with previous_hash = tail.hash
        3. Hash it
        4. Persist it in one atomic write

        Returns:
            The committed entry

        Raises:
            InvalidEntryError: Bad conversation id, sender or message
            LockTimeoutError: The conversation stayed busy past the timeout
            ConcurrencyError: Another writer kept winning the tail after all retries
            PersistenceError: Storage failed; nothing was written
        """
        self._check_input(conversation_id, sender, message)

        metrics = get_metrics()
        attempts = self._config.max_append_retries + 1
        start = time.perf_counter()
        token = conversation_id_var.set(conversation_id)

        try:
            for attempt in range(1, attempts + 1):
                try:
                    with self._locks.hold(conversation_id, self._config.lock_timeout_seconds):
                        entry = self._append_locked(conversation_id, sender, message)
                except ConcurrencyError as e:
                    if attempt == attempts:
                        metrics.record_append_failure()
                        logger.error(
                            "Append gave up after concurrent writers",
                            attempts=attempts,
                            error=str(e),
                        )
                        raise
                    metrics.record_append_retry()
                    logger.warning(
                        "Conversation tail moved during append, retrying",
                        attempt=attempt,
                        error=str(e),
                    )
                    continue
                except EventStoreError:
                    metrics.record_append_failure()
                    raise

                latency_ms = (time.perf_counter() - start) * 1000
                metrics.record_append(latency_ms)
                logger.debug(
                    "Entry appended",
                    entry_id=entry.id,
                    entry_hash=entry.hash[:16],
                )
                return entry
        finally:
            conversation_id_var.reset(token)

    def append_best_effort(
        self,
        conversation_id: int,
        sender: str,
        message: str,
    ) -> Optional[LedgerEntry]:
        """
        Append as a side effect of another operation.

        The ledger is an audit trail, not the system of record for message
        delivery: any failure is logged and suppressed.

        Returns:
            The committed entry, or None if the append failed
        """
        try:
            return self.append(conversation_id, sender, message)
        except Exception:
            logger.exception(
                "Ledger append failed; message delivery unaffected",
                conversation_id=conversation_id,
            )
            return None

    def _check_input(self, conversation_id: int, sender: str, message: str) -> None:
        if isinstance(conversation_id, bool) or not isinstance(conversation_id, int):
            raise InvalidEntryError(
                f"conversation_id must be an integer, got {type(conversation_id).__name__}"
            )
        if conversation_id < 0:
            raise InvalidEntryError(f"conversation_id must be >= 0, got {conversation_id}")
        if not isinstance(sender, str) or not isinstance(message, str):
            raise InvalidEntryError("sender and message must be strings")

    def _append_locked(self, conversation_id: int, sender: str, message: str) -> LedgerEntry:
        """Read tail → compute → persist. Caller holds the conversation's lock."""
        last = self._store.get_last(conversation_id)
        if last is None:
            last = self._bootstrap_genesis(conversation_id)

        entry = self._build_entry(
            entry_id=last.id + 1,
            conversation_id=conversation_id,
            sender=sender,
            message=message,
            previous_hash=last.hash,
        )
        return self._store.append(entry)

    def _bootstrap_genesis(self, conversation_id: int) -> LedgerEntry:
        """
        Create and commit a conversation's genesis entry.

        Only ever called from _append_locked, i.e. under the same lock as
        ordinary appends, so two first-appends cannot both create one.
        """
        genesis = self._build_entry(
            entry_id=0,
            conversation_id=conversation_id,
            sender=GENESIS_SENDER,
            message=GENESIS_MESSAGE,
            previous_hash=GENESIS_PREVIOUS_HASH,
        )
        committed = self._store.append(genesis)

        get_metrics().record_genesis()
        logger.info("Genesis entry created", genesis_hash=committed.hash[:16])
        return committed

    def _build_entry(
        self,
        entry_id: int,
        conversation_id: int,
        sender: str,
        message: str,
        previous_hash: str,
    ) -> LedgerEntry:
        fields = {
            "id": entry_id,
            "timestamp": self._clock(),
            "sender": sender,
            "message": message,
            "previous_hash": previous_hash,
            "conversation_id": conversation_id,
        }
        return LedgerEntry(**fields, hash=Hasher.compute_hash(fields))

    # ================================================================
    # QUERIES
    # ================================================================

    def get_chain(self, conversation_id: Optional[int] = None) -> list[LedgerEntry]:
        """
        Get a conversation's chain in order, or the whole ledger.

        Args:
            conversation_id: Conversation to read. None returns every entry
                             across conversations, ordered by id.
        """
        if conversation_id is None:
            return self._store.get_all()
        return self._store.get_chain(conversation_id)

    # ================================================================
    # VALIDATION
    # ================================================================

    def validate(self, conversation_id: int) -> ChainValidation:
        """
        Verify a conversation's entire chain.

        Never raises: a broken chain, or a store that cannot be read, is
        reported in the returned verdict. Nothing is repaired.
        """
        try:
            chain = self._store.get_chain(conversation_id)
        except Exception as e:
            logger.error(
                "Could not read chain for validation",
                conversation_id=conversation_id,
                error=str(e),
            )
            result = ChainValidation(
                valid=False,
                conversation_id=conversation_id,
                reason=ValidationReason.STORAGE_ERROR,
                detail=str(e),
            )
            get_metrics().record_validation(False)
            return result

        result = self.verify_chain(conversation_id, chain)
        get_metrics().record_validation(result.valid)

        if not result.valid:
            logger.warning(
                "Chain integrity check FAILED",
                conversation_id=conversation_id,
                broken_at_index=result.broken_at_index,
                broken_at_id=result.broken_at_id,
                reason=result.reason.value,
            )
        return result

    def validate_all(self) -> dict[int, ChainValidation]:
        """Validate every conversation that has a chain."""
        return {
            conversation_id: self.validate(conversation_id)
            for conversation_id in self._store.list_conversations()
        }

    @staticmethod
    def verify_chain(conversation_id: int, chain: list[LedgerEntry]) -> ChainValidation:
        """
        Check an ordered chain. Short-circuits on the first failure.

        Checks, in order:
        1. Genesis: id 0, previous_hash "0", hash matches its fields
        2. For each later entry i: id == i, previous_hash == chain[i-1].hash,
           hash matches its fields
        """
        def broken(index: int, reason: ValidationReason, detail: str) -> ChainValidation:
            return ChainValidation(
                valid=False,
                conversation_id=conversation_id,
                entry_count=len(chain),
                broken_at_index=index,
                broken_at_id=chain[index].id,
                reason=reason,
                detail=detail,
            )

        if not chain:
            return ChainValidation(valid=True, conversation_id=conversation_id)

        genesis = chain[0]
        if genesis.previous_hash != GENESIS_PREVIOUS_HASH:
            return broken(
                0,
                ValidationReason.GENESIS_PREVIOUS_HASH,
                f"Genesis previous_hash is '{genesis.previous_hash[:16]}', expected '0'",
            )
        if genesis.id != 0:
            return broken(0, ValidationReason.ID_SEQUENCE, f"Genesis has id {genesis.id}, expected 0")
        if not Hasher.verify_entry(genesis):
            return broken(0, ValidationReason.HASH_MISMATCH, "Genesis hash does not match its fields")

        for i in range(1, len(chain)):
            prev, curr = chain[i - 1], chain[i]

            if curr.id != i:
                return broken(i, ValidationReason.ID_SEQUENCE, f"Expected id {i}, got {curr.id}")

            if not Hasher.verify_link(prev, curr):
                return broken(
                    i,
                    ValidationReason.LINK_MISMATCH,
                    f"previous_hash '{curr.previous_hash[:16]}...' does not match "
                    f"hash of entry {prev.id} '{prev.hash[:16]}...'",
                )

            if not Hasher.verify_entry(curr):
                return broken(i, ValidationReason.HASH_MISMATCH, "Hash does not match entry fields")

        return ChainValidation(
            valid=True,
            conversation_id=conversation_id,
            entry_count=len(chain),
        )
