"""
Tests for the Conversation Ledger

Demonstrates the complete chain lifecycle:
1. First append bootstraps a conversation's genesis entry
2. Messages are chained, one entry per message
3. Tampering anywhere in a chain is detected
4. Concurrent writers never fork a chain
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from chatledger.core import (
    CanonicalSerializationError,
    ConversationLedgerService,
    ConversationLockRegistry,
    Hasher,
    InvalidEntryError,
    LedgerConfig,
)
from chatledger.db.store import (
    ConcurrencyError,
    InMemoryLedgerStore,
    LockTimeoutError,
    PersistenceError,
)
from chatledger.messaging import record_message
from chatledger.observability import get_metrics
from chatledger.schemas import (
    GENESIS_MESSAGE,
    GENESIS_PREVIOUS_HASH,
    GENESIS_SENDER,
    LedgerEntry,
    ValidationReason,
)


T0 = datetime(2024, 3, 16, 9, 0, 0, tzinfo=timezone.utc)


def _fields(**overrides):
    fields = {
        "id": 1,
        "timestamp": T0,
        "sender": "alice",
        "message": "hi",
        "previous_hash": "a" * 64,
        "conversation_id": 42,
    }
    fields.update(overrides)
    return fields


def _entry(**overrides) -> LedgerEntry:
    fields = _fields(**overrides)
    return LedgerEntry(**fields, hash=Hasher.compute_hash(fields))


def _tamper(store: InMemoryLedgerStore, conversation_id: int, index: int, **changes) -> None:
    """Rewrite a stored entry behind the ledger's back."""
    chain = store._chains[conversation_id]
    chain[index] = chain[index].model_copy(update=changes)


class TestHasher:
    """Test canonical hashing - every stored chain depends on this."""

    def test_deterministic_hash(self):
        """Same fields always produce the same hash."""
        assert Hasher.compute_hash(_fields()) == Hasher.compute_hash(_fields())

    def test_canonical_form(self):
        """The canonical string is versioned and in fixed field order."""
        canonical = Hasher.canonicalize(_fields(previous_hash="abc"))
        assert canonical == (
            '{"__canon_v":1,"entry":'
            '[1,"2024-03-16T09:00:00.000000Z","alice","hi","abc",42]}'
        )

    def test_insertion_order_irrelevant(self):
        """Field order comes from the hasher, not from the mapping."""
        fields = _fields()
        reversed_fields = dict(reversed(list(fields.items())))
        assert Hasher.compute_hash(fields) == Hasher.compute_hash(reversed_fields)

    def test_hash_is_lowercase_hex_sha256(self):
        digest = Hasher.compute_hash(_fields())
        assert len(digest) == 64
        assert digest == digest.lower()
        int(digest, 16)

    def test_field_boundaries_unambiguous(self):
        """Moving characters between adjacent fields changes the hash."""
        a = Hasher.compute_hash(_fields(sender="ab", message="c"))
        b = Hasher.compute_hash(_fields(sender="a", message="bc"))
        assert a != b

    def test_every_field_is_committed(self):
        """Changing any one hashed field changes the hash."""
        base = Hasher.compute_hash(_fields())
        variants = [
            _fields(id=2),
            _fields(timestamp=T0 + timedelta(microseconds=1)),
            _fields(sender="bob"),
            _fields(message="hi "),
            _fields(previous_hash="b" * 64),
            _fields(conversation_id=43),
        ]
        for fields in variants:
            assert Hasher.compute_hash(fields) != base

    def test_hash_key_ignored(self):
        """A stored hash is not part of its own input."""
        with_hash = dict(_fields(), hash="f" * 64)
        assert Hasher.compute_hash(with_hash) == Hasher.compute_hash(_fields())

    def test_datetime_requires_timezone(self):
        naive = datetime(2024, 1, 1, 12, 0, 0)
        with pytest.raises(CanonicalSerializationError, match="timezone-naive"):
            Hasher.canonicalize(_fields(timestamp=naive))

    def test_datetime_normalized_to_utc(self):
        """Same moment in different timezones hashes the same."""
        plus5 = timezone(timedelta(hours=5))
        other = datetime(2024, 3, 16, 14, 0, 0, tzinfo=plus5)
        assert Hasher.compute_hash(_fields(timestamp=other)) == Hasher.compute_hash(_fields())

    def test_iso_string_timestamp_matches_datetime(self):
        """Timestamps read back as strings hash like the original datetime."""
        as_string = _fields(timestamp="2024-03-16T09:00:00.000000Z")
        assert Hasher.compute_hash(as_string) == Hasher.compute_hash(_fields())

    def test_unparseable_timestamp_rejected(self):
        with pytest.raises(CanonicalSerializationError):
            Hasher.canonicalize(_fields(timestamp="yesterday"))

    def test_missing_field_rejected(self):
        fields = _fields()
        del fields["conversation_id"]
        with pytest.raises(CanonicalSerializationError, match="conversation_id"):
            Hasher.canonicalize(fields)

    def test_wrong_types_rejected(self):
        with pytest.raises(CanonicalSerializationError):
            Hasher.canonicalize(_fields(id="1"))
        with pytest.raises(CanonicalSerializationError):
            Hasher.canonicalize(_fields(id=True))
        with pytest.raises(CanonicalSerializationError):
            Hasher.canonicalize(_fields(message=None))

    def test_non_ascii_is_escaped(self):
        canonical = Hasher.canonicalize(_fields(message="héllo ✓"))
        assert canonical.isascii()
        assert "\\u00e9" in canonical

    def test_whitespace_preserved(self):
        assert Hasher.compute_hash(_fields(message="hi")) != Hasher.compute_hash(_fields(message=" hi"))

    def test_entry_and_mapping_hash_alike(self):
        entry = _entry()
        assert Hasher.compute_hash(entry) == Hasher.compute_hash(_fields())

    def test_verify_entry(self):
        entry = _entry()
        assert Hasher.verify_entry(entry)
        assert not Hasher.verify_entry(entry.model_copy(update={"message": "bye"}))
        assert not Hasher.verify_entry(entry.model_copy(update={"hash": "0" * 64}))

    def test_verify_entry_rejects_recased_hash(self):
        """The stored hash must match byte for byte; case is not normalized."""
        entry = _entry()
        assert not Hasher.verify_entry(entry.model_copy(update={"hash": entry.hash.upper()}))

    def test_verify_entry_never_raises_on_bad_fields(self):
        entry = _entry().model_copy(update={"timestamp": datetime(2024, 1, 1)})
        assert Hasher.verify_entry(entry) is False

    def test_verify_link(self):
        prev = _entry(id=0, previous_hash=GENESIS_PREVIOUS_HASH)
        curr = _entry(id=1, previous_hash=prev.hash)
        assert Hasher.verify_link(prev, curr)
        assert not Hasher.verify_link(curr, prev)


class TestLockRegistry:
    """Test the per-conversation lock map."""

    def test_one_lock_per_conversation(self):
        registry = ConversationLockRegistry()
        assert registry._lock_for(1) is registry._lock_for(1)
        assert registry._lock_for(1) is not registry._lock_for(2)
        assert len(registry) == 2

    def test_timeout_raises(self):
        registry = ConversationLockRegistry()
        with registry.hold(1):
            with pytest.raises(LockTimeoutError, match="Conversation 1 busy"):
                with registry.hold(1, timeout=0.01):
                    pass

    def test_other_conversations_not_blocked(self):
        registry = ConversationLockRegistry()
        with registry.hold(1):
            with registry.hold(2, timeout=0.01):
                pass

    def test_released_on_exception(self):
        registry = ConversationLockRegistry()
        with pytest.raises(RuntimeError):
            with registry.hold(1):
                raise RuntimeError("boom")
        with registry.hold(1, timeout=0.01):
            pass


class TestLedgerConfig:

    def test_defaults(self):
        config = LedgerConfig()
        assert config.lock_timeout_seconds == 10.0
        assert config.max_append_retries == 3

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("CHATLEDGER_LOCK_TIMEOUT_SECONDS", "2.5")
        monkeypatch.setenv("CHATLEDGER_APPEND_RETRIES", "7")
        config = LedgerConfig.from_env()
        assert config.lock_timeout_seconds == 2.5
        assert config.max_append_retries == 7


class TestLedger:
    """Test appends and reads through the service."""

    @pytest.fixture
    def store(self):
        return InMemoryLedgerStore()

    @pytest.fixture
    def ledger(self, store):
        return ConversationLedgerService(store=store)

    def test_default_store_is_in_memory(self):
        assert isinstance(ConversationLedgerService().store, InMemoryLedgerStore)

    def test_first_append_bootstraps_genesis(self, ledger):
        entry = ledger.append(42, "alice", "hi")
        chain = ledger.get_chain(42)

        assert len(chain) == 2
        genesis = chain[0]
        assert genesis.id == 0
        assert genesis.conversation_id == 42
        assert genesis.sender == GENESIS_SENDER
        assert genesis.message == GENESIS_MESSAGE
        assert genesis.previous_hash == GENESIS_PREVIOUS_HASH
        assert genesis.is_genesis
        assert Hasher.verify_entry(genesis)

        assert entry == chain[1]
        assert entry.id == 1
        assert entry.previous_hash == genesis.hash
        assert not entry.is_genesis

    def test_conversation_example(self, ledger):
        """Two messages in a fresh conversation give a valid three-entry chain."""
        e1 = ledger.append(42, "alice", "hi")
        e2 = ledger.append(42, "bob", "hey")

        assert (e1.id, e2.id) == (1, 2)
        assert e2.previous_hash == e1.hash

        result = ledger.validate(42)
        assert result.valid
        assert result.entry_count == 3
        assert result.broken_at_index is None

    def test_sequential_appends(self, ledger):
        for i in range(10):
            ledger.append(7, "alice", f"message {i}")

        chain = ledger.get_chain(7)
        assert [e.id for e in chain] == list(range(11))
        for prev, curr in zip(chain, chain[1:]):
            assert curr.previous_hash == prev.hash
        assert ledger.validate(7).valid

    def test_append_extends_existing_chain(self, ledger):
        ledger.append(42, "alice", "hi")
        before = len(ledger.get_chain(42))
        ledger.append(42, "alice", "again")
        assert len(ledger.get_chain(42)) == before + 1

    def test_conversations_are_independent(self, ledger):
        ledger.append(1, "alice", "hi")
        ledger.append(2, "bob", "hi")
        ledger.append(1, "alice", "still here")

        chain1, chain2 = ledger.get_chain(1), ledger.get_chain(2)
        assert [e.id for e in chain1] == [0, 1, 2]
        assert [e.id for e in chain2] == [0, 1]
        assert chain1[0].hash != chain2[0].hash
        assert all(e.conversation_id == 1 for e in chain1)
        assert all(e.conversation_id == 2 for e in chain2)

    def test_timestamps_come_from_clock(self, store):
        ticks = iter(T0 + timedelta(seconds=n) for n in range(10))
        ledger = ConversationLedgerService(store=store, clock=lambda: next(ticks))

        ledger.append(42, "alice", "hi")
        chain = ledger.get_chain(42)
        assert [e.timestamp for e in chain] == [T0, T0 + timedelta(seconds=1)]

    def test_timestamps_are_utc_aware(self, ledger):
        entry = ledger.append(42, "alice", "hi")
        assert entry.timestamp.tzinfo is not None

    def test_messages_stored_verbatim(self, ledger):
        payload = "  cipher:AAECAwQ=\n"
        entry = ledger.append(42, "alice", payload)
        assert entry.message == payload

    def test_entries_are_immutable(self, ledger):
        entry = ledger.append(42, "alice", "hi")
        with pytest.raises(Exception):
            entry.message = "edited"

    @pytest.mark.parametrize("conversation_id", [-1, "42", 4.2, None, True])
    def test_bad_conversation_id_rejected(self, ledger, store, conversation_id):
        with pytest.raises(InvalidEntryError):
            ledger.append(conversation_id, "alice", "hi")
        assert store.get_entry_count() == 0

    def test_non_string_sender_rejected(self, ledger, store):
        with pytest.raises(InvalidEntryError):
            ledger.append(42, None, "hi")
        with pytest.raises(InvalidEntryError):
            ledger.append(42, "alice", b"hi")
        assert store.get_entry_count() == 0

    def test_get_chain_unknown_conversation_is_empty(self, ledger):
        assert ledger.get_chain(999) == []

    def test_get_chain_without_conversation_returns_everything(self, ledger):
        ledger.append(2, "bob", "hi")
        ledger.append(1, "alice", "hi")

        entries = ledger.get_chain()
        assert len(entries) == 4
        assert [(e.id, e.conversation_id) for e in entries] == [(0, 1), (0, 2), (1, 1), (1, 2)]

    def test_metrics_recorded(self, ledger):
        before = get_metrics().get_summary()
        ledger.append(42, "alice", "hi")
        ledger.append(42, "bob", "hey")
        after = get_metrics().get_summary()

        assert after["entries_appended"] - before["entries_appended"] == 2
        assert after["genesis_entries"] - before["genesis_entries"] == 1


class TestChainIntegrity:
    """Test that validation finds any modification to a stored chain."""

    @pytest.fixture
    def store(self):
        return InMemoryLedgerStore()

    @pytest.fixture
    def ledger(self, store):
        ledger = ConversationLedgerService(store=store)
        ledger.append(42, "alice", "hi")
        ledger.append(42, "bob", "hey")
        ledger.append(42, "alice", "how are you?")
        return ledger

    def test_empty_chain_is_valid(self, ledger):
        result = ledger.validate(1000)
        assert result.valid
        assert result.entry_count == 0
        assert result.conversation_id == 1000

    def test_intact_chain_is_valid(self, ledger):
        result = ledger.validate(42)
        assert result
        assert result.entry_count == 4

    def test_tampered_message_detected(self, ledger, store):
        _tamper(store, 42, 1, message="bye")

        result = ledger.validate(42)
        assert not result
        assert result.broken_at_index == 1
        assert result.broken_at_id == 1
        assert result.reason == ValidationReason.HASH_MISMATCH

    def test_tampered_sender_detected(self, ledger, store):
        _tamper(store, 42, 2, sender="mallory")

        result = ledger.validate(42)
        assert result.broken_at_index == 2
        assert result.reason == ValidationReason.HASH_MISMATCH

    def test_tampered_timestamp_detected(self, ledger, store):
        chain = store._chains[42]
        _tamper(store, 42, 3, timestamp=chain[3].timestamp + timedelta(seconds=1))

        result = ledger.validate(42)
        assert result.broken_at_index == 3
        assert result.reason == ValidationReason.HASH_MISMATCH

    def test_rewritten_hash_breaks_next_link(self, ledger, store):
        """Re-hashing an edited entry does not help: its successor no longer points at it."""
        edited = store._chains[42][1].model_copy(update={"message": "bye"})
        _tamper(store, 42, 1, message="bye", hash=Hasher.compute_hash(edited))

        result = ledger.validate(42)
        assert result.broken_at_index == 2
        assert result.reason == ValidationReason.LINK_MISMATCH

    def test_recased_tail_hash_detected(self, ledger, store):
        tail = store._chains[42][3]
        _tamper(store, 42, 3, hash=tail.hash.upper())

        result = ledger.validate(42)
        assert not result.valid
        assert result.broken_at_index == 3
        assert result.reason == ValidationReason.HASH_MISMATCH

    def test_recased_middle_hash_reported_at_its_index(self, ledger, store):
        entry = store._chains[42][1]
        _tamper(store, 42, 1, hash=entry.hash.upper())

        result = ledger.validate(42)
        assert result.broken_at_index == 1
        assert result.reason == ValidationReason.HASH_MISMATCH

    def test_tampered_previous_hash_detected(self, ledger, store):
        _tamper(store, 42, 2, previous_hash="f" * 64)

        result = ledger.validate(42)
        assert result.broken_at_index == 2
        assert result.reason == ValidationReason.LINK_MISMATCH

    def test_tampered_genesis_detected(self, ledger, store):
        _tamper(store, 42, 0, message="Not Genesis")

        result = ledger.validate(42)
        assert result.broken_at_index == 0
        assert result.reason == ValidationReason.HASH_MISMATCH

    def test_genesis_previous_hash_checked_first(self, ledger, store):
        _tamper(store, 42, 0, previous_hash="1")

        result = ledger.validate(42)
        assert result.broken_at_index == 0
        assert result.reason == ValidationReason.GENESIS_PREVIOUS_HASH

    def test_deleted_entry_detected(self, ledger, store):
        chain = store._chains[42]
        store._chains[42] = [chain[0], chain[2], chain[3]]

        result = ledger.validate(42)
        assert result.broken_at_index == 1
        assert result.broken_at_id == 2
        assert result.reason == ValidationReason.ID_SEQUENCE

    def test_reordered_entries_detected(self, ledger, store):
        chain = store._chains[42]
        store._chains[42] = [chain[0], chain[2], chain[1], chain[3]]

        result = ledger.validate(42)
        assert not result.valid
        assert result.broken_at_index == 1

    def test_first_failure_reported(self, ledger, store):
        _tamper(store, 42, 3, message="later")
        _tamper(store, 42, 1, message="earlier")

        assert ledger.validate(42).broken_at_index == 1

    def test_validation_does_not_repair(self, ledger, store):
        _tamper(store, 42, 1, message="bye")
        ledger.validate(42)
        assert store._chains[42][1].message == "bye"
        assert not ledger.validate(42).valid

    def test_other_conversations_unaffected(self, ledger, store):
        ledger.append(7, "carol", "hello")
        _tamper(store, 42, 1, message="bye")

        assert ledger.validate(7).valid
        assert not ledger.validate(42).valid

    def test_validate_all(self, ledger, store):
        ledger.append(7, "carol", "hello")
        _tamper(store, 42, 2, message="bye")

        results = ledger.validate_all()
        assert sorted(results) == [7, 42]
        assert results[7].valid
        assert not results[42].valid

    def test_verify_chain_on_detached_list(self, ledger):
        chain = ledger.get_chain(42)
        assert ConversationLedgerService.verify_chain(42, chain).valid

        chain[2] = chain[2].model_copy(update={"message": "x"})
        result = ConversationLedgerService.verify_chain(42, chain)
        assert result.broken_at_index == 2

    def test_storage_failure_reported_not_raised(self):
        class UnreadableStore(InMemoryLedgerStore):
            def get_chain(self, conversation_id):
                raise PersistenceError("database is down")

        result = ConversationLedgerService(store=UnreadableStore()).validate(42)
        assert not result.valid
        assert result.reason == ValidationReason.STORAGE_ERROR
        assert "database is down" in result.detail
        assert result.broken_at_index is None

    def test_failures_counted(self, ledger, store):
        _tamper(store, 42, 1, message="bye")
        before = get_metrics().get_summary()["validation_failures"]
        ledger.validate(42)
        assert get_metrics().get_summary()["validation_failures"] == before + 1


class FlakyStore(InMemoryLedgerStore):
    """Fails the first `failures` appends with the given error."""

    def __init__(self, failures: int, error: type = ConcurrencyError):
        super().__init__()
        self.failures = failures
        self.error = error
        self.calls = 0

    def append(self, entry):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error("simulated failure")
        return super().append(entry)


class RacingStore(InMemoryLedgerStore):
    """Lets another writer take the tail just before the first regular append."""

    def __init__(self):
        super().__init__()
        self.raced = False

    def append(self, entry):
        if not self.raced and entry.id > 0:
            self.raced = True
            fields = dict(entry.hash_fields(), sender="mallory", message="first!")
            super().append(LedgerEntry(**fields, hash=Hasher.compute_hash(fields)))
        return super().append(entry)


class TestConcurrency:
    """Test that appends to one conversation are serialized and never fork."""

    def test_concurrent_appends_single_conversation(self):
        ledger = ConversationLedgerService()

        with ThreadPoolExecutor(max_workers=8) as pool:
            entries = list(pool.map(
                lambda n: ledger.append(42, f"user{n}", f"message {n}"),
                range(20),
            ))

        chain = ledger.get_chain(42)
        assert len(chain) == 21
        assert [e.id for e in chain] == list(range(21))
        assert len({e.previous_hash for e in chain}) == 21
        assert sum(1 for e in chain if e.is_genesis) == 1
        assert sorted(e.id for e in entries) == list(range(1, 21))
        assert ledger.validate(42).valid

    def test_concurrent_appends_many_conversations(self):
        ledger = ConversationLedgerService()
        jobs = [(cid, n) for cid in range(5) for n in range(10)]

        with ThreadPoolExecutor(max_workers=10) as pool:
            list(pool.map(lambda job: ledger.append(job[0], "alice", f"m{job[1]}"), jobs))

        for cid in range(5):
            assert len(ledger.get_chain(cid)) == 11
            assert ledger.validate(cid).valid

    def test_retry_after_concurrency_error(self):
        store = FlakyStore(failures=2)
        ledger = ConversationLedgerService(store=store, config=LedgerConfig(max_append_retries=3))
        before = get_metrics().get_summary()["append_retries"]

        entry = ledger.append(42, "alice", "hi")

        assert entry.id == 1
        assert ledger.validate(42).valid
        assert get_metrics().get_summary()["append_retries"] == before + 2

    def test_retry_rereads_tail(self):
        """A retried append chains onto the racing writer's entry."""
        store = RacingStore()
        ledger = ConversationLedgerService(store=store)

        entry = ledger.append(42, "alice", "hi")
        chain = ledger.get_chain(42)

        assert [e.sender for e in chain] == [GENESIS_SENDER, "mallory", "alice"]
        assert entry.id == 2
        assert entry.previous_hash == chain[1].hash
        assert ledger.validate(42).valid

    def test_retries_exhausted(self):
        store = FlakyStore(failures=100)
        ledger = ConversationLedgerService(store=store, config=LedgerConfig(max_append_retries=2))
        before = get_metrics().get_summary()["append_failures"]

        with pytest.raises(ConcurrencyError):
            ledger.append(42, "alice", "hi")

        assert store.calls == 3
        assert store.get_entry_count() == 0
        assert get_metrics().get_summary()["append_failures"] == before + 1

    def test_persistence_error_not_retried(self):
        store = FlakyStore(failures=100, error=PersistenceError)
        ledger = ConversationLedgerService(store=store)

        with pytest.raises(PersistenceError):
            ledger.append(42, "alice", "hi")
        assert store.calls == 1

    def test_lock_timeout(self):
        ledger = ConversationLedgerService(config=LedgerConfig(lock_timeout_seconds=0.05))

        with ledger._locks.hold(42):
            with pytest.raises(LockTimeoutError):
                ledger.append(42, "alice", "hi")
            # A busy conversation does not block the others
            assert ledger.append(7, "bob", "hey").id == 1

        assert ledger.get_chain(42) == []
        assert ledger.append(42, "alice", "hi").id == 1


class TestBestEffort:
    """Test the side-effect append used by the messaging path."""

    def test_returns_entry_on_success(self):
        ledger = ConversationLedgerService()
        entry = ledger.append_best_effort(42, "alice", "hi")
        assert entry is not None
        assert entry.id == 1

    def test_failure_suppressed_and_logged(self, caplog):
        ledger = ConversationLedgerService(store=FlakyStore(failures=100, error=PersistenceError))

        with caplog.at_level(logging.ERROR):
            assert ledger.append_best_effort(42, "alice", "hi") is None

        assert "Ledger append failed" in caplog.text

    def test_record_message(self):
        ledger = ConversationLedgerService()

        entry = record_message(ledger, 42, "Alice Smith", "ciphertext==")

        assert entry.sender == "Alice Smith"
        assert entry.message == "ciphertext=="
        assert len(ledger.get_chain(42)) == 2

    def test_record_message_never_raises(self):
        ledger = ConversationLedgerService()
        assert record_message(ledger, -1, "alice", "hi") is None
        assert ledger.get_chain() == []
