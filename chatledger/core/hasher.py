"""
Cryptographic Hashing Service

Handles deterministic serialization and SHA-256 hashing of ledger entries.
Same entry → same hash. Always. Forever.

If this breaks, every stored chain becomes unverifiable.
Every change here must be backward-compatible or versioned.

CANONICAL SERIALIZATION RULES:
1. Version: "__canon_v" injected into every canonical output (first key)
2. Field order is fixed: id, timestamp, sender, message, previous_hash,
   conversation_id. It is never derived from dict ordering.
3. Fields are rendered as a JSON array, so no field boundary is ambiguous
   ("ab" + "c" and "a" + "bc" produce different input)
4. Datetimes: ISO 8601 with microseconds, forced to UTC, Z suffix
5. Ids: JSON integers
6. Strings: preserved exactly, including whitespace
7. JSON output: no extra whitespace, ASCII only
"""

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Mapping, Union

from ..schemas import LedgerEntry


class CanonicalSerializationError(Exception):
    """Raised when entry fields cannot be canonically serialized."""
    pass


class Hasher:
    """
    Canonical serialization and hashing of chain entries.

    IMMUTABLE CONTRACT:
    - Same logical entry → same hash
    - Forever
    - Across platforms, locales and timezones
    - Across Python versions

    If you need to change serialization rules, you MUST version them.
    """

    # Version of the canonical serialization format
    SERIALIZATION_VERSION = 1

    # Hash input order. Part of the storage format.
    FIELD_ORDER = (
        "id",
        "timestamp",
        "sender",
        "message",
        "previous_hash",
        "conversation_id",
    )

    @classmethod
    def _serialize_datetime(cls, dt: datetime, path: str) -> str:
        """
        Serialize datetime to canonical ISO 8601 format.

        Format: YYYY-MM-DDTHH:MM:SS.ffffffZ
        """
        if dt.tzinfo is None:
            raise CanonicalSerializationError(
                f"Datetime at {path} is timezone-naive. "
                "Entry timestamps must be timezone-aware for deterministic serialization. "
                "Use datetime.now(timezone.utc) or attach a timezone."
            )

        utc_dt = dt.astimezone(timezone.utc)

        return utc_dt.strftime("%Y-%m-%dT%H:%M:%S.") + \
               f"{utc_dt.microsecond:06d}Z"

    @classmethod
    def _serialize_field(cls, name: str, value: Any) -> Any:
        if name in ("id", "conversation_id"):
            if isinstance(value, bool) or not isinstance(value, int):
                raise CanonicalSerializationError(
                    f"Field {name} must be an integer, got {type(value).__name__}"
                )
            return value

        if name == "timestamp":
            if isinstance(value, str):
                # Stored rows may come back as ISO strings
                try:
                    value = datetime.fromisoformat(value.replace("Z", "+00:00"))
                except ValueError as e:
                    raise CanonicalSerializationError(f"Unparseable timestamp: {value!r}") from e
            if not isinstance(value, datetime):
                raise CanonicalSerializationError(
                    f"Field timestamp must be a datetime, got {type(value).__name__}"
                )
            return cls._serialize_datetime(value, name)

        if not isinstance(value, str):
            raise CanonicalSerializationError(
                f"Field {name} must be a string, got {type(value).__name__}"
            )
        return value

    @classmethod
    def _fields_of(cls, entry: Union[LedgerEntry, Mapping[str, Any]]) -> Mapping[str, Any]:
        if isinstance(entry, LedgerEntry):
            return entry.hash_fields()
        missing = [name for name in cls.FIELD_ORDER if name not in entry]
        if missing:
            raise CanonicalSerializationError(
                f"Entry fields missing from hash input: {', '.join(missing)}"
            )
        return entry

    @classmethod
    def canonicalize(cls, entry: Union[LedgerEntry, Mapping[str, Any]]) -> str:
        """
        Convert entry fields to their canonical string.

        This is THE critical function.
        Same input → same output. Forever.

        Args:
            entry: A LedgerEntry, or a mapping holding the six hashed fields
                   (any "hash" key is ignored)

        Returns:
            Canonical JSON string with version marker

        Raises:
            CanonicalSerializationError: If a field has the wrong type
        """
        fields = cls._fields_of(entry)
        ordered = [
            cls._serialize_field(name, fields[name])
            for name in cls.FIELD_ORDER
        ]

        # "__canon_v" sorts first, "entry" second
        return json.dumps(
            {"__canon_v": cls.SERIALIZATION_VERSION, "entry": ordered},
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=True,
            allow_nan=False,
        )

    @classmethod
    def compute_hash(cls, entry: Union[LedgerEntry, Mapping[str, Any]]) -> str:
        """
        Hash an entry using SHA-256.

        The hash input contains previous_hash, which is what chains
        each entry to its predecessor.

        Returns:
            Hex-encoded SHA-256 hash (64 characters, lowercase)
        """
        canonical = cls.canonicalize(entry)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @staticmethod
    def verify_link(prev: LedgerEntry, curr: LedgerEntry) -> bool:
        """True if curr points at prev."""
        return curr.previous_hash == prev.hash

    @classmethod
    def verify_entry(cls, curr: LedgerEntry) -> bool:
        """
        Recompute an entry's hash and compare with the stored one.

        Returns False (never raises) if the stored fields can no longer be
        serialized.
        """
        try:
            computed = cls.compute_hash(curr)
        except CanonicalSerializationError:
            return False
        return cls._constant_time_compare(computed, curr.hash)

    @staticmethod
    def _constant_time_compare(a: str, b: str) -> bool:
        """
        Compare two strings in constant time.

        Prevents timing attacks where an attacker could learn
        about the hash by measuring comparison time.
        """
        if len(a) != len(b):
            return False

        result = 0
        for x, y in zip(a, b):
            result |= ord(x) ^ ord(y)

        return result == 0
