"""
Ledger Entry Schema

One conversation = one hash chain.
Nothing is "edited". Messages happen, and each one is recorded.

Each entry:
- Belongs to exactly one conversation
- Is hashed
- Is chained to the entry before it
- Is never updated or deleted
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


GENESIS_PREVIOUS_HASH = "0"
GENESIS_SENDER = "System"
GENESIS_MESSAGE = "Genesis Block"


class LedgerEntry(BaseModel):
    """
    A committed block in a conversation's chain.

    Chain Integrity Rules:
    - id is a per-conversation sequence (0 for genesis, then 1, 2, ...)
    - previous_hash is "0" for genesis only
    - previous_hash equals the hash of entry id - 1 for every other entry
    - hash is verifiable from the other six fields
    """
    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "id": 1,
                "conversation_id": 42,
                "timestamp": "2024-03-16T09:00:00.000000Z",
                "sender": "alice",
                "message": "hi",
                "previous_hash": "5d41402abc4b2a76b9719d911017c592...",
                "hash": "7c211433f02071597741e6ff5a8ea34789...",
            }
        },
    )

    id: int = Field(
        ...,
        ge=0,
        description="Per-conversation sequence number (0 for genesis)"
    )
    conversation_id: int = Field(
        ...,
        ge=0,
        description="Conversation this entry belongs to"
    )
    timestamp: datetime = Field(
        ...,
        description="When the entry was created (timezone-aware, assigned once)"
    )
    sender: str = Field(
        ...,
        description="Display name or identifier of the author ('System' for genesis)"
    )
    message: str = Field(
        ...,
        description="Logged payload: ciphertext, plaintext or a system literal"
    )
    previous_hash: str = Field(
        ...,
        description="Hash of the preceding entry, or '0' for genesis"
    )
    hash: str = Field(
        ...,
        description="SHA-256 of the canonical entry fields"
    )

    @property
    def is_genesis(self) -> bool:
        """Check if this is the first entry of its conversation."""
        return self.previous_hash == GENESIS_PREVIOUS_HASH

    def hash_fields(self) -> dict[str, Any]:
        """The entry without its hash: exactly what the digest commits to."""
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "sender": self.sender,
            "message": self.message,
            "previous_hash": self.previous_hash,
            "conversation_id": self.conversation_id,
        }


class ValidationReason(str, Enum):
    """Why a chain failed validation."""
    GENESIS_PREVIOUS_HASH = "GENESIS_PREVIOUS_HASH"
    ID_SEQUENCE = "ID_SEQUENCE"
    LINK_MISMATCH = "LINK_MISMATCH"
    HASH_MISMATCH = "HASH_MISMATCH"
    STORAGE_ERROR = "STORAGE_ERROR"


class ChainValidation(BaseModel):
    """
    Verdict of a whole-chain validation.

    Not an exception: a broken chain is reported, never raised, and never
    repaired. An empty chain is valid.
    """
    valid: bool
    conversation_id: int
    entry_count: int = 0
    broken_at_index: Optional[int] = Field(
        default=None,
        description="Position of the first failing entry in the chain"
    )
    broken_at_id: Optional[int] = Field(
        default=None,
        description="Stored id of the first failing entry"
    )
    reason: Optional[ValidationReason] = None
    detail: str = ""

    def __bool__(self) -> bool:
        return self.valid


# ============================================================
# Request/Response Models
# ============================================================

class AppendEntryRequest(BaseModel):
    """Request to record a message in a conversation's ledger."""
    conversation_id: int = Field(..., ge=0)
    sender: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)


class ChainResponse(BaseModel):
    """A conversation's chain, in order."""
    conversation_id: Optional[int] = None
    entry_count: int
    entries: list[LedgerEntry]
