# Canonical schemas for the conversation ledger.
# These define the contract every committed entry must obey.

from .entries import (
    GENESIS_MESSAGE,
    GENESIS_PREVIOUS_HASH,
    GENESIS_SENDER,
    AppendEntryRequest,
    ChainResponse,
    ChainValidation,
    LedgerEntry,
    ValidationReason,
)

__all__ = [
    # Entries
    "LedgerEntry",
    "GENESIS_PREVIOUS_HASH",
    "GENESIS_SENDER",
    "GENESIS_MESSAGE",
    # Validation
    "ChainValidation",
    "ValidationReason",
    # API
    "AppendEntryRequest",
    "ChainResponse",
]
