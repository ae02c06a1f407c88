# Core ledger services
from .hasher import Hasher, CanonicalSerializationError
from .ledger import (
    ConversationLedgerService,
    ConversationLockRegistry,
    LedgerConfig,
    LedgerError,
    InvalidEntryError,
)

__all__ = [
    "Hasher",
    "CanonicalSerializationError",
    "ConversationLedgerService",
    "ConversationLockRegistry",
    "LedgerConfig",
    "LedgerError",
    "InvalidEntryError",
]
