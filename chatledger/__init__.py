"""
chatledger - per-conversation tamper-evident message ledger.

Each conversation of the chat backend owns an append-only SHA-256 hash
chain; every delivered message is recorded as an entry that commits to
the one before it.
"""

__version__ = "0.1.0"
