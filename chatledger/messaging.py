"""
Message-send hook.

The chat backend's messaging path calls record_message() after a message
has been durably stored. The ledger entry is an audit side effect: if it
cannot be written, the failure is logged and the send still succeeds.
"""

from typing import Optional

from .core import ConversationLedgerService
from .schemas import LedgerEntry


def record_message(
    ledger: ConversationLedgerService,
    conversation_id: int,
    sender_display_name: str,
    content: str,
) -> Optional[LedgerEntry]:
    """Append a delivered message to its conversation's chain. Never raises."""
    return ledger.append_best_effort(conversation_id, sender_display_name, content)
