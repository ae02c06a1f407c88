"""
API Routes for the Conversation Ledger

Command endpoints (no PATCH, no PUT, no DELETE):
- POST /ledger/entries                               - Record a message

Query endpoints:
- GET /ledger/entries                                - Full ledger, all conversations
- GET /conversations/{id}/ledger                     - One conversation's chain

Verification endpoints:
- GET /conversations/{id}/ledger/verify              - Validate one chain
- GET /ledger/verify                                 - Validate every chain

Handlers are plain `def`: appends block on a conversation's lock and must
run in the threadpool, not on the event loop.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from ..core import ConversationLedgerService, InvalidEntryError
from ..db.store import ConcurrencyError, LockTimeoutError, PersistenceError
from ..schemas import AppendEntryRequest, ChainResponse, ChainValidation, LedgerEntry
from ..shared_ledger import get_ledger


router = APIRouter()


class LedgerVerificationResponse(BaseModel):
    """Validation verdicts for every conversation."""
    all_valid: bool
    conversations_checked: int
    results: list[ChainValidation]


# ============================================================
# Commands
# ============================================================

@router.post(
    "/ledger/entries",
    response_model=LedgerEntry,
    status_code=status.HTTP_201_CREATED,
    tags=["Ledger Commands"],
    summary="Record a message in a conversation's ledger",
)
def append_entry(
    request: AppendEntryRequest,
    ledger: ConversationLedgerService = Depends(get_ledger),
):
    """
    Append a message to its conversation's hash chain.

    The first append to a conversation also creates its genesis entry.
    Entries cannot be altered or deleted afterwards.
    """
    try:
        return ledger.append(request.conversation_id, request.sender, request.message)
    except InvalidEntryError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ConcurrencyError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except (LockTimeoutError, PersistenceError) as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


# ============================================================
# Queries
# ============================================================

@router.get(
    "/ledger/entries",
    response_model=ChainResponse,
    tags=["Ledger Queries"],
    summary="Get the full ledger",
)
def list_entries(
    ledger: ConversationLedgerService = Depends(get_ledger),
):
    """Every entry across all conversations, ordered by id."""
    try:
        entries = ledger.get_chain()
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return ChainResponse(entry_count=len(entries), entries=entries)


@router.get(
    "/conversations/{conversation_id}/ledger",
    response_model=ChainResponse,
    tags=["Ledger Queries"],
    summary="Get a conversation's chain",
)
def get_conversation_chain(
    conversation_id: int,
    ledger: ConversationLedgerService = Depends(get_ledger),
):
    """A conversation's entries in chain order. Empty if it has no chain yet."""
    try:
        entries = ledger.get_chain(conversation_id)
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return ChainResponse(
        conversation_id=conversation_id,
        entry_count=len(entries),
        entries=entries,
    )


# ============================================================
# Verification
# ============================================================

@router.get(
    "/conversations/{conversation_id}/ledger/verify",
    response_model=ChainValidation,
    tags=["Verification"],
    summary="Verify a conversation's chain",
)
def verify_conversation(
    conversation_id: int,
    ledger: ConversationLedgerService = Depends(get_ledger),
):
    """
    Verify the integrity of one conversation's chain.

    Always 200: a broken chain is a verdict, not an error. On failure the
    response names the first broken index and the reason.
    """
    return ledger.validate(conversation_id)


@router.get(
    "/ledger/verify",
    response_model=LedgerVerificationResponse,
    tags=["Verification"],
    summary="Verify every conversation's chain",
)
def verify_ledger(
    ledger: ConversationLedgerService = Depends(get_ledger),
):
    """Verify every chain in the ledger."""
    try:
        results = ledger.validate_all()
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    return LedgerVerificationResponse(
        all_valid=all(r.valid for r in results.values()),
        conversations_checked=len(results),
        results=list(results.values()),
    )
