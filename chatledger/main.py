"""
Conversation Ledger - tamper-evident message log for the chat backend

Main application entry point.

Every message sent into a conversation is recorded in that conversation's
hash chain. Nothing is edited, nothing is deleted, and anyone with read
access can check that nothing was.
"""

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse

from chatledger import __version__
from chatledger.api.routes import router
from chatledger.core import ConversationLedgerService
from chatledger.observability import (
    setup_logging,
    get_logger,
    RequestContextMiddleware,
    check_health,
    get_metrics,
)
from chatledger.shared_ledger import get_ledger, get_store, reset

# Setup logging at import time
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    app.state.ledger = get_ledger()
    app.state.store = get_store()

    logger.info(
        "Application startup complete",
        store_type=type(app.state.store).__name__,
        lock_timeout_seconds=app.state.ledger.config.lock_timeout_seconds,
        max_append_retries=app.state.ledger.config.max_append_retries,
    )

    yield

    reset()
    logger.info("Application shutdown complete")


app = FastAPI(
    title="Conversation Ledger",
    description="""
## Per-conversation tamper-evident message ledger

Each conversation owns an append-only SHA-256 hash chain.

### Core Principles

- **Append-only**: entries cannot be altered or deleted
- **Chained**: every entry commits to the hash of the one before it
- **Ordered**: appends to one conversation are serialized; no forks
- **Verifiable**: any chain can be re-validated at any time

### Storage Backends

- **InMemoryLedgerStore**: Development/testing (default)
- **PostgresLedgerStore**: Production with full durability

Set `DATABASE_URL` or `DATABASE_HOST` environment variables to use PostgreSQL.
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Add request context middleware for logging
app.add_middleware(RequestContextMiddleware)

app.include_router(router, prefix="/api/v1")


@app.get("/health", tags=["System"])
async def health():
    """
    Basic health check endpoint.

    Returns 200 if the service is running.
    For detailed health, use /health/detailed
    """
    return {"status": "healthy", "service": "chatledger"}


@app.get("/health/detailed", tags=["System"])
def health_detailed(
    verify: bool = False,
    ledger: ConversationLedgerService = Depends(get_ledger),
):
    """
    Detailed health check.

    Checks:
    - Service liveness
    - Ledger store connectivity
    - Chain integrity of every conversation (only with ?verify=true)

    Returns 200 if healthy, 503 if unhealthy.
    """
    health_status = check_health(
        ledger=ledger,
        store=ledger.store,
        verify_chains=verify,
    )

    return JSONResponse(
        status_code=200 if health_status.healthy else 503,
        content={
            "status": "healthy" if health_status.healthy else "unhealthy",
            "checks": health_status.checks,
            "duration_ms": health_status.duration_ms,
        },
    )


@app.get("/metrics", tags=["System"])
async def metrics():
    """
    Get application metrics.

    Returns counters and latency percentiles.
    """
    return get_metrics().get_summary()
