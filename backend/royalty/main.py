"""
Royalty Engine - FastAPI Application

Main entry point for the Royalty Ledger & Automated Distribution Engine.

Architecture:
- Stream events -> FraudAnalyzer -> RoyaltyCalculator -> Ledger credit
- Scheduler -> TreasuryDistributor (fund split) -> Ledger credit
- Scheduler -> PayoutOrchestrator -> payout channel -> AuditLog
- Processor webhooks -> PayoutReconciler
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import EngineSettings, configure_logging
from .database import init_db
from .errors import (
    AccountNotFound,
    DuplicateTransaction,
    ImmutableRecordError,
    InsufficientTreasuryFunds,
    JobAlreadyRunning,
    ReconciliationMismatch,
    ReservationNotHeld,
    ReversalExceedsBalance,
    ValidationError,
)
from .routers import accounts_router, admin_router, events_router, scheduler_router, webhooks_router
from .services.engine import RoyaltyEngine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load settings, initialize database, build the service container."""
    settings = EngineSettings.from_env()
    configure_logging(settings.log_level)
    init_db()
    app.state.engine = RoyaltyEngine(settings)
    logger.info("Royalty engine started")
    yield
    app.state.engine.close()

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Royalty Engine",
    description="""
    Royalty Ledger & Automated Distribution Engine

    Converts play/stream events and subscription/licensing revenue into
    per-creator earnings, splits pooled revenue across treasury funds and pays
    creators out through the first payout channel that works.

    ## Key Principles
    - Balances change only through atomic ledger operations
    - Transactions, completed payouts and audit entries are append-only
    - Every financial event carries an idempotency key
    - Processor webhooks reconcile payouts; mismatches are never auto-corrected
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(events_router)
app.include_router(accounts_router)
app.include_router(scheduler_router)
app.include_router(webhooks_router)
app.include_router(admin_router)


# =============================================================================
# ERROR MAPPING
# =============================================================================

def _error(status_code: int, error: Exception, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": type(error).__name__, "detail": str(error), **extra},
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return _error(422, exc)


@app.exception_handler(AccountNotFound)
async def account_not_found_handler(request: Request, exc: AccountNotFound):
    return _error(404, exc)


@app.exception_handler(DuplicateTransaction)
async def duplicate_transaction_handler(request: Request, exc: DuplicateTransaction):
    return _error(200, exc, duplicate=True, existing_id=exc.existing_id)


@app.exception_handler(JobAlreadyRunning)
async def job_running_handler(request: Request, exc: JobAlreadyRunning):
    return _error(409, exc)


@app.exception_handler(ReconciliationMismatch)
async def mismatch_handler(request: Request, exc: ReconciliationMismatch):
    return _error(202, exc, status="mismatch")


@app.exception_handler(ReversalExceedsBalance)
@app.exception_handler(ReservationNotHeld)
@app.exception_handler(InsufficientTreasuryFunds)
@app.exception_handler(ImmutableRecordError)
async def conflict_handler(request: Request, exc: Exception):
    return _error(409, exc)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Royalty Engine",
        "version": "1.0.0",
        "description": "Royalty Ledger & Automated Distribution Engine",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


# For running with: python -m royalty.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
