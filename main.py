from fastapi import FastAPI, HTTPException, Request, Depends, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from typing import Dict, List, Optional
import logging
import structlog
import sys
import time
from contextlib import asynccontextmanager

from config import Settings, get_settings
from errors import LedgerUnavailableError
from models import (
    AccountResponse,
    CreateAccountRequest,
    ErrorResponse,
    HealthResponse,
    Outcome,
    ReplayResponse,
    TransactionHistory,
    TransactionHistoryResponse,
    TransferRequest,
    TransferResponse,
)
from reconciliation import get_reconciliation_queue
from repositories import (
    get_account_repository,
    get_customer_directory,
    get_idempotency_repository,
    get_ledger_repository,
)
from services import AccountService, TransferEngine, get_account_service, get_transfer_engine


def configure_logging(settings: Settings) -> None:
    """Route structlog through stdlib logging, rendering JSON or console output."""
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=settings.log_level.upper())

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_format == "json"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


settings = get_settings()
configure_logging(settings)

logger = structlog.get_logger()

# Rate limiting
limiter = Limiter(key_func=get_remote_address)

# Business outcomes -> HTTP status codes
OUTCOME_STATUS: Dict[Outcome, int] = {
    Outcome.invalid_amount: status.HTTP_400_BAD_REQUEST,
    Outcome.same_account: status.HTTP_400_BAD_REQUEST,
    Outcome.insufficient_funds: status.HTTP_400_BAD_REQUEST,
    Outcome.invalid_accounts: status.HTTP_404_NOT_FOUND,
    Outcome.not_found: status.HTTP_404_NOT_FOUND,
    Outcome.account_number_in_use: status.HTTP_409_CONFLICT,
}


def transfer_rate_limit() -> str:
    return f"{get_settings().rate_limit_per_minute}/minute"


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Account Ledger API")
    yield
    # Shutdown
    pending = len(get_reconciliation_queue())
    if pending:
        logger.warning("Shutting down with transfers awaiting reconciliation", pending=pending)
    logger.info("Shutting down Account Ledger API")

# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Customer accounts and funds transfers with an immutable transaction history",
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Add rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=settings.allowed_methods,
    allow_headers=settings.allowed_headers,
)

# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    # Log request
    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        client_ip=request.client.host if request.client else None
    )

    response = await call_next(request)

    # Log response
    process_time = time.time() - start_time
    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time=round(process_time, 4)
    )

    return response

# Dependency injection
def get_engine(
    account_repo=Depends(get_account_repository),
    ledger_repo=Depends(get_ledger_repository),
    reconciliation=Depends(get_reconciliation_queue),
    idempotency_repo=Depends(get_idempotency_repository)
) -> TransferEngine:
    return get_transfer_engine(account_repo, ledger_repo, reconciliation, idempotency_repo)


def get_service(
    account_repo=Depends(get_account_repository),
    ledger_repo=Depends(get_ledger_repository),
    customer_directory=Depends(get_customer_directory)
) -> AccountService:
    return get_account_service(account_repo, ledger_repo, customer_directory)


def raise_for_outcome(outcome: Outcome, detail: str) -> None:
    if outcome in OUTCOME_STATUS:
        raise HTTPException(status_code=OUTCOME_STATUS[outcome], detail=detail)

# Health check endpoint
@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Check API health and get ledger statistics"
)
async def health_check(
    account_repo=Depends(get_account_repository),
    ledger_repo=Depends(get_ledger_repository),
    reconciliation=Depends(get_reconciliation_queue)
):
    try:
        accounts_count = await account_repo.get_accounts_count()
        entries_count = await ledger_repo.get_entries_count()
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        raise HTTPException(
            status_code=500,
            detail="Health check failed"
        )

    pending = len(reconciliation)
    return HealthResponse(
        status="degraded" if pending else "healthy",
        accounts_count=accounts_count,
        transactions_recorded=entries_count,
        pending_reconciliation=pending
    )

# Account endpoints
@app.post(
    "/api/v1/accounts",
    response_model=AccountResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create Account",
    responses={
        400: {"description": "Negative or malformed initial deposit"},
        404: {"description": "Customer not found"},
        409: {"description": "Account number already in use for this customer"}
    }
)
async def create_account(
    account_request: CreateAccountRequest,
    service: AccountService = Depends(get_service)
):
    result = await service.create_account(
        account_request.customerId,
        account_request.accountNumber,
        account_request.initialDeposit
    )
    raise_for_outcome(result.outcome, result.detail)
    return AccountResponse.from_account(result.account)


@app.get(
    "/api/v1/accounts/{account_id}",
    response_model=AccountResponse,
    summary="Get Account",
    responses={404: {"description": "Account not found"}}
)
async def get_account(account_id: str, service: AccountService = Depends(get_service)):
    result = await service.get_account(account_id)
    raise_for_outcome(result.outcome, result.detail)
    return AccountResponse.from_account(result.account)

# Main transfer endpoint
@app.post(
    "/api/v1/accounts/transfer",
    response_model=TransferResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Transfer Funds",
    description="Move funds between two accounts and record the transaction history",
    responses={
        201: {"description": "Transfer committed and recorded"},
        202: {"description": "Funds moved, transaction history pending reconciliation"},
        400: {"description": "Invalid amount, same account or insufficient funds"},
        404: {"description": "Invalid source or target account"},
        429: {"description": "Rate limit exceeded"},
        503: {"description": "Ledger storage unavailable"}
    }
)
@limiter.limit(transfer_rate_limit)
async def transfer_funds(
    request: Request,
    transfer_request: TransferRequest,
    engine: TransferEngine = Depends(get_engine)
):
    logger.info(
        "Transfer request received",
        source_account_id=transfer_request.sourceAccountId,
        target_account_id=transfer_request.targetAccountId,
        idempotency_key=transfer_request.idempotencyKey
    )

    try:
        result = await engine.transfer(
            transfer_request.sourceAccountId,
            transfer_request.targetAccountId,
            transfer_request.amount,
            idempotency_key=transfer_request.idempotencyKey
        )
    except LedgerUnavailableError as e:
        logger.error(
            "Transfer request failed, ledger unavailable",
            transfer_id=e.transfer_id,
            reason=e.reason,
            reconciliation_pending=e.reconciliation_pending
        )
        raise HTTPException(
            status_code=503,
            detail="Ledger temporarily unavailable"
        )

    raise_for_outcome(result.outcome, result.detail)

    response = TransferResponse(
        transferId=result.transfer_id,
        status=result.outcome,
        sourceAccountId=result.source_account_id,
        targetAccountId=result.target_account_id,
        amount=result.amount,
        entryId=result.entry.id if result.entry else None,
        timestamp=result.entry.timestamp if result.entry else None
    )
    if result.outcome == Outcome.degraded:
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content=response.model_dump(mode="json")
        )
    return response

# Transaction history endpoint
@app.get(
    "/api/v1/transactions/history/{account_id}",
    response_model=List[TransactionHistoryResponse],
    summary="Transaction History",
    description="Transfers where the account is source or target, oldest first",
    responses={404: {"description": "Account not found"}}
)
async def get_transaction_history(account_id: str, service: AccountService = Depends(get_service)):
    result = await service.get_history(account_id)
    raise_for_outcome(result.outcome, result.detail)

    numbers: Dict[str, Optional[str]] = {}
    history = []
    for entry in result.entries:
        history.append(await to_history_response(entry, service, numbers))
    return history


async def to_history_response(
    entry: TransactionHistory,
    service: AccountService,
    numbers: Dict[str, Optional[str]]
) -> TransactionHistoryResponse:
    for account_id in (entry.source_account_id, entry.target_account_id):
        if account_id not in numbers:
            lookup = await service.get_account(account_id)
            numbers[account_id] = lookup.account.account_number if lookup.account else None

    return TransactionHistoryResponse(
        id=entry.id,
        amount=entry.amount,
        timestamp=entry.timestamp,
        sourceAccountNumber=numbers[entry.source_account_id],
        targetAccountNumber=numbers[entry.target_account_id]
    )

# Reconciliation endpoint
@app.post(
    "/api/v1/reconciliation/replay",
    response_model=ReplayResponse,
    summary="Replay Pending Reconciliation",
    description="Retry ledger entries and debit reversals left behind by failed transfers"
)
async def replay_reconciliation(
    account_repo=Depends(get_account_repository),
    ledger_repo=Depends(get_ledger_repository),
    reconciliation=Depends(get_reconciliation_queue)
):
    report = await reconciliation.replay(account_repo, ledger_repo)
    logger.info("Reconciliation replay finished", resolved=report.resolved, remaining=report.remaining)
    return ReplayResponse(resolved=report.resolved, remaining=report.remaining)

# Global exception handler
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            detail=exc.detail,
            error_code=f"HTTP_{exc.status_code}"
        ).model_dump(mode="json")
    )

@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        url=str(request.url),
        method=request.method,
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            detail="Internal server error",
            error_code="INTERNAL_ERROR"
        ).model_dump(mode="json")
    )

# Root endpoint
@app.get("/", include_in_schema=False)
async def root():
    return {"message": settings.app_name, "docs": "/docs"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
