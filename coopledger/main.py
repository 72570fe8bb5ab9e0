"""Cooperative ledger service - FastAPI entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from coopledger.config import settings
from coopledger.database import engine, Base
from coopledger.api import ledger, loans, accounts, patronage
from coopledger.services.exceptions import (
    ConcurrencyConflict,
    InvariantViolation,
    NotFoundError,
    ValidationRejection,
    WalletRestrictionError,
)

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup (dev only); in prod use migrations."""
    configure_logging()
    if settings.environment == "development":
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    yield


app = FastAPI(
    title="Cooperative Ledger API",
    description="Obligations, allocations, aging and loan/savings/share schedules",
    version="0.1.0",
    lifespan=lifespan,
)


# ── Ledger error mapping ─────────────────────────────────────────

async def _validation_rejection_handler(request: Request, exc: ValidationRejection):
    logger.info("Rejected %s %s: %s", request.method, request.url.path, exc.message)
    content = {"detail": exc.message, "constraint": exc.constraint}
    if isinstance(exc, WalletRestrictionError):
        content.update(
            wallet_name=exc.wallet_name,
            product_name=exc.product_name,
            category_name=exc.category_name,
            category_id=exc.category_id,
        )
    return JSONResponse(status_code=422, content=content)


async def _not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


async def _concurrency_conflict_handler(request: Request, exc: ConcurrencyConflict):
    logger.warning("Lock conflict on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=409, content={"detail": str(exc)})


async def _invariant_violation_handler(request: Request, exc: InvariantViolation):
    logger.error(
        "Invariant violation on %s %s: %s %s",
        request.method, request.url.path, exc.message, exc.context,
    )
    return JSONResponse(status_code=500, content={"detail": "Ledger invariant violation"})


app.add_exception_handler(ValidationRejection, _validation_rejection_handler)
app.add_exception_handler(NotFoundError, _not_found_handler)
app.add_exception_handler(ConcurrencyConflict, _concurrency_conflict_handler)
app.add_exception_handler(InvariantViolation, _invariant_violation_handler)

# Routers
app.include_router(ledger.router, prefix="/api/ledger", tags=["Ledger"])
app.include_router(loans.router, prefix="/api/loans", tags=["Loans"])
app.include_router(accounts.router, prefix="/api/accounts", tags=["Savings & Shares"])
app.include_router(patronage.router, prefix="/api/patronage", tags=["Patronage Refunds"])


@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "service": "coopledger-api", "version": "0.1.0"}
