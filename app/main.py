"""
FastAPI application factory and entry point.

This module creates and configures the FastAPI application:
  1. Lifespan manager — logging, table creation, the reconciliation sweep
  2. Middleware — request ids and CORS
  3. Exception handlers — maps domain errors to HTTP responses
  4. Router registration — mounts all API endpoint groups

Running locally:
    uvicorn app.main:app --reload

The --reload flag watches for file changes and restarts automatically,
which is ideal for development but should not be used in production.
"""

import asyncio
import contextlib
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.database import AsyncSessionLocal, engine, Base
from app.dependencies import get_settlement_gateway
from app.exceptions import register_exception_handlers
from app.logging_config import setup_logging
from app import models  # noqa: F401  (registers every table on Base.metadata)
from app.middleware import RequestIDMiddleware
from app.routers import accounts, admin, loans, settlements, transactions, transfers
from app.services.reconciliation_service import run_reconciliation_loop
from app.services.settlement_adapter import SettlementAdapter


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager (replaces deprecated @app.on_event).

    Startup:
      Configures JSON logging and creates all database tables if they don't
      exist (a development convenience; production uses migrations). When
      RECONCILIATION_ENABLED is set, starts the background sweep that
      settles external transfers left processing.

    Shutdown:
      Cancels the sweep and disposes of the database engine.
    """
    # --- Startup ---
    setup_logging(settings.LOG_LEVEL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    sweep_task = None
    if settings.RECONCILIATION_ENABLED:
        adapter = SettlementAdapter(get_settlement_gateway())
        sweep_task = asyncio.create_task(run_reconciliation_loop(AsyncSessionLocal, adapter))

    yield

    # --- Shutdown ---
    if sweep_task is not None:
        sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweep_task
    await engine.dispose()


# Create the FastAPI application instance
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Ledger and funds-movement engine: accounts, transfers, loans and settlement",
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

app.add_middleware(RequestIDMiddleware)

# CORS: Allow specified frontend origins to make requests.
# In production, lock this down to your actual frontend domain(s).
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------

register_exception_handlers(app)

# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------

app.include_router(accounts.router, prefix="/accounts", tags=["Accounts"])
app.include_router(transactions.router, prefix="/accounts", tags=["Transactions"])
app.include_router(transfers.router, prefix="/transfers", tags=["Transfers"])
app.include_router(loans.router, prefix="/loans", tags=["Loans"])
app.include_router(settlements.router, prefix="/settlements", tags=["Settlements"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint for deployment probes (Kubernetes, Docker, etc.).

    Returns a simple JSON response indicating the service is running.
    """
    return {"status": "ok", "version": settings.APP_VERSION}
