"""
Work Portal - FastAPI Backend
Main application entry point with health check and API routing.
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    auth,
    credits,
    tasks,
    emails,
    users,
)
from services.credits import CreditLedgerIntegrityError, CreditLedgerUnavailableError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Work Portal API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    if not settings.SMTP_HOST:
        print("⚠️ SMTP_HOST is not configured; email sends will fail and refund their credit.")
    yield
    # Shutdown
    await engine.dispose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Work Portal API",
    description="Task and email portal with per-account credit quotas",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CreditLedgerUnavailableError)
async def credit_ledger_unavailable_handler(request: Request, exc: CreditLedgerUnavailableError):
    return JSONResponse(
        status_code=503,
        content={"detail": {"message": "Credit ledger is busy. Retry the request.", "error": str(exc)}},
        headers={"Retry-After": "1"},
    )


@app.exception_handler(CreditLedgerIntegrityError)
async def credit_ledger_integrity_handler(request: Request, exc: CreditLedgerIntegrityError):
    logger.error("credit_ledger_integrity_error path=%s error=%s", request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content={"detail": {"message": "Credit ledger is inconsistent for this account.", "error": str(exc)}},
    )


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(credits.router, prefix="/credits", tags=["Credits"])
app.include_router(tasks.router, prefix="/tasks", tags=["Tasks"])
app.include_router(emails.router, prefix="/emails", tags=["Emails"])
app.include_router(users.router, prefix="/users", tags=["Users"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Work Portal API",
        "version": "0.1.0",
        "status": "running"
    }
