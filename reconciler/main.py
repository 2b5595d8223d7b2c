"""Loan-book reconciliation service - FastAPI application."""

import time
import traceback
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from reconciler.config import settings
from reconciler.deps import DbSession
from reconciler.logger import configure_logging, get_logger, log_exception
from reconciler.routers import reconciliation
from reconciler.services.scoring import load_reconciliation_config

VERSION = "0.1.0"

logger = get_logger(__name__)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Configure logging and read the matching tunables once at startup."""
    configure_logging()
    config = load_reconciliation_config(force_reload=True)
    logger.info(
        "Reconciliation service started",
        version=VERSION,
        environment=settings.environment,
        reconciled_by=settings.reconciliation_user,
        min_confidence=config.min_confidence,
        bulk_threshold=config.bulk_threshold,
        group_by_email=config.group_by_email,
    )
    yield
    logger.info("Reconciliation service stopped")


app = FastAPI(
    title="Loan Book Reconciliation API",
    description="Matches bank statement entries to loan, investor and expense records",
    version=VERSION,
    lifespan=lifespan,
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next: Any) -> Response:
    """Bind a request id so every reconciliation log line can be traced to its call."""
    request_id = request.headers.get("X-Request-ID") or str(uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id, method=request.method, path=request.url.path
    )

    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as exc:
        log_exception(logger, exc, "Request failed", duration_ms=_elapsed_ms(started))
        raise

    logger.info("Request handled", status_code=response.status_code, duration_ms=_elapsed_ms(started))
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unexpected failures still answer with JSON; details only in debug mode."""
    body: dict[str, Any] = {
        "detail": "An internal server error occurred. Please try again later.",
        "trace": None,
        "request_id": structlog.contextvars.get_contextvars().get("request_id"),
    }
    if settings.debug:
        body["detail"] = str(exc)
        body["trace"] = traceback.format_exc()
    return JSONResponse(status_code=500, content=body)


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "X-Request-ID"],
)

app.include_router(reconciliation.router)


@app.get("/health")
async def health_check(db: DbSession) -> JSONResponse:
    """200 when the ledger database answers, 503 otherwise."""
    try:
        await db.execute(text("SELECT 1"))
        database_ok = True
    except SQLAlchemyError as exc:
        log_exception(logger, exc, "Ledger database unavailable", include_traceback=False)
        database_ok = False

    return JSONResponse(
        status_code=200 if database_ok else 503,
        content={
            "status": "healthy" if database_ok else "unhealthy",
            "timestamp": datetime.now(UTC).isoformat(),
            "checks": {"database": database_ok},
        },
    )
