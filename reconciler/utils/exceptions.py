"""Common exception utilities for FastAPI routers."""

from typing import NoReturn

from fastapi import HTTPException, status

from reconciler.services.errors import (
    AlreadyReconciledError,
    NoMatchFoundError,
    PartialCreateFailureError,
    ReconciliationError,
)


def raise_not_found(resource_name: str, *, cause: Exception | None = None) -> NoReturn:
    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"{resource_name} not found",
    ) from cause


def raise_bad_request(detail: str, *, cause: Exception | None = None) -> NoReturn:
    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=detail,
    ) from cause


def raise_conflict(detail: str, *, cause: Exception | None = None) -> NoReturn:
    raise HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=detail,
    ) from cause


def raise_internal_error(detail: str, *, cause: Exception | None = None) -> NoReturn:
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=detail,
    ) from cause


def raise_reconciliation_error(exc: ReconciliationError) -> NoReturn:
    """Map a reconciliation failure onto its HTTP status."""
    if isinstance(exc, AlreadyReconciledError):
        raise_conflict(str(exc), cause=exc)
    if isinstance(exc, NoMatchFoundError):
        raise_not_found("Match", cause=exc)
    if isinstance(exc, PartialCreateFailureError):
        raise_internal_error(str(exc), cause=exc)
    raise_bad_request(str(exc), cause=exc)
