"""Utility functions and helpers."""

from .exceptions import (
    raise_bad_request,
    raise_conflict,
    raise_internal_error,
    raise_not_found,
    raise_reconciliation_error,
)

__all__ = [
    "raise_bad_request",
    "raise_conflict",
    "raise_internal_error",
    "raise_not_found",
    "raise_reconciliation_error",
]
