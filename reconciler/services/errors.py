"""Reconciliation error taxonomy.

Every error carries the operation name and identifying context so routers
and logs can report what was attempted without re-deriving it.
"""

from decimal import Decimal
from typing import Any


class ReconciliationError(Exception):
    """Base class for reconciliation failures."""

    def __init__(self, message: str, *, operation: str | None = None, **context: Any) -> None:
        super().__init__(message)
        self.operation = operation
        self.context = context


class MissingMatchDataError(ReconciliationError):
    """A required match field (entry, obligation, split, entity) is absent."""


class BalanceMismatchError(ReconciliationError):
    """Bank-side and obligation-side totals differ beyond tolerance."""

    def __init__(
        self,
        bank_total: Decimal,
        obligation_total: Decimal,
        *,
        label: str,
        operation: str | None = None,
        **context: Any,
    ) -> None:
        self.bank_total = bank_total
        self.obligation_total = obligation_total
        self.difference = abs(bank_total - obligation_total)
        super().__init__(
            f"Amounts do not balance ({label}): Bank total {bank_total:.2f} vs "
            f"Transaction total {obligation_total:.2f} (difference {self.difference:.2f})",
            operation=operation,
            **context,
        )


class NoMatchFoundError(ReconciliationError):
    """An explicit lookup found nothing to reconcile against."""


class AmbiguousGroupError(ReconciliationError):
    """Two grouping partitions could not be ordered by the tie-break rules."""


class AlreadyReconciledError(ReconciliationError):
    """The bank entry or obligation is already linked by another reconciliation."""


class ConcurrentModificationError(AlreadyReconciledError):
    """A versioned balance changed between read and write."""


class PartialCreateFailureError(ReconciliationError):
    """A multi-record create failed part-way; the savepoint was rolled back."""
