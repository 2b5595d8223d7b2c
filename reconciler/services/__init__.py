"""Services package."""

from reconciler.services.classification import classify_entry, classify_intent
from reconciler.services.context import ClaimSet, ReconciliationContext, build_context, load_context
from reconciler.services.errors import (
    AlreadyReconciledError,
    AmbiguousGroupError,
    BalanceMismatchError,
    ConcurrentModificationError,
    MissingMatchDataError,
    NoMatchFoundError,
    PartialCreateFailureError,
    ReconciliationError,
)
from reconciler.services.pots import run_pot_pipeline
from reconciler.services.reconciliation import (
    bulk_reconcile,
    execute_manual_match,
    execute_reconciliation,
    unreconcile,
    validate_amounts_balance,
)
from reconciler.services.scoring import ReconciliationConfig, load_reconciliation_config
from reconciler.services.suggestions import generate_suggestions, select_bulk_eligible

__all__ = [
    "AlreadyReconciledError",
    "AmbiguousGroupError",
    "BalanceMismatchError",
    "ClaimSet",
    "ConcurrentModificationError",
    "MissingMatchDataError",
    "NoMatchFoundError",
    "PartialCreateFailureError",
    "ReconciliationConfig",
    "ReconciliationContext",
    "ReconciliationError",
    "build_context",
    "bulk_reconcile",
    "classify_entry",
    "classify_intent",
    "execute_manual_match",
    "execute_reconciliation",
    "generate_suggestions",
    "load_context",
    "load_reconciliation_config",
    "run_pot_pipeline",
    "select_bulk_eligible",
    "unreconcile",
    "validate_amounts_balance",
]
