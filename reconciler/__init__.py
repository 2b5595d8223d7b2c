"""Bank-statement reconciliation engine."""
