"""API routers package."""

from reconciler.routers import reconciliation

__all__ = ["reconciliation"]
