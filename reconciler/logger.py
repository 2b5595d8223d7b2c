"""structlog setup and the timing/exception helpers the engine logs through.

Batch classification and every executor operation report their duration and
outcome as one structured event, so a reconciliation run can be followed by
``operation`` and ``bank_entry_id`` alone.
"""

import logging
import sys
import time
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from typing import Any

import structlog
from structlog.stdlib import BoundLogger
from structlog.types import Processor

from reconciler.config import settings

SHARED_PROCESSORS: tuple[Processor, ...] = (
    structlog.contextvars.merge_contextvars,
    structlog.processors.add_log_level,
    structlog.processors.format_exc_info,
    structlog.processors.TimeStamper(fmt="iso"),
)


def _select_renderer() -> Processor:
    # Operators read the console locally; deployments ship JSON lines
    if settings.debug:
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def configure_logging() -> None:
    """Route structlog and stdlib records through one rendered handler."""
    structlog.configure(
        processors=[*SHARED_PROCESSORS, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=_select_renderer(),
            foreign_pre_chain=list(SHARED_PROCESSORS),
        )
    )
    logging.basicConfig(handlers=[handler], level=logging.DEBUG if settings.debug else logging.INFO)


def get_logger(name: str | None = None) -> BoundLogger:
    return structlog.get_logger(name)


class _OperationTimer:
    """Collects result fields while an operation runs, then logs them once."""

    def __init__(
        self, operation: str, logger: BoundLogger | None, level: str, context: dict[str, Any]
    ) -> None:
        self.operation = operation
        self.log = logger or get_logger(__name__)
        self.level = level
        self.context = context
        self.results: dict[str, Any] = {}
        self.started = time.perf_counter()

    def finish(self) -> None:
        elapsed = round((time.perf_counter() - self.started) * 1000, 2)
        self.results["duration_ms"] = elapsed
        fields = {**self.context, **self.results}
        getattr(self.log, self.level, self.log.info)(
            f"{self.operation} completed", operation=self.operation, **fields
        )


@contextmanager
def log_timing(
    operation: str,
    logger: BoundLogger | None = None,
    level: str = "info",
    **context: Any,
) -> Iterator[dict[str, Any]]:
    """Time a block and log ``<operation> completed`` when it exits.

    The yielded dict takes result fields (``suggested``, ``reconciled``)
    that are logged with the duration, even when the block raises.
    """
    timer = _OperationTimer(operation, logger, level, context)
    try:
        yield timer.results
    finally:
        timer.finish()


@asynccontextmanager
async def async_log_timing(
    operation: str,
    logger: BoundLogger | None = None,
    level: str = "info",
    **context: Any,
) -> AsyncIterator[dict[str, Any]]:
    timer = _OperationTimer(operation, logger, level, context)
    try:
        yield timer.results
    finally:
        timer.finish()


def log_exception(
    logger: BoundLogger,
    exc: BaseException,
    context: str,
    *,
    level: str = "error",
    include_traceback: bool = True,
    **extra: Any,
) -> None:
    """Log ``exc`` under ``context`` with its type and the caller's ids.

    Expected rejections (balance mismatch, already reconciled) are logged at
    warning without a traceback; storage failures keep theirs.
    """
    fields: dict[str, Any] = {
        "error": str(exc),
        "error_type": type(exc).__name__,
        "error_module": type(exc).__module__,
        **extra,
    }
    if include_traceback:
        fields["exc_info"] = exc
    getattr(logger, level, logger.error)(context, **fields)
