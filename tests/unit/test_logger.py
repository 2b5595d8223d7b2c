"""Tests for logging helpers."""

from decimal import Decimal

import pytest
from structlog.dev import ConsoleRenderer
from structlog.processors import JSONRenderer
from structlog.testing import capture_logs

from reconciler import logger as logger_module
from reconciler.logger import async_log_timing, get_logger, log_exception, log_timing
from reconciler.services.errors import BalanceMismatchError


def test_select_renderer_uses_console_in_debug(monkeypatch) -> None:
    monkeypatch.setattr(logger_module.settings, "debug", True)
    assert isinstance(logger_module._select_renderer(), ConsoleRenderer)


def test_select_renderer_uses_json_in_production(monkeypatch) -> None:
    monkeypatch.setattr(logger_module.settings, "debug", False)
    assert isinstance(logger_module._select_renderer(), JSONRenderer)


def test_log_timing_includes_result_context() -> None:
    with capture_logs() as logs:
        with log_timing("generate_suggestions", logger=get_logger("test"), entries=3) as timing:
            timing["suggested"] = 2

    [event] = logs
    assert event["event"] == "generate_suggestions completed"
    assert event["entries"] == 3
    assert event["suggested"] == 2
    assert event["duration_ms"] >= 0


@pytest.mark.asyncio
async def test_async_log_timing_logs_even_on_error() -> None:
    with capture_logs() as logs:
        with pytest.raises(RuntimeError):
            async with async_log_timing("bulk_reconcile", logger=get_logger("test")):
                raise RuntimeError("boom")

    assert [event["event"] for event in logs] == ["bulk_reconcile completed"]


def test_log_exception_without_traceback() -> None:
    exc = BalanceMismatchError(
        Decimal("100"), Decimal("90"), label="single match", operation="reconcile_single_match"
    )

    with capture_logs() as logs:
        log_exception(
            get_logger("test"),
            exc,
            "Reconciliation rejected",
            level="warning",
            include_traceback=False,
            bank_entry_id="abc",
        )

    [event] = logs
    assert event["log_level"] == "warning"
    assert event["error_type"] == "BalanceMismatchError"
    assert event["bank_entry_id"] == "abc"
    assert "exc_info" not in event


def test_log_exception_with_traceback() -> None:
    try:
        raise ValueError("bad split")
    except ValueError as exc:
        with capture_logs() as logs:
            log_exception(get_logger("test"), exc, "Split failed")

    [event] = logs
    assert event["log_level"] == "error"
    assert event["exc_info"] is not None
