"""Amount/date match scoring and reconciliation tunables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from pathlib import Path

import yaml

from reconciler.logger import get_logger
from reconciler.services.similarity import amounts_match, days_between

logger = get_logger(__name__)


class AmountTier(str, Enum):
    EXACT = "exact"
    CLOSE = "close"


# (amount tier, max days apart, score), evaluated top to bottom.
# Non-increasing in days for a fixed tier; EXACT >= CLOSE for a fixed day bucket.
DEFAULT_LADDER: tuple[tuple[AmountTier, int, float], ...] = (
    (AmountTier.EXACT, 0, 0.95),
    (AmountTier.EXACT, 3, 0.85),
    (AmountTier.EXACT, 7, 0.75),
    (AmountTier.CLOSE, 0, 0.70),
    (AmountTier.CLOSE, 3, 0.60),
    (AmountTier.EXACT, 14, 0.50),
    (AmountTier.CLOSE, 7, 0.45),
    (AmountTier.EXACT, 30, 0.30),
    (AmountTier.CLOSE, 14, 0.25),
)
ANY_TOLERANCE_SCORE = 0.10


@dataclass(frozen=True)
class ReconciliationConfig:
    """Runtime configuration for matching, grouping and acceptance."""

    exact_amount_percent: Decimal = Decimal("0.1")
    close_amount_percent: Decimal = Decimal("5")
    group_amount_percent: Decimal = Decimal("1")
    balance_tolerance: Decimal = Decimal("0.01")

    # Classification floor and per-strategy gates (confidence in [0, 1])
    min_confidence: float = 0.35
    group_gate: float = 0.9
    pattern_gate: float = 0.7
    expense_keyword_gate: float = 0.6
    borrower_name_gate: float = 0.5
    investor_name_gate: float = 0.45

    expense_keyword_score: float = 0.65
    pattern_min_overlap: float = 0.5
    borrower_name_min_similarity: float = 0.5
    investor_name_min_similarity: float = 0.4

    single_match_window_days: int = 30
    group_window_days: int = 3
    grouped_entries_window_days: int = 14
    max_group_size: int = 5
    group_by_email: bool = True

    # Integer percent thresholds for acceptance bucketing
    bulk_threshold: int = 90
    medium_threshold: int = 70

    ladder: tuple[tuple[AmountTier, int, float], ...] = field(default=DEFAULT_LADDER)


DEFAULT_CONFIG = ReconciliationConfig()

CONFIG_PATH = Path(__file__).resolve().parents[2] / "config" / "reconciliation.yaml"

_config_cache: ReconciliationConfig | None = None


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def load_reconciliation_config(force_reload: bool = False) -> ReconciliationConfig:
    """Load reconciliation configuration from YAML if available.

    Environment variables override the file. Caches the result to avoid
    repeated disk I/O.
    """
    global _config_cache
    if _config_cache is not None and not force_reload:
        return _config_cache

    config = DEFAULT_CONFIG
    if CONFIG_PATH.exists():
        try:
            raw = yaml.safe_load(CONFIG_PATH.read_text()) or {}
            scoring = raw.get("scoring", {})
            tolerances = scoring.get("tolerances", {})
            thresholds = scoring.get("thresholds", {})
            windows = scoring.get("windows", {})
            grouping = raw.get("grouping", {})

            config = replace(
                config,
                exact_amount_percent=Decimal(
                    str(tolerances.get("exact_amount_percent", config.exact_amount_percent))
                ),
                close_amount_percent=Decimal(
                    str(tolerances.get("close_amount_percent", config.close_amount_percent))
                ),
                group_amount_percent=Decimal(
                    str(tolerances.get("group_amount_percent", config.group_amount_percent))
                ),
                min_confidence=float(thresholds.get("min_confidence", config.min_confidence)),
                bulk_threshold=int(thresholds.get("bulk", config.bulk_threshold)),
                medium_threshold=int(thresholds.get("medium", config.medium_threshold)),
                single_match_window_days=int(
                    windows.get("single_days", config.single_match_window_days)
                ),
                group_window_days=int(windows.get("group_days", config.group_window_days)),
                group_by_email=bool(grouping.get("by_email", config.group_by_email)),
                max_group_size=int(grouping.get("max_size", config.max_group_size)),
            )
        except (OSError, yaml.YAMLError, ValueError, ArithmeticError, AttributeError) as e:
            logger.warning(
                "Failed to load reconciliation config - using defaults",
                config_path=str(CONFIG_PATH),
                error=str(e),
                error_type=type(e).__name__,
            )

    min_confidence_env = os.getenv("RECONCILIATION_MIN_CONFIDENCE")
    bulk_env = os.getenv("RECONCILIATION_BULK_THRESHOLD")
    group_by_email_env = os.getenv("RECONCILIATION_GROUP_BY_EMAIL")
    if min_confidence_env:
        config = replace(config, min_confidence=float(min_confidence_env))
    if bulk_env:
        config = replace(config, bulk_threshold=int(bulk_env))
    if group_by_email_env:
        config = replace(config, group_by_email=_parse_bool(group_by_email_env))

    _config_cache = config
    return config


def score_amount_and_date(
    bank_amount: Decimal,
    bank_date: date | None,
    amount: Decimal,
    on_date: date | None,
    config: ReconciliationConfig = DEFAULT_CONFIG,
) -> float:
    """Walk the scoring ladder for one amount/date pair.

    Missing dates never satisfy a date bucket but still earn the
    any-tolerance score when the amounts agree.
    """
    tiers = {
        AmountTier.EXACT: amounts_match(bank_amount, amount, config.exact_amount_percent),
        AmountTier.CLOSE: amounts_match(bank_amount, amount, config.close_amount_percent),
    }
    if not tiers[AmountTier.CLOSE]:
        return 0.0

    diff = days_between(bank_date, on_date)
    if diff is not None:
        for tier, max_days, score in config.ladder:
            if tiers[tier] and diff <= max_days:
                return score
    return ANY_TOLERANCE_SCORE


def calculate_match_score(entry, obligation, config: ReconciliationConfig = DEFAULT_CONFIG) -> float:
    """Score a bank entry against an obligation (anything with amount and date)."""
    return score_amount_and_date(
        abs(entry.amount),
        entry.statement_date,
        abs(obligation.amount),
        obligation.date,
        config,
    )


def confidence_percent(score: float) -> int:
    """Convert a [0, 1] confidence to an integer percent, rounding half up."""
    percent = (Decimal(str(score)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return max(0, min(100, int(percent)))


def confidence_level(percent: int, config: ReconciliationConfig = DEFAULT_CONFIG) -> str:
    if percent >= config.bulk_threshold:
        return "high"
    if percent >= config.medium_threshold:
        return "medium"
    return "low"


def is_bulk_eligible(percent: int, config: ReconciliationConfig = DEFAULT_CONFIG) -> bool:
    """Only high-confidence matches may be reconciled without review."""
    return percent >= config.bulk_threshold
