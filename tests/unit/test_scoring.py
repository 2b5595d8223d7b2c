"""Tests for match scoring and reconciliation configuration."""

from datetime import date, timedelta
from decimal import Decimal

import pytest

from reconciler.services import scoring
from reconciler.services.scoring import (
    ANY_TOLERANCE_SCORE,
    DEFAULT_CONFIG,
    calculate_match_score,
    confidence_level,
    confidence_percent,
    is_bulk_eligible,
    load_reconciliation_config,
    score_amount_and_date,
)
from tests.factories import BankStatementEntryFactory, LoanTransactionFactory

DAY = date(2024, 3, 15)


class TestScoreLadder:
    def test_exact_same_day(self):
        assert score_amount_and_date(Decimal("100"), DAY, Decimal("100"), DAY) == 0.95

    def test_exact_within_three_days(self):
        assert score_amount_and_date(Decimal("100"), DAY, Decimal("100"), DAY + timedelta(days=2)) == 0.85

    def test_close_same_day(self):
        assert score_amount_and_date(Decimal("100"), DAY, Decimal("103"), DAY) == 0.70

    def test_amounts_too_far_apart(self):
        assert score_amount_and_date(Decimal("100"), DAY, Decimal("110"), DAY) == 0.0

    def test_missing_date_earns_any_tolerance_score(self):
        assert score_amount_and_date(Decimal("100"), None, Decimal("100"), DAY) == ANY_TOLERANCE_SCORE

    def test_beyond_every_window(self):
        assert score_amount_and_date(Decimal("100"), DAY, Decimal("100"), DAY + timedelta(days=45)) == ANY_TOLERANCE_SCORE

    @pytest.mark.parametrize("other", [Decimal("100"), Decimal("103")])
    def test_score_never_increases_with_distance(self, other):
        """Moving the dates apart never raises the score."""
        scores = [
            score_amount_and_date(Decimal("100"), DAY, other, DAY + timedelta(days=days))
            for days in range(0, 46)
        ]
        assert scores == sorted(scores, reverse=True)

    def test_exact_amount_never_scores_below_close(self):
        for days in range(0, 46):
            on_date = DAY + timedelta(days=days)
            exact = score_amount_and_date(Decimal("100"), DAY, Decimal("100"), on_date)
            close = score_amount_and_date(Decimal("100"), DAY, Decimal("103"), on_date)
            assert exact >= close

    def test_calculate_match_score_uses_absolute_amounts(self):
        entry = BankStatementEntryFactory.build(amount=Decimal("-250.00"), statement_date=DAY)
        tx = LoanTransactionFactory.build(amount=Decimal("250.00"), date=DAY)
        assert calculate_match_score(entry, tx) == 0.95


class TestConfidence:
    def test_percent_rounds_half_up(self):
        assert confidence_percent(0.955) == 96
        assert confidence_percent(0.65) == 65

    def test_percent_is_clamped(self):
        assert confidence_percent(1.2) == 100
        assert confidence_percent(-0.1) == 0

    def test_levels(self):
        assert confidence_level(90) == "high"
        assert confidence_level(70) == "medium"
        assert confidence_level(69) == "low"

    def test_bulk_eligibility_threshold(self):
        assert is_bulk_eligible(90)
        assert not is_bulk_eligible(89)


class TestLoadConfig:
    def test_defaults_from_shipped_yaml(self):
        config = load_reconciliation_config(force_reload=True)
        assert config == DEFAULT_CONFIG

    def test_result_is_cached(self):
        assert load_reconciliation_config() is load_reconciliation_config()

    def test_yaml_values_applied(self, tmp_path, monkeypatch):
        path = tmp_path / "reconciliation.yaml"
        path.write_text(
            "scoring:\n"
            "  thresholds:\n"
            "    min_confidence: 0.4\n"
            "    bulk: 95\n"
            "grouping:\n"
            "  by_email: false\n"
        )
        monkeypatch.setattr(scoring, "CONFIG_PATH", path)

        config = load_reconciliation_config(force_reload=True)

        assert config.min_confidence == 0.4
        assert config.bulk_threshold == 95
        assert config.group_by_email is False
        assert config.medium_threshold == DEFAULT_CONFIG.medium_threshold

    def test_broken_yaml_falls_back_to_defaults(self, tmp_path, monkeypatch):
        path = tmp_path / "reconciliation.yaml"
        path.write_text("scoring: [unclosed\n")
        monkeypatch.setattr(scoring, "CONFIG_PATH", path)

        assert load_reconciliation_config(force_reload=True) == DEFAULT_CONFIG

    def test_environment_overrides_file(self, monkeypatch):
        monkeypatch.setenv("RECONCILIATION_MIN_CONFIDENCE", "0.5")
        monkeypatch.setenv("RECONCILIATION_BULK_THRESHOLD", "85")
        monkeypatch.setenv("RECONCILIATION_GROUP_BY_EMAIL", "no")

        config = load_reconciliation_config(force_reload=True)

        assert config.min_confidence == 0.5
        assert config.bulk_threshold == 85
        assert config.group_by_email is False
