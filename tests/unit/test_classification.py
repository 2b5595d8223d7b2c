"""Tests for per-entry intent classification."""

from dataclasses import replace
from datetime import date, timedelta
from decimal import Decimal

import pytest

from reconciler.models import ReconciliationCategory
from reconciler.services.candidates import (
    CreateProposal,
    EntityKind,
    GroupMatch,
    MatchMode,
    SingleMatch,
    Unknown,
)
from reconciler.services.classification import classify_entry
from reconciler.services.context import ClaimSet, build_context
from reconciler.services.scoring import DEFAULT_CONFIG
from tests.factories import (
    TODAY,
    BankStatementEntryFactory,
    BorrowerFactory,
    InvestorFactory,
    LoanFactory,
    LoanTransactionFactory,
    ReconciliationPatternFactory,
)


def _loan_book(*amounts, name="John Smith", on_date=TODAY):
    borrower = BorrowerFactory.build(name=name)
    loan = LoanFactory.build(borrower_id=borrower.id)
    repayments = [
        LoanTransactionFactory.build(loan_id=loan.id, amount=Decimal(amount), date=on_date)
        for amount in amounts
    ]
    return borrower, loan, repayments


def test_exact_repayment_is_a_high_confidence_single_match():
    borrower, loan, repayments = _loan_book("100.00")
    context = build_context(loans=[loan], borrowers=[borrower], loan_transactions=repayments)
    entry = BankStatementEntryFactory.build(amount=Decimal("100.00"), description="BANK CREDIT 1234")

    candidate = classify_entry(entry, context, config=DEFAULT_CONFIG)

    assert isinstance(candidate, SingleMatch)
    assert candidate.mode == MatchMode.MATCH
    assert candidate.category == ReconciliationCategory.LOAN_REPAYMENT
    assert candidate.obligation.id == repayments[0].id
    assert candidate.percent == 95


def test_borrower_name_in_description_lifts_single_match():
    borrower, loan, repayments = _loan_book("100.00", name="Jane Doe")
    context = build_context(loans=[loan], borrowers=[borrower], loan_transactions=repayments)
    entry = BankStatementEntryFactory.build(amount=Decimal("100.00"), description="FPS JANE DOE")

    candidate = classify_entry(entry, context, config=DEFAULT_CONFIG)

    assert isinstance(candidate, SingleMatch)
    assert candidate.confidence == pytest.approx(0.99)


def test_debit_never_matches_a_repayment():
    borrower, loan, repayments = _loan_book("100.00")
    context = build_context(loans=[loan], borrowers=[borrower], loan_transactions=repayments)
    entry = BankStatementEntryFactory.build(amount=Decimal("-100.00"), description="BANK CREDIT 1234")

    assert isinstance(classify_entry(entry, context, config=DEFAULT_CONFIG), Unknown)


def test_claimed_obligation_is_not_offered_again():
    borrower, loan, repayments = _loan_book("100.00")
    context = build_context(loans=[loan], borrowers=[borrower], loan_transactions=repayments)
    entry = BankStatementEntryFactory.build(amount=Decimal("100.00"), description="BANK CREDIT 1234")
    claims = ClaimSet().claim_ids([repayments[0].id])

    assert isinstance(classify_entry(entry, context, claims, DEFAULT_CONFIG), Unknown)


def test_entries_outside_the_window_are_skipped():
    borrower, loan, repayments = _loan_book("100.00", on_date=TODAY - timedelta(days=31))
    context = build_context(loans=[loan], borrowers=[borrower], loan_transactions=repayments)
    entry = BankStatementEntryFactory.build(amount=Decimal("100.00"), description="BANK CREDIT 1234")

    assert isinstance(classify_entry(entry, context, config=DEFAULT_CONFIG), Unknown)


def test_repayments_summing_to_a_credit_form_a_group():
    borrower, loan, repayments = _loan_book("40.00", "35.50")
    context = build_context(loans=[loan], borrowers=[borrower], loan_transactions=repayments)
    entry = BankStatementEntryFactory.build(amount=Decimal("75.50"), description="BANK CREDIT 1234")

    candidate = classify_entry(entry, context, config=DEFAULT_CONFIG)

    assert isinstance(candidate, GroupMatch)
    assert candidate.obligation_ids == {tx.id for tx in repayments}
    assert candidate.percent == 92


class TestLearnedPatterns:
    DESCRIPTION = "CARD PAYMENT TO WWW.ACME-SOFTWARE.COM GB 07712345678 REF 123456"

    def test_score_blends_confidence_overlap_and_usage(self):
        pattern = ReconciliationPatternFactory.build(confidence_score=0.6, match_count=4)
        context = build_context(patterns=[pattern])
        entry = BankStatementEntryFactory.build(amount=Decimal("-30.00"), description=self.DESCRIPTION)

        candidate = classify_entry(entry, context, config=DEFAULT_CONFIG)

        # 0.6 * 0.6 + 1.0 * 0.25 + min(4 / 20, 0.15)
        assert isinstance(candidate, CreateProposal)
        assert candidate.confidence == pytest.approx(0.76)
        assert candidate.category == ReconciliationCategory.OPERATING_EXPENSE
        assert candidate.pattern_id == pattern.id

    def test_pattern_points_at_its_entity(self):
        loan_id = LoanFactory.build().id
        pattern = ReconciliationPatternFactory.build(
            match_type="loan_disbursement", loan_id=loan_id, confidence_score=0.9, match_count=10
        )
        context = build_context(patterns=[pattern])
        entry = BankStatementEntryFactory.build(amount=Decimal("-30.00"), description=self.DESCRIPTION)

        candidate = classify_entry(entry, context, config=DEFAULT_CONFIG)

        assert candidate.category == ReconciliationCategory.LOAN_DISBURSEMENT
        assert candidate.entity_kind == EntityKind.LOAN
        assert candidate.entity_id == loan_id

    def test_amount_bounds_exclude_pattern(self):
        pattern = ReconciliationPatternFactory.build(amount_max=Decimal("20.00"))
        context = build_context(patterns=[pattern])
        entry = BankStatementEntryFactory.build(amount=Decimal("-30.00"), description=self.DESCRIPTION)

        candidate = classify_entry(entry, context, config=DEFAULT_CONFIG)

        # Falls through to the "software" expense keyword
        assert isinstance(candidate, CreateProposal)
        assert candidate.pattern_id is None
        assert candidate.confidence == DEFAULT_CONFIG.expense_keyword_score

    def test_direction_must_agree(self):
        pattern = ReconciliationPatternFactory.build(transaction_type="CRDT")
        context = build_context(patterns=[pattern])
        entry = BankStatementEntryFactory.build(amount=Decimal("-30.00"), description=self.DESCRIPTION)

        assert classify_entry(entry, context, config=DEFAULT_CONFIG).pattern_id is None

    def test_legacy_investor_credit_pattern_proposes_funding(self):
        investor = InvestorFactory.build(name="Northgate Capital Partners")
        pattern = ReconciliationPatternFactory.build(
            description_pattern="northgate capital partners",
            transaction_type="CRDT",
            match_type="investor_credit",
            investor_id=investor.id,
            confidence_score=0.9,
            match_count=10,
        )
        context = build_context(patterns=[pattern])
        entry = BankStatementEntryFactory.build(
            amount=Decimal("5000.00"), description="FPS NORTHGATE CAPITAL PARTNERS"
        )

        candidate = classify_entry(entry, context, config=DEFAULT_CONFIG)

        # 0.9 * 0.6 + 1.0 * 0.25 + 0.15
        assert isinstance(candidate, CreateProposal)
        assert candidate.category == ReconciliationCategory.INVESTOR_FUNDING
        assert candidate.entity_kind == EntityKind.INVESTOR
        assert candidate.entity_id == investor.id
        assert candidate.confidence == pytest.approx(0.94)


@pytest.mark.parametrize(
    ("match_type", "category"),
    [
        ("investor_credit", ReconciliationCategory.INVESTOR_FUNDING),
        ("expense", ReconciliationCategory.OPERATING_EXPENSE),
        ("platform_fee", ReconciliationCategory.OPERATING_EXPENSE),
        ("investor_interest", ReconciliationCategory.INTEREST_WITHDRAWAL),
        ("loan_repayment", ReconciliationCategory.LOAN_REPAYMENT),
        ("something_else", ReconciliationCategory.UNKNOWN),
    ],
)
def test_stored_pattern_types_map_to_categories(match_type, category):
    assert ReconciliationCategory.from_pattern_type(match_type) == category


def test_same_day_exact_amount_scores_at_least_95():
    on_date = date(2024, 3, 1)
    borrower, loan, repayments = _loan_book("500.00", on_date=on_date)
    context = build_context(loans=[loan], borrowers=[borrower], loan_transactions=repayments)
    entry = BankStatementEntryFactory.build(
        amount=Decimal("500.00"), statement_date=on_date, description="BANK CREDIT 1234"
    )

    candidate = classify_entry(entry, context, config=DEFAULT_CONFIG)

    assert isinstance(candidate, SingleMatch)
    assert candidate.mode == MatchMode.MATCH
    assert candidate.percent >= 95


def test_office_supplies_debit_is_an_operating_expense():
    entry = BankStatementEntryFactory.build(
        amount=Decimal("-89.99"), description="OFFICE SUPPLIES LTD"
    )

    candidate = classify_entry(entry, build_context(), config=DEFAULT_CONFIG)

    assert isinstance(candidate, CreateProposal)
    assert candidate.mode == MatchMode.CREATE
    assert candidate.category == ReconciliationCategory.OPERATING_EXPENSE
    assert candidate.percent == 65


def test_expense_keyword_proposes_operating_expense():
    entry = BankStatementEntryFactory.build(
        amount=Decimal("-45.00"), description="DIRECT DEBIT BROADBAND PROVIDER"
    )

    candidate = classify_entry(entry, build_context(), config=DEFAULT_CONFIG)

    assert isinstance(candidate, CreateProposal)
    assert candidate.category == ReconciliationCategory.OPERATING_EXPENSE
    assert candidate.percent == 65


def test_expense_keyword_ignored_on_credits():
    entry = BankStatementEntryFactory.build(
        amount=Decimal("45.00"), description="BROADBAND REFUND"
    )

    assert isinstance(classify_entry(entry, build_context(), config=DEFAULT_CONFIG), Unknown)


def test_borrower_name_proposes_create_for_open_loan():
    borrower = BorrowerFactory.build(name="John Smith", business_name="Smith Builders")
    loan = LoanFactory.build(borrower_id=borrower.id)
    context = build_context(loans=[loan], borrowers=[borrower])
    entry = BankStatementEntryFactory.build(amount=Decimal("300.00"), description="SMITH BUILDERS")

    candidate = classify_entry(entry, context, config=DEFAULT_CONFIG)

    assert isinstance(candidate, CreateProposal)
    assert candidate.category == ReconciliationCategory.LOAN_REPAYMENT
    assert candidate.entity_kind == EntityKind.LOAN
    assert candidate.entity_id == loan.id


def test_investor_name_proposes_funding():
    investor = InvestorFactory.build(name="Jane Doe")
    context = build_context(investors=[investor])
    entry = BankStatementEntryFactory.build(amount=Decimal("250.00"), description="JANE DOE TRANSFER")

    candidate = classify_entry(entry, context, config=DEFAULT_CONFIG)

    assert candidate.category == ReconciliationCategory.INVESTOR_FUNDING
    assert candidate.entity_id == investor.id
    assert candidate.confidence == pytest.approx(0.8)


def test_fee_keyword_vetoes_name_match():
    investor = InvestorFactory.build(name="Jane Doe")
    context = build_context(investors=[investor])
    entry = BankStatementEntryFactory.build(amount=Decimal("250.00"), description="JANE DOE FEES")

    assert isinstance(classify_entry(entry, context, config=DEFAULT_CONFIG), Unknown)


def test_weak_evidence_falls_below_the_floor():
    entry = BankStatementEntryFactory.build(amount=Decimal("12.34"), description="XYZ")

    candidate = classify_entry(entry, build_context(), config=DEFAULT_CONFIG)

    assert isinstance(candidate, Unknown)
    assert candidate.mode is None
    assert candidate.confidence == 0.0


def test_floor_is_configurable():
    entry = BankStatementEntryFactory.build(
        amount=Decimal("-45.00"), description="DIRECT DEBIT BROADBAND PROVIDER"
    )
    strict = replace(DEFAULT_CONFIG, min_confidence=0.7)

    assert isinstance(classify_entry(entry, build_context(), config=strict), Unknown)
