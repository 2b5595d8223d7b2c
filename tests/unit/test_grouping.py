"""Tests for grouped matching in both directions."""

from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import pytest

from reconciler.models import (
    InterestEntryType,
    InvestorTransactionType,
    LoanTransactionType,
    ReconciliationCategory,
)
from reconciler.services.candidates import MatchMode
from reconciler.services.context import ClaimSet, build_context
from reconciler.services.errors import AmbiguousGroupError
from reconciler.services.grouping import (
    find_entry_subset,
    find_grouped_entries,
    find_investor_withdrawal_group,
    find_obligation_group,
    group_entries_match_obligation,
)
from reconciler.services.scoring import DEFAULT_CONFIG
from tests.factories import (
    TODAY,
    BankStatementEntryFactory,
    BorrowerFactory,
    InterestEntryFactory,
    InvestorFactory,
    InvestorTransactionFactory,
    LoanFactory,
    LoanTransactionFactory,
)


def _repayments(loan, *amounts, on_date=TODAY):
    return [
        LoanTransactionFactory.build(loan_id=loan.id, amount=Decimal(amount), date=on_date)
        for amount in amounts
    ]


class TestObligationGroup:
    def test_same_day_repayments_for_one_borrower(self):
        borrower = BorrowerFactory.build()
        loan = LoanFactory.build(borrower_id=borrower.id)
        repayments = _repayments(loan, "40.00", "35.50")
        context = build_context(loans=[loan], borrowers=[borrower], loan_transactions=repayments)
        entry = BankStatementEntryFactory.build(amount=Decimal("75.50"))

        group = find_obligation_group(entry, context)

        assert group is not None
        assert group.confidence >= 0.90
        assert group.group_key == f"borrower:{borrower.id}"
        assert group.category == ReconciliationCategory.LOAN_REPAYMENT
        assert len(group.obligations) == 2

    def test_dates_within_window_score_lower(self):
        borrower = BorrowerFactory.build()
        loan = LoanFactory.build(borrower_id=borrower.id)
        repayments = _repayments(loan, "40.00", "35.50", on_date=TODAY - timedelta(days=2))
        context = build_context(loans=[loan], borrowers=[borrower], loan_transactions=repayments)
        entry = BankStatementEntryFactory.build(amount=Decimal("75.50"))

        assert find_obligation_group(entry, context).confidence == 0.85

    def test_single_repayment_is_not_a_group(self):
        borrower = BorrowerFactory.build()
        loan = LoanFactory.build(borrower_id=borrower.id)
        repayments = _repayments(loan, "75.50")
        context = build_context(loans=[loan], borrowers=[borrower], loan_transactions=repayments)
        entry = BankStatementEntryFactory.build(amount=Decimal("75.50"))

        assert find_obligation_group(entry, context) is None

    def test_debits_never_group(self):
        borrower = BorrowerFactory.build()
        loan = LoanFactory.build(borrower_id=borrower.id)
        repayments = _repayments(loan, "40.00", "35.50")
        context = build_context(loans=[loan], borrowers=[borrower], loan_transactions=repayments)
        entry = BankStatementEntryFactory.build(amount=Decimal("-75.50"))

        assert find_obligation_group(entry, context) is None

    def test_claimed_repayment_breaks_the_group(self):
        borrower = BorrowerFactory.build()
        loan = LoanFactory.build(borrower_id=borrower.id)
        repayments = _repayments(loan, "40.00", "35.50")
        context = build_context(loans=[loan], borrowers=[borrower], loan_transactions=repayments)
        entry = BankStatementEntryFactory.build(amount=Decimal("75.50"))
        claims = ClaimSet().claim_ids([repayments[0].id])

        assert find_obligation_group(entry, context, claims) is None

    def test_shared_email_groups_distinct_borrowers(self):
        first = BorrowerFactory.build(email="family@example.com")
        second = BorrowerFactory.build(email="Family@Example.com ")
        loans = [LoanFactory.build(borrower_id=b.id) for b in (first, second)]
        repayments = _repayments(loans[0], "50.00") + _repayments(loans[1], "50.00")
        context = build_context(
            loans=loans, borrowers=[first, second], loan_transactions=repayments
        )
        entry = BankStatementEntryFactory.build(amount=Decimal("100.00"))

        group = find_obligation_group(entry, context)

        assert group is not None
        assert group.group_key == "email:family@example.com"
        assert group.confidence == 0.90

        no_email = replace(DEFAULT_CONFIG, group_by_email=False)
        assert find_obligation_group(entry, context, config=no_email) is None

    def test_strict_mode_reports_tied_partitions(self):
        borrowers = [BorrowerFactory.build() for _ in range(2)]
        loans = [LoanFactory.build(borrower_id=b.id) for b in borrowers]
        repayments = _repayments(loans[0], "60.00", "40.00") + _repayments(
            loans[1], "70.00", "30.00"
        )
        context = build_context(loans=loans, borrowers=borrowers, loan_transactions=repayments)
        entry = BankStatementEntryFactory.build(amount=Decimal("100.00"))

        assert find_obligation_group(entry, context).group_key == f"borrower:{borrowers[0].id}"
        with pytest.raises(AmbiguousGroupError):
            find_obligation_group(entry, context, strict=True)


class TestEntrySubset:
    def test_smallest_subset_including_target(self):
        target = BankStatementEntryFactory.build(amount=Decimal("60.00"))
        sibling = BankStatementEntryFactory.build(
            amount=Decimal("40.00"), statement_date=TODAY + timedelta(days=1)
        )
        unrelated = BankStatementEntryFactory.build(amount=Decimal("500.00"))

        subset = find_entry_subset(target, [target, sibling, unrelated], Decimal("100.00"))

        assert subset == (target, sibling)

    def test_target_alone_is_a_direct_match(self):
        target = BankStatementEntryFactory.build(amount=Decimal("100.00"))
        sibling = BankStatementEntryFactory.build(amount=Decimal("40.00"))

        assert find_entry_subset(target, [sibling], Decimal("100.00")) is None

    def test_opposite_direction_and_reconciled_siblings_excluded(self):
        target = BankStatementEntryFactory.build(amount=Decimal("60.00"))
        debit = BankStatementEntryFactory.build(amount=Decimal("-40.00"))
        done = BankStatementEntryFactory.build(amount=Decimal("40.00"), is_reconciled=True)

        assert find_entry_subset(target, [debit, done], Decimal("100.00")) is None

    def test_group_entries_match_obligation_needs_two_entries(self):
        borrower = BorrowerFactory.build()
        loan = LoanFactory.build(borrower_id=borrower.id)
        context = build_context(loan_transactions=_repayments(loan, "100.00"))
        obligation = context.obligations[0]
        halves = [BankStatementEntryFactory.build(amount=Decimal("50.00")) for _ in range(2)]

        assert group_entries_match_obligation(halves, obligation)
        assert not group_entries_match_obligation(halves[:1], obligation)


class TestGroupedEntries:
    def test_split_disbursement(self):
        borrower = BorrowerFactory.build(name="John Smith")
        loan = LoanFactory.build(borrower_id=borrower.id)
        disbursement = LoanTransactionFactory.build(
            loan_id=loan.id, type=LoanTransactionType.DISBURSEMENT, amount=Decimal("1000.00")
        )
        first = BankStatementEntryFactory.build(
            amount=Decimal("-600.00"), description="LOAN ADVANCE SMITH"
        )
        second = BankStatementEntryFactory.build(
            amount=Decimal("-400.00"), description="LOAN ADVANCE SMITH"
        )
        context = build_context(
            loans=[loan],
            borrowers=[borrower],
            loan_transactions=[disbursement],
            bank_entries=[first, second],
        )

        match = find_grouped_entries(first, context)

        assert match is not None
        assert match.mode == MatchMode.GROUPED_DISBURSEMENT
        assert match.grouped_entry_ids == (first.id, second.id)
        assert match.obligation.id == disbursement.id
        assert match.confidence == pytest.approx(0.95)

    def test_unrelated_descriptions_without_name_rejected(self):
        borrower = BorrowerFactory.build(name="John Smith")
        loan = LoanFactory.build(borrower_id=borrower.id)
        disbursement = LoanTransactionFactory.build(
            loan_id=loan.id, type=LoanTransactionType.DISBURSEMENT, amount=Decimal("1000.00")
        )
        first = BankStatementEntryFactory.build(amount=Decimal("-600.00"), description="ALPHA ONE")
        second = BankStatementEntryFactory.build(amount=Decimal("-400.00"), description="BRAVO TWO")
        context = build_context(
            loans=[loan],
            borrowers=[borrower],
            loan_transactions=[disbursement],
            bank_entries=[first, second],
        )

        assert find_grouped_entries(first, context) is None


class TestInvestorWithdrawalGroup:
    def test_capital_and_interest_paid_together(self):
        investor = InvestorFactory.build(name="Alan Turing")
        capital = InvestorTransactionFactory.build(
            investor_id=investor.id,
            type=InvestorTransactionType.CAPITAL_OUT,
            amount=Decimal("900.00"),
        )
        interest = InterestEntryFactory.build(investor_id=investor.id, amount=Decimal("100.00"))
        context = build_context(
            investors=[investor], investor_transactions=[capital], interest_entries=[interest]
        )
        entry = BankStatementEntryFactory.build(
            amount=Decimal("-1000.00"), description="TRANSFER TURING"
        )

        group = find_investor_withdrawal_group(entry, context)

        assert group is not None
        assert group.category == ReconciliationCategory.INVESTOR_WITHDRAWAL
        assert group.obligation_ids == {capital.id, interest.id}
        assert group.confidence == pytest.approx(0.95)

    def test_several_interest_debits(self):
        investor = InvestorFactory.build()
        debits = [
            InterestEntryFactory.build(investor_id=investor.id, amount=Decimal(amount))
            for amount in ("60.00", "40.00")
        ]
        context = build_context(investors=[investor], interest_entries=debits)
        entry = BankStatementEntryFactory.build(amount=Decimal("-100.00"), description="PAYMENT OUT")

        group = find_investor_withdrawal_group(entry, context)

        assert group.category == ReconciliationCategory.INTEREST_WITHDRAWAL
        assert group.confidence == 0.92

    def test_interest_credits_are_never_obligations(self):
        investor = InvestorFactory.build()
        credits = [
            InterestEntryFactory.build(
                investor_id=investor.id, type=InterestEntryType.CREDIT, amount=Decimal("50.00")
            )
            for _ in range(2)
        ]
        context = build_context(investors=[investor], interest_entries=credits)
        entry = BankStatementEntryFactory.build(amount=Decimal("-100.00"), description="PAYMENT OUT")

        assert context.obligations == ()
        assert find_investor_withdrawal_group(entry, context) is None
