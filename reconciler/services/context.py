"""Immutable matching snapshot and the batch claim accumulator."""

from __future__ import annotations

import datetime as dt
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.models import (
    BankStatementEntry,
    Borrower,
    Expense,
    ExpenseType,
    InterestEntryType,
    Investor,
    InvestorInterestEntry,
    InvestorTransaction,
    InvestorTransactionType,
    Loan,
    LoanTransaction,
    LoanTransactionType,
    ReconciliationCategory,
    ReconciliationLink,
    ReconciliationPattern,
)


class ObligationKind(str, Enum):
    """Table an obligation was read from."""

    LOAN_TRANSACTION = "loan_transaction"
    INVESTOR_TRANSACTION = "investor_transaction"
    INTEREST_ENTRY = "interest_entry"
    EXPENSE = "expense"


_CATEGORY_BY_SUBTYPE = {
    (ObligationKind.LOAN_TRANSACTION, LoanTransactionType.REPAYMENT.value): (
        ReconciliationCategory.LOAN_REPAYMENT
    ),
    (ObligationKind.LOAN_TRANSACTION, LoanTransactionType.DISBURSEMENT.value): (
        ReconciliationCategory.LOAN_DISBURSEMENT
    ),
    (ObligationKind.INVESTOR_TRANSACTION, InvestorTransactionType.CAPITAL_IN.value): (
        ReconciliationCategory.INVESTOR_FUNDING
    ),
    (ObligationKind.INVESTOR_TRANSACTION, InvestorTransactionType.CAPITAL_OUT.value): (
        ReconciliationCategory.INVESTOR_WITHDRAWAL
    ),
    (ObligationKind.INTEREST_ENTRY, InterestEntryType.DEBIT.value): (
        ReconciliationCategory.INTEREST_WITHDRAWAL
    ),
}


@dataclass(frozen=True, kw_only=True)
class Obligation:
    """Read-only view of an outstanding record a bank entry can settle.

    ``amount`` is always positive. ``owner_id`` is the loan, investor or
    expense type the record belongs to; ``party_id`` is the borrower or
    investor behind it.
    """

    kind: ObligationKind
    id: UUID
    amount: Decimal
    date: dt.date | None
    owner_id: UUID | None = None
    party_id: UUID | None = None
    subtype: str | None = None
    description: str | None = None

    @property
    def is_credit(self) -> bool:
        """Direction of the bank movement that would settle this record."""
        return self.subtype in {
            LoanTransactionType.REPAYMENT.value,
            InvestorTransactionType.CAPITAL_IN.value,
        }

    @property
    def category(self) -> ReconciliationCategory:
        if self.kind == ObligationKind.EXPENSE:
            return ReconciliationCategory.OPERATING_EXPENSE
        return _CATEGORY_BY_SUBTYPE.get((self.kind, self.subtype), ReconciliationCategory.UNKNOWN)


def _enum_value(value: Enum | str | None) -> str | None:
    return value.value if isinstance(value, Enum) else value


@dataclass(frozen=True)
class ReconciliationContext:
    """Snapshot of everything the matchers read, taken once per batch."""

    obligations: tuple[Obligation, ...] = ()
    bank_entries: tuple[BankStatementEntry, ...] = ()
    loans: Mapping[UUID, Loan] = field(default_factory=dict)
    borrowers: Mapping[UUID, Borrower] = field(default_factory=dict)
    investors: Mapping[UUID, Investor] = field(default_factory=dict)
    expense_types: Mapping[UUID, ExpenseType] = field(default_factory=dict)
    patterns: tuple[ReconciliationPattern, ...] = ()
    reconciled_ids: frozenset[UUID] = frozenset()

    def is_available(self, obligation: Obligation, claims: ClaimSet | None = None) -> bool:
        if obligation.id in self.reconciled_ids:
            return False
        return claims is None or not claims.is_claimed(obligation.id)

    def open_obligations(
        self,
        claims: ClaimSet | None = None,
        *,
        kind: ObligationKind | None = None,
        subtype: str | None = None,
    ) -> Iterator[Obligation]:
        for obligation in self.obligations:
            if kind is not None and obligation.kind != kind:
                continue
            if subtype is not None and obligation.subtype != subtype:
                continue
            if self.is_available(obligation, claims):
                yield obligation

    def borrower_for_loan(self, loan_id: UUID | None) -> Borrower | None:
        loan = self.loans.get(loan_id) if loan_id else None
        return self.borrowers.get(loan.borrower_id) if loan else None

    def owner_names(self, obligation: Obligation) -> tuple[str | None, str | None]:
        """(name, business_name) of the borrower or investor behind an obligation."""
        if obligation.kind == ObligationKind.LOAN_TRANSACTION:
            party = self.borrowers.get(obligation.party_id) if obligation.party_id else None
        elif obligation.kind in {ObligationKind.INVESTOR_TRANSACTION, ObligationKind.INTEREST_ENTRY}:
            party = self.investors.get(obligation.party_id) if obligation.party_id else None
        else:
            party = None
        if party is None:
            return None, None
        return party.name, party.business_name

    def owner_label(self, obligation: Obligation) -> str:
        name, business_name = self.owner_names(obligation)
        if obligation.kind == ObligationKind.EXPENSE:
            return obligation.subtype or "Expense"
        return business_name or name or "Unknown"

    def loan_number(self, obligation: Obligation) -> str:
        loan = self.loans.get(obligation.owner_id) if obligation.owner_id else None
        return loan.loan_number if loan else "?"


@dataclass(frozen=True)
class ClaimSet:
    """Obligations and bank entries already promised to a suggestion in this batch."""

    obligation_ids: frozenset[UUID] = frozenset()
    entry_ids: frozenset[UUID] = frozenset()

    def is_claimed(self, obligation_id: UUID) -> bool:
        return obligation_id in self.obligation_ids

    def is_entry_claimed(self, entry_id: UUID) -> bool:
        return entry_id in self.entry_ids

    def claim_ids(
        self,
        obligation_ids: Iterable[UUID] = (),
        entry_ids: Iterable[UUID] = (),
    ) -> ClaimSet:
        return ClaimSet(
            obligation_ids=self.obligation_ids | frozenset(obligation_ids),
            entry_ids=self.entry_ids | frozenset(entry_ids),
        )

    def claim(self, candidate) -> ClaimSet:
        """Return a new set that also holds everything ``candidate`` would consume."""
        return self.claim_ids(candidate.obligation_ids, candidate.entry_ids)

    def conflicts(self, candidate) -> bool:
        return bool(
            self.obligation_ids & candidate.obligation_ids or self.entry_ids & candidate.entry_ids
        )


def build_context(
    *,
    loans: Iterable[Loan] = (),
    borrowers: Iterable[Borrower] = (),
    loan_transactions: Iterable[LoanTransaction] = (),
    investors: Iterable[Investor] = (),
    investor_transactions: Iterable[InvestorTransaction] = (),
    interest_entries: Iterable[InvestorInterestEntry] = (),
    expenses: Iterable[Expense] = (),
    expense_types: Iterable[ExpenseType] = (),
    patterns: Iterable[ReconciliationPattern] = (),
    links: Iterable[ReconciliationLink] = (),
    bank_entries: Iterable[BankStatementEntry] = (),
) -> ReconciliationContext:
    """Build a snapshot from already-loaded rows.

    Obligations are ordered loan transactions, investor transactions,
    interest debits, expenses; matchers rely on that order for tie-breaks.
    """
    loan_map = {loan.id: loan for loan in loans}
    obligations: list[Obligation] = []

    for tx in loan_transactions:
        if tx.is_deleted:
            continue
        loan = loan_map.get(tx.loan_id)
        obligations.append(
            Obligation(
                kind=ObligationKind.LOAN_TRANSACTION,
                id=tx.id,
                amount=abs(tx.amount),
                date=tx.date,
                owner_id=tx.loan_id,
                party_id=loan.borrower_id if loan else None,
                subtype=_enum_value(tx.type),
                description=tx.notes,
            )
        )

    for tx in investor_transactions:
        if _enum_value(tx.type) == InvestorTransactionType.INTEREST_PAYMENT.value:
            continue
        obligations.append(
            Obligation(
                kind=ObligationKind.INVESTOR_TRANSACTION,
                id=tx.id,
                amount=abs(tx.amount),
                date=tx.date,
                owner_id=tx.investor_id,
                party_id=tx.investor_id,
                subtype=_enum_value(tx.type),
                description=tx.description,
            )
        )

    # Interest credits are accruals and never appear on a bank statement
    for interest in interest_entries:
        if _enum_value(interest.type) != InterestEntryType.DEBIT.value:
            continue
        obligations.append(
            Obligation(
                kind=ObligationKind.INTEREST_ENTRY,
                id=interest.id,
                amount=abs(interest.amount),
                date=interest.date,
                owner_id=interest.investor_id,
                party_id=interest.investor_id,
                subtype=InterestEntryType.DEBIT.value,
                description=interest.description,
            )
        )

    for expense in expenses:
        obligations.append(
            Obligation(
                kind=ObligationKind.EXPENSE,
                id=expense.id,
                amount=abs(expense.amount),
                date=expense.date,
                owner_id=expense.expense_type_id,
                subtype=expense.type_name,
                description=expense.description,
            )
        )

    reconciled_ids = frozenset(
        link.obligation_id for link in links if link.obligation_id is not None
    )

    return ReconciliationContext(
        obligations=tuple(obligations),
        bank_entries=tuple(bank_entries),
        loans=MappingProxyType(loan_map),
        borrowers=MappingProxyType({b.id: b for b in borrowers}),
        investors=MappingProxyType({i.id: i for i in investors}),
        expense_types=MappingProxyType({t.id: t for t in expense_types}),
        patterns=tuple(patterns),
        reconciled_ids=reconciled_ids,
    )


async def load_context(db: AsyncSession) -> ReconciliationContext:
    """Read the current snapshot; unreconciled bank entries only."""

    async def _all(stmt):
        return (await db.execute(stmt)).scalars().all()

    return build_context(
        loans=await _all(select(Loan)),
        borrowers=await _all(select(Borrower)),
        loan_transactions=await _all(
            select(LoanTransaction)
            .where(LoanTransaction.is_deleted.is_(False))
            .order_by(LoanTransaction.date, LoanTransaction.created_at)
        ),
        investors=await _all(select(Investor)),
        investor_transactions=await _all(
            select(InvestorTransaction).order_by(
                InvestorTransaction.date, InvestorTransaction.created_at
            )
        ),
        interest_entries=await _all(
            select(InvestorInterestEntry).order_by(
                InvestorInterestEntry.date, InvestorInterestEntry.created_at
            )
        ),
        expenses=await _all(select(Expense).order_by(Expense.date, Expense.created_at)),
        expense_types=await _all(select(ExpenseType)),
        patterns=await _all(
            select(ReconciliationPattern).order_by(ReconciliationPattern.confidence_score.desc())
        ),
        links=await _all(select(ReconciliationLink)),
        bank_entries=await _all(
            select(BankStatementEntry)
            .where(
                BankStatementEntry.is_reconciled.is_(False),
                BankStatementEntry.is_unreconcilable.is_(False),
            )
            .order_by(BankStatementEntry.statement_date, BankStatementEntry.created_at)
        ),
    )
