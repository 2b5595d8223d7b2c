"""Test data factories using factory_boy pattern.

Usage:
    # Transient object for pure matching tests
    entry = BankStatementEntryFactory.build(amount=Decimal("75.50"))

    # Create and flush to DB (transaction not committed)
    loan = await LoanFactory.create_async(db, borrower_id=borrower.id)
"""

from datetime import UTC, date, datetime
from decimal import Decimal
from typing import TypeVar
from uuid import uuid4

import factory
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.models import (
    BankStatementEntry,
    Borrower,
    Expense,
    ExpenseType,
    InterestAccrual,
    InterestEntryType,
    Investor,
    InvestorInterestEntry,
    InvestorStatus,
    InvestorTransaction,
    InvestorTransactionType,
    Loan,
    LoanStatus,
    LoanTransaction,
    LoanTransactionType,
    ReconciliationPattern,
)

T = TypeVar("T")

TODAY = date(2024, 3, 15)


class AsyncFactoryMixin:
    """Mixin providing async database persistence for factories."""

    @classmethod
    async def create_async(cls, db: AsyncSession, **kwargs) -> T:
        """Create and flush to database (transaction not committed)."""
        instance = cls.build(**kwargs)
        db.add(instance)
        await db.flush()
        await db.refresh(instance)
        return instance


class TimestampedFactory(factory.Factory):
    id = factory.LazyFunction(uuid4)
    created_at = factory.LazyFunction(lambda: datetime.now(UTC))
    updated_at = factory.LazyFunction(lambda: datetime.now(UTC))


class BankStatementEntryFactory(TimestampedFactory, AsyncFactoryMixin):
    class Meta:
        model = BankStatementEntry

    bank_source = "starling"
    statement_date = TODAY
    description = factory.Sequence(lambda n: f"Bank entry {n}")
    amount = Decimal("100.00")
    transaction_type = factory.LazyAttribute(lambda o: "CRDT" if o.amount > 0 else "DBIT")
    external_reference = None
    is_reconciled = False
    reconciled_at = None
    reconciled_by = None
    is_unreconcilable = False
    unreconcilable_reason = None
    unreconcilable_at = None


class BorrowerFactory(TimestampedFactory, AsyncFactoryMixin):
    class Meta:
        model = Borrower

    name = factory.Sequence(lambda n: f"Borrower {n}")
    business_name = None
    email = factory.Sequence(lambda n: f"borrower{n}@example.com")
    status = "Active"


class LoanFactory(TimestampedFactory, AsyncFactoryMixin):
    class Meta:
        model = Loan

    borrower_id = factory.LazyFunction(uuid4)
    loan_number = factory.Sequence(lambda n: f"LN-{n:04d}")
    status = LoanStatus.LIVE
    principal_amount = Decimal("10000.00")
    principal_paid = Decimal("0")
    interest_paid = Decimal("0")
    fees_paid = Decimal("0")


class LoanTransactionFactory(TimestampedFactory, AsyncFactoryMixin):
    class Meta:
        model = LoanTransaction

    loan_id = factory.LazyFunction(uuid4)
    type = LoanTransactionType.REPAYMENT
    amount = Decimal("100.00")
    date = TODAY
    principal_applied = Decimal("0")
    interest_applied = Decimal("0")
    fees_applied = Decimal("0")
    reference = None
    notes = None
    is_deleted = False


class InvestorFactory(TimestampedFactory, AsyncFactoryMixin):
    class Meta:
        model = Investor

    name = factory.Sequence(lambda n: f"Investor {n}")
    business_name = None
    email = factory.Sequence(lambda n: f"investor{n}@example.com")
    status = InvestorStatus.ACTIVE
    interest_accrual = InterestAccrual.AUTOMATIC
    current_capital_balance = Decimal("0")
    total_capital_contributed = Decimal("0")


class InvestorTransactionFactory(TimestampedFactory, AsyncFactoryMixin):
    class Meta:
        model = InvestorTransaction

    investor_id = factory.LazyFunction(uuid4)
    type = InvestorTransactionType.CAPITAL_IN
    amount = Decimal("1000.00")
    date = TODAY
    description = None
    reference = None


class InterestEntryFactory(TimestampedFactory, AsyncFactoryMixin):
    class Meta:
        model = InvestorInterestEntry

    investor_id = factory.LazyFunction(uuid4)
    type = InterestEntryType.DEBIT
    amount = Decimal("50.00")
    date = TODAY
    description = None
    reference = None


class ExpenseTypeFactory(TimestampedFactory, AsyncFactoryMixin):
    class Meta:
        model = ExpenseType

    name = factory.Sequence(lambda n: f"Expense type {n}")
    category = "operating"
    description = None


class ExpenseFactory(TimestampedFactory, AsyncFactoryMixin):
    class Meta:
        model = Expense

    expense_type_id = None
    type_name = None
    loan_id = None
    amount = Decimal("25.00")
    date = TODAY
    description = None


class ReconciliationPatternFactory(TimestampedFactory, AsyncFactoryMixin):
    class Meta:
        model = ReconciliationPattern

    description_pattern = "acme software"
    amount_min = None
    amount_max = None
    transaction_type = "DBIT"
    bank_source = None
    match_type = "operating_expense"
    loan_id = None
    investor_id = None
    expense_type_id = None
    default_capital_ratio = Decimal("1")
    default_interest_ratio = Decimal("0")
    default_fees_ratio = Decimal("0")
    match_count = 1
    confidence_score = 0.6
    last_used_at = None
