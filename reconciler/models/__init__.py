"""SQLAlchemy models package."""

from reconciler.models.bank import BankStatementEntry, TransactionType
from reconciler.models.expense import Expense, ExpenseType
from reconciler.models.investor import (
    InterestAccrual,
    InterestEntryType,
    Investor,
    InvestorInterestEntry,
    InvestorStatus,
    InvestorTransaction,
    InvestorTransactionType,
)
from reconciler.models.lending import (
    OPEN_LOAN_STATUSES,
    Borrower,
    Loan,
    LoanStatus,
    LoanTransaction,
    LoanTransactionType,
)
from reconciler.models.pattern import ReconciliationPattern
from reconciler.models.reconciliation import ReconciliationCategory, ReconciliationLink

__all__ = [
    "OPEN_LOAN_STATUSES",
    "BankStatementEntry",
    "Borrower",
    "Expense",
    "ExpenseType",
    "InterestAccrual",
    "InterestEntryType",
    "Investor",
    "InvestorInterestEntry",
    "InvestorStatus",
    "InvestorTransaction",
    "InvestorTransactionType",
    "Loan",
    "LoanStatus",
    "LoanTransaction",
    "LoanTransactionType",
    "ReconciliationCategory",
    "ReconciliationLink",
    "ReconciliationPattern",
    "TransactionType",
]
