"""Borrower, loan and loan transaction models."""

import datetime as dt
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import Boolean, Date, ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from reconciler.database import Base
from reconciler.models.base import TimestampMixin, UUIDMixin


class LoanStatus(str, Enum):
    """Loan lifecycle status."""

    PENDING = "Pending"
    APPROVED = "Approved"
    LIVE = "Live"
    ACTIVE = "Active"
    CLOSED = "Closed"


# Loans that still receive repayments or disbursements
OPEN_LOAN_STATUSES = frozenset({LoanStatus.LIVE, LoanStatus.ACTIVE})


class LoanTransactionType(str, Enum):
    """Loan ledger movement type."""

    REPAYMENT = "Repayment"
    DISBURSEMENT = "Disbursement"
    ADJUSTMENT = "Adjustment"


class Borrower(UUIDMixin, TimestampMixin, Base):
    """Borrower contact record."""

    __tablename__ = "borrowers"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    business_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="Active")

    @property
    def display_name(self) -> str:
        return self.business_name or self.name


class Loan(UUIDMixin, TimestampMixin, Base):
    """Loan with cumulative paid totals.

    ``version`` guards the paid totals against concurrent reconciliations.
    """

    __tablename__ = "loans"

    borrower_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("borrowers.id"), nullable=False, index=True
    )
    loan_number: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[LoanStatus] = mapped_column(
        SQLEnum(
            LoanStatus,
            name="loan_status_enum",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        default=LoanStatus.LIVE,
    )
    principal_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"))
    principal_paid: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"))
    interest_paid: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"))
    fees_paid: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"))
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    borrower: Mapped[Borrower] = relationship("Borrower", lazy="raise")

    __mapper_args__ = {"version_id_col": version}


class LoanTransaction(UUIDMixin, TimestampMixin, Base):
    """Repayment or disbursement booked against a loan."""

    __tablename__ = "loan_transactions"

    loan_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("loans.id"), nullable=False, index=True
    )
    type: Mapped[LoanTransactionType] = mapped_column(
        SQLEnum(
            LoanTransactionType,
            name="loan_transaction_type_enum",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    principal_applied: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"))
    interest_applied: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"))
    fees_applied: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"))
    reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
