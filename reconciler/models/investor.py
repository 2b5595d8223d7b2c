"""Investor, capital transaction and interest ledger models."""

import datetime as dt
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import Date, ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from reconciler.database import Base
from reconciler.models.base import TimestampMixin, UUIDMixin


class InvestorStatus(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"


class InterestAccrual(str, Enum):
    """How interest reaches the investor's interest ledger."""

    AUTOMATIC = "automatic"
    MANUAL = "manual"


class InvestorTransactionType(str, Enum):
    CAPITAL_IN = "capital_in"
    CAPITAL_OUT = "capital_out"
    INTEREST_PAYMENT = "interest_payment"


class InterestEntryType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class Investor(UUIDMixin, TimestampMixin, Base):
    """Investor with running capital balances guarded by ``version``."""

    __tablename__ = "investors"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    business_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[InvestorStatus] = mapped_column(
        SQLEnum(
            InvestorStatus,
            name="investor_status_enum",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        default=InvestorStatus.ACTIVE,
    )
    interest_accrual: Mapped[InterestAccrual] = mapped_column(
        SQLEnum(
            InterestAccrual,
            name="interest_accrual_enum",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        default=InterestAccrual.AUTOMATIC,
    )
    current_capital_balance: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), default=Decimal("0")
    )
    total_capital_contributed: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), default=Decimal("0")
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    @property
    def display_name(self) -> str:
        return self.business_name or self.name


class InvestorTransaction(UUIDMixin, TimestampMixin, Base):
    """Capital movement between an investor and the lender."""

    __tablename__ = "investor_transactions"

    investor_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("investors.id"), nullable=False, index=True
    )
    type: Mapped[InvestorTransactionType] = mapped_column(
        SQLEnum(
            InvestorTransactionType,
            name="investor_transaction_type_enum",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    reference: Mapped[str | None] = mapped_column(String(255), nullable=True)


class InvestorInterestEntry(UUIDMixin, TimestampMixin, Base):
    """Interest ledger line: credits accrue interest, debits pay it out."""

    __tablename__ = "investor_interest_entries"

    investor_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("investors.id"), nullable=False, index=True
    )
    type: Mapped[InterestEntryType] = mapped_column(
        SQLEnum(
            InterestEntryType,
            name="interest_entry_type_enum",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
