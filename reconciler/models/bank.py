"""Bank statement entry model."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, Date, DateTime, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from reconciler.database import Base
from reconciler.models.base import TimestampMixin, UUIDMixin

if TYPE_CHECKING:
    from reconciler.models.reconciliation import ReconciliationLink


class TransactionType(str, Enum):
    """Bank-side direction codes as delivered by statement imports."""

    CREDIT = "CRDT"
    DEBIT = "DBIT"


class BankStatementEntry(UUIDMixin, TimestampMixin, Base):
    """One ledger line from an imported bank statement.

    Amount is signed: positive for money in, negative for money out. Only the
    reconciliation executor mutates the reconciled/unreconcilable fields.
    """

    __tablename__ = "bank_statement_entries"

    bank_source: Mapped[str | None] = mapped_column(String(50), nullable=True)
    statement_date: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)
    transaction_type: Mapped[str | None] = mapped_column(String(4), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    balance: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    external_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)

    is_reconciled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reconciled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reconciled_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    is_unreconcilable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    unreconcilable_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    unreconcilable_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    links: Mapped[list["ReconciliationLink"]] = relationship(
        "ReconciliationLink",
        back_populates="bank_entry",
        lazy="raise",
    )

    @property
    def is_credit(self) -> bool:
        return self.amount > 0

    @property
    def absolute_amount(self) -> Decimal:
        return abs(self.amount)
