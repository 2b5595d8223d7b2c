"""Reconciliation link model."""

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from reconciler.database import Base

if TYPE_CHECKING:
    from reconciler.models.bank import BankStatementEntry


class ReconciliationCategory(str, Enum):
    """Semantic category of a bank entry."""

    LOAN_REPAYMENT = "loan_repayment"
    LOAN_DISBURSEMENT = "loan_disbursement"
    INVESTOR_FUNDING = "investor_funding"
    INVESTOR_WITHDRAWAL = "investor_withdrawal"
    INTEREST_WITHDRAWAL = "interest_withdrawal"
    OPERATING_EXPENSE = "operating_expense"
    UNKNOWN = "unknown"

    @classmethod
    def from_pattern_type(cls, match_type: str) -> "ReconciliationCategory":
        """Map a stored pattern match_type, including legacy aliases."""
        aliases = {
            "investor_credit": cls.INVESTOR_FUNDING,
            "expense": cls.OPERATING_EXPENSE,
            "platform_fee": cls.OPERATING_EXPENSE,
            "investor_interest": cls.INTEREST_WITHDRAWAL,
        }
        if match_type in aliases:
            return aliases[match_type]
        try:
            return cls(match_type)
        except ValueError:
            return cls.UNKNOWN


class ReconciliationLink(Base):
    """Link between a bank entry and at most one obligation record."""

    __tablename__ = "reconciliation_entries"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    bank_statement_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("bank_statement_entries.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    loan_transaction_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("loan_transactions.id"), nullable=True, index=True
    )
    investor_transaction_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("investor_transactions.id"), nullable=True, index=True
    )
    expense_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("expenses.id"), nullable=True, index=True
    )
    interest_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("investor_interest_entries.id"),
        nullable=True,
        index=True,
    )
    # Signed only for net-receipt matches; positive everywhere else
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    reconciliation_type: Mapped[str] = mapped_column(String(50), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    was_created: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
    )

    bank_entry: Mapped["BankStatementEntry"] = relationship(
        "BankStatementEntry",
        back_populates="links",
        lazy="raise",
    )

    @property
    def obligation_id(self) -> UUID | None:
        return (
            self.loan_transaction_id
            or self.investor_transaction_id
            or self.expense_id
            or self.interest_id
        )
