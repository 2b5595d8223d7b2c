"""Learned reconciliation patterns."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import DateTime, Float, ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from reconciler.database import Base
from reconciler.models.base import TimestampMixin, UUIDMixin


class ReconciliationPattern(UUIDMixin, TimestampMixin, Base):
    """Vendor keywords previously confirmed for a reconciliation category.

    Created or strengthened after each confirmed create-mode reconciliation.
    """

    __tablename__ = "reconciliation_patterns"

    description_pattern: Mapped[str] = mapped_column(Text, nullable=False)
    amount_min: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    amount_max: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    transaction_type: Mapped[str | None] = mapped_column(String(4), nullable=True)
    bank_source: Mapped[str | None] = mapped_column(String(50), nullable=True)
    match_type: Mapped[str] = mapped_column(String(50), nullable=False)

    loan_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("loans.id"), nullable=True
    )
    investor_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("investors.id"), nullable=True
    )
    expense_type_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("expense_types.id"), nullable=True
    )

    default_capital_ratio: Mapped[Decimal] = mapped_column(Numeric(5, 4), default=Decimal("1"))
    default_interest_ratio: Mapped[Decimal] = mapped_column(Numeric(5, 4), default=Decimal("0"))
    default_fees_ratio: Mapped[Decimal] = mapped_column(Numeric(5, 4), default=Decimal("0"))

    match_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    # Confidence is a ranking signal, not money
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.6)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
