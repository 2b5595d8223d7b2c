"""Operating expense models."""

import datetime as dt
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Date, ForeignKey, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from reconciler.database import Base
from reconciler.models.base import TimestampMixin, UUIDMixin


class ExpenseType(UUIDMixin, TimestampMixin, Base):
    __tablename__ = "expense_types"

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)


class Expense(UUIDMixin, TimestampMixin, Base):
    """Expense booked by the business, optionally recharged to a loan."""

    __tablename__ = "expenses"

    expense_type_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("expense_types.id"), nullable=True, index=True
    )
    type_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    loan_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("loans.id"), nullable=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
