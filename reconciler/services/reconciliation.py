"""Reconciliation executor.

The only code that writes reconciliation links or mutates balances. Every
operation runs inside one savepoint: validation happens before the first
write, and any failure rolls the whole reconciliation back. Committing the
outer transaction is the caller's job.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy import Select, delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from reconciler.config import settings
from reconciler.logger import async_log_timing, get_logger, log_exception
from reconciler.models import (
    BankStatementEntry,
    Expense,
    ExpenseType,
    InterestAccrual,
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
)
from reconciler.services.candidates import (
    CreateProposal,
    EntityKind,
    GroupedEntriesMatch,
    GroupMatch,
    MatchCandidate,
    MatchMode,
    SingleMatch,
    Unknown,
)
from reconciler.services.context import Obligation, ObligationKind
from reconciler.services.errors import (
    AlreadyReconciledError,
    BalanceMismatchError,
    ConcurrentModificationError,
    MissingMatchDataError,
    NoMatchFoundError,
    PartialCreateFailureError,
    ReconciliationError,
)
from reconciler.services.patterns import learn_pattern
from reconciler.services.suggestions import Suggestion

logger = get_logger(__name__)

BALANCE_TOLERANCE = Decimal("0.01")
ZERO = Decimal("0")

_MODELS: dict[ObligationKind, type] = {
    ObligationKind.LOAN_TRANSACTION: LoanTransaction,
    ObligationKind.INVESTOR_TRANSACTION: InvestorTransaction,
    ObligationKind.INTEREST_ENTRY: InvestorInterestEntry,
    ObligationKind.EXPENSE: Expense,
}

_LINK_COLUMNS: dict[ObligationKind, str] = {
    ObligationKind.LOAN_TRANSACTION: "loan_transaction_id",
    ObligationKind.INVESTOR_TRANSACTION: "investor_transaction_id",
    ObligationKind.INTEREST_ENTRY: "interest_id",
    ObligationKind.EXPENSE: "expense_id",
}


# =============================================================================
# Value types
# =============================================================================


@dataclass(frozen=True)
class ObligationRef:
    kind: ObligationKind
    id: UUID

    @classmethod
    def of(cls, obligation: Obligation) -> ObligationRef:
        return cls(obligation.kind, obligation.id)


@dataclass(frozen=True)
class RepaymentSplit:
    principal: Decimal
    interest: Decimal = ZERO
    fees: Decimal = ZERO

    @property
    def parts(self) -> tuple[Decimal, Decimal, Decimal]:
        return self.principal, self.interest, self.fees

    @property
    def total(self) -> Decimal:
        return self.principal + self.interest + self.fees


@dataclass(frozen=True)
class WithdrawalSplit:
    capital: Decimal
    interest: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return self.capital + self.interest


class ManualRelationship(str, Enum):
    ONE_TO_ONE = "one_to_one"
    MANY_TO_ONE = "many_to_one"
    ONE_TO_MANY = "one_to_many"
    NET_RECEIPT = "net_receipt"


@dataclass
class ReconciliationResult:
    operation: str
    entry_ids: list[UUID]
    link_ids: list[UUID]
    created_ids: list[UUID] = field(default_factory=list)


@dataclass
class UnreconcileResult:
    entry_id: UUID
    links_deleted: int = 0
    records_deleted: int = 0


@dataclass
class BulkReconcileResult:
    reconciled: list[UUID] = field(default_factory=list)
    failed: dict[UUID, str] = field(default_factory=dict)
    skipped: int = 0


class ScheduleRegenerator(Protocol):
    """Rebuilds a loan's repayment schedule after its capital changed."""

    async def regenerate(self, loan_id: UUID, reason: str) -> None: ...


class LoggingScheduleRegenerator:
    """Default regenerator: records the request for the scheduling service."""

    async def regenerate(self, loan_id: UUID, reason: str) -> None:
        logger.info("Schedule regeneration requested", loan_id=str(loan_id), reason=reason)


default_regenerator = LoggingScheduleRegenerator()


# =============================================================================
# Guards
# =============================================================================


def validate_amounts_balance(
    bank_total: Decimal,
    obligation_total: Decimal,
    label: str,
    tolerance: Decimal = BALANCE_TOLERANCE,
    *,
    operation: str | None = None,
    **context: Any,
) -> None:
    """Raise BalanceMismatchError unless both sides agree within ``tolerance``.

    Never rounds or adjusts either side.
    """
    if abs(bank_total - obligation_total) > tolerance:
        raise BalanceMismatchError(
            bank_total, obligation_total, label=label, operation=operation, **context
        )


@asynccontextmanager
async def _atomic(
    db: AsyncSession,
    operation: str,
    *,
    creates_records: bool = False,
    **context: Any,
) -> AsyncIterator[None]:
    try:
        async with db.begin_nested():
            yield
    except StaleDataError as exc:
        log_exception(logger, exc, "Concurrent balance update detected", operation=operation, **context)
        raise ConcurrentModificationError(
            "Balance was changed by a concurrent reconciliation", operation=operation, **context
        ) from exc
    except ReconciliationError as exc:
        log_exception(
            logger,
            exc,
            "Reconciliation rejected",
            level="warning",
            include_traceback=False,
            operation=operation,
            **context,
        )
        raise
    except SQLAlchemyError as exc:
        log_exception(logger, exc, "Reconciliation storage error", operation=operation, **context)
        if creates_records:
            raise PartialCreateFailureError(
                f"{operation} failed while writing records; nothing was saved",
                operation=operation,
                **context,
            ) from exc
        raise


async def _require(db: AsyncSession, model: type, record_id: UUID | None, operation: str) -> Any:
    label = model.__name__
    if record_id is None:
        raise MissingMatchDataError(f"{label} is required", operation=operation)
    record = await db.get(model, record_id)
    if record is None:
        raise MissingMatchDataError(
            f"{label} {record_id} not found", operation=operation, record_id=str(record_id)
        )
    return record


async def _load_entries(
    db: AsyncSession, entry_ids: Sequence[UUID], operation: str
) -> list[BankStatementEntry]:
    """Re-read bank entries inside the transaction and reject reconciled ones."""
    if not entry_ids:
        raise MissingMatchDataError("At least one bank entry is required", operation=operation)
    if len(set(entry_ids)) != len(entry_ids):
        raise MissingMatchDataError("Bank entries must not repeat", operation=operation)

    rows = (
        (
            await db.execute(
                select(BankStatementEntry)
                .where(BankStatementEntry.id.in_(entry_ids))
                .execution_options(populate_existing=True)
            )
        )
        .scalars()
        .all()
    )
    by_id = {row.id: row for row in rows}
    for entry_id in entry_ids:
        entry = by_id.get(entry_id)
        if entry is None:
            raise MissingMatchDataError(
                f"Bank entry {entry_id} not found",
                operation=operation,
                bank_entry_id=str(entry_id),
            )
        if entry.is_reconciled:
            raise AlreadyReconciledError(
                f"Bank entry {entry_id} is already reconciled",
                operation=operation,
                bank_entry_id=str(entry_id),
            )
    return [by_id[entry_id] for entry_id in entry_ids]


def lock_obligation_query(ref: ObligationRef) -> Select:
    """Select an obligation row for update.

    Capacity checks against the same obligation serialize on this lock until
    the holder commits, so two entries cannot both see it unpaid.
    """
    model = _MODELS[ref.kind]
    return (
        select(model)
        .where(model.id == ref.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )


async def _load_obligation(db: AsyncSession, ref: ObligationRef, operation: str) -> Any:
    record = (await db.execute(lock_obligation_query(ref))).scalar_one_or_none()
    if record is None or getattr(record, "is_deleted", False):
        raise MissingMatchDataError(
            f"{ref.kind.value} {ref.id} not found",
            operation=operation,
            obligation_id=str(ref.id),
        )
    return record


async def _guard_capacity(
    db: AsyncSession,
    ref: ObligationRef,
    claimed: Decimal,
    obligation_amount: Decimal,
    operation: str,
) -> None:
    """Reject links that would push an obligation past its own amount."""
    column = getattr(ReconciliationLink, _LINK_COLUMNS[ref.kind])
    linked = (
        await db.execute(
            select(func.coalesce(func.sum(ReconciliationLink.amount), 0)).where(column == ref.id)
        )
    ).scalar_one()
    linked = Decimal(str(linked))
    if linked + claimed > obligation_amount + BALANCE_TOLERANCE:
        raise AlreadyReconciledError(
            f"{ref.kind.value} {ref.id} is already reconciled",
            operation=operation,
            obligation_id=str(ref.id),
            linked_total=str(linked),
        )


async def _mark_reconciled(
    db: AsyncSession, entries: Sequence[BankStatementEntry], operation: str
) -> None:
    # Conditional update: a concurrent reconciliation of the same entry matches zero rows
    now = datetime.now(UTC)
    for entry in entries:
        result = await db.execute(
            update(BankStatementEntry)
            .where(
                BankStatementEntry.id == entry.id,
                BankStatementEntry.is_reconciled.is_(False),
            )
            .values(
                is_reconciled=True,
                reconciled_at=now,
                reconciled_by=settings.reconciliation_user,
            )
            .execution_options(synchronize_session="evaluate")
        )
        if result.rowcount != 1:
            raise AlreadyReconciledError(
                f"Bank entry {entry.id} was reconciled concurrently",
                operation=operation,
                bank_entry_id=str(entry.id),
            )


def _add_link(
    db: AsyncSession,
    entry_id: UUID,
    ref: ObligationRef,
    amount: Decimal,
    category: ReconciliationCategory,
    *,
    was_created: bool = False,
    notes: str | None = None,
) -> ReconciliationLink:
    link = ReconciliationLink(
        bank_statement_id=entry_id,
        amount=amount,
        reconciliation_type=category.value,
        notes=notes,
        was_created=was_created,
        **{_LINK_COLUMNS[ref.kind]: ref.id},
    )
    db.add(link)
    return link


def _category_of(ref: ObligationRef, record) -> ReconciliationCategory:
    if ref.kind == ObligationKind.EXPENSE:
        return ReconciliationCategory.OPERATING_EXPENSE
    if ref.kind == ObligationKind.INTEREST_ENTRY:
        return ReconciliationCategory.INTEREST_WITHDRAWAL
    return {
        LoanTransactionType.REPAYMENT: ReconciliationCategory.LOAN_REPAYMENT,
        LoanTransactionType.DISBURSEMENT: ReconciliationCategory.LOAN_DISBURSEMENT,
        InvestorTransactionType.CAPITAL_IN: ReconciliationCategory.INVESTOR_FUNDING,
        InvestorTransactionType.CAPITAL_OUT: ReconciliationCategory.INVESTOR_WITHDRAWAL,
        InvestorTransactionType.INTEREST_PAYMENT: ReconciliationCategory.INTEREST_WITHDRAWAL,
    }.get(record.type, ReconciliationCategory.UNKNOWN)


def _accrual_description(entry_id: UUID) -> str:
    return f"Interest accrual for bank entry {entry_id}"


def _log_reconciled(result: ReconciliationResult, **context: Any) -> None:
    logger.info(
        "Bank entries reconciled",
        operation=result.operation,
        bank_entry_ids=[str(i) for i in result.entry_ids],
        link_count=len(result.link_ids),
        created_ids=[str(i) for i in result.created_ids],
        **context,
    )


# =============================================================================
# Link to existing obligations
# =============================================================================


async def _link_entry_to_obligations(
    db: AsyncSession,
    entry_id: UUID,
    refs: Sequence[ObligationRef],
    *,
    operation: str,
    label: str,
    notes: str | None = None,
) -> ReconciliationResult:
    """One bank entry settles one or more obligations; each link carries the obligation amount."""
    obligation_ids = [str(ref.id) for ref in refs]
    async with _atomic(db, operation, bank_entry_ids=[str(entry_id)], obligation_ids=obligation_ids):
        [entry] = await _load_entries(db, [entry_id], operation)
        if len(set(refs)) != len(refs):
            raise MissingMatchDataError("Obligations must not repeat", operation=operation)
        # Lock in id order so overlapping requests cannot deadlock
        locked = {
            ref: await _load_obligation(db, ref, operation)
            for ref in sorted(refs, key=lambda r: str(r.id))
        }
        records = [locked[ref] for ref in refs]
        amounts = [abs(record.amount) for record in records]
        validate_amounts_balance(
            entry.absolute_amount, sum(amounts, ZERO), label, operation=operation
        )
        for ref, amount in zip(refs, amounts, strict=True):
            await _guard_capacity(db, ref, amount, amount, operation)

        links = [
            _add_link(db, entry.id, ref, amount, _category_of(ref, record), notes=notes)
            for ref, record, amount in zip(refs, records, amounts, strict=True)
        ]
        await _mark_reconciled(db, [entry], operation)
        await db.flush()

    result = ReconciliationResult(
        operation=operation, entry_ids=[entry_id], link_ids=[link.id for link in links]
    )
    _log_reconciled(result, obligation_ids=obligation_ids, amount=str(sum(amounts, ZERO)))
    return result


async def _link_entries_to_obligation(
    db: AsyncSession,
    entry_ids: Sequence[UUID],
    ref: ObligationRef,
    *,
    operation: str,
    label: str,
    signed: bool = False,
    accepts: Callable[[Any], bool] | None = None,
    notes: str | None = None,
) -> ReconciliationResult:
    """Several bank entries settle one obligation; each link carries its entry's amount.

    With ``signed`` the entries net against each other (a deposit less a
    bank fee) and links keep their sign.
    """
    context = {"bank_entry_ids": [str(i) for i in entry_ids], "obligation_id": str(ref.id)}
    async with _atomic(db, operation, **context):
        entries = await _load_entries(db, entry_ids, operation)
        record = await _load_obligation(db, ref, operation)
        if accepts is not None and not accepts(record):
            raise MissingMatchDataError(
                f"{ref.kind.value} {ref.id} cannot be settled by {operation}",
                operation=operation,
                **context,
            )
        amounts = [entry.amount if signed else entry.absolute_amount for entry in entries]
        bank_total = abs(sum(amounts, ZERO))
        obligation_amount = abs(record.amount)
        validate_amounts_balance(bank_total, obligation_amount, label, operation=operation)
        await _guard_capacity(db, ref, bank_total, obligation_amount, operation)

        category = _category_of(ref, record)
        links = [
            _add_link(db, entry.id, ref, amount, category, notes=notes)
            for entry, amount in zip(entries, amounts, strict=True)
        ]
        await _mark_reconciled(db, entries, operation)
        await db.flush()

    result = ReconciliationResult(
        operation=operation, entry_ids=list(entry_ids), link_ids=[link.id for link in links]
    )
    _log_reconciled(result, obligation_ids=[str(ref.id)], amount=str(bank_total))
    return result


async def reconcile_single_match(
    db: AsyncSession, entry_id: UUID, ref: ObligationRef, *, notes: str | None = None
) -> ReconciliationResult:
    return await _link_entry_to_obligations(
        db, entry_id, [ref], operation="reconcile_single_match", label="single match", notes=notes
    )


async def reconcile_match_group(
    db: AsyncSession,
    entry_id: UUID,
    refs: Sequence[ObligationRef],
    *,
    notes: str | None = None,
) -> ReconciliationResult:
    """One bank entry settles several obligations, interest debits included."""
    if len(refs) < 2:
        raise MissingMatchDataError(
            "A match group needs at least two obligations", operation="reconcile_match_group"
        )
    return await _link_entry_to_obligations(
        db, entry_id, refs, operation="reconcile_match_group", label="match group", notes=notes
    )


def _loan_transaction_of(tx_type: LoanTransactionType) -> Callable[[Any], bool]:
    return lambda record: record.type == tx_type


async def _reconcile_grouped(
    db: AsyncSession,
    entry_ids: Sequence[UUID],
    ref: ObligationRef,
    *,
    operation: str,
    accepts: Callable[[Any], bool],
    notes: str | None,
) -> ReconciliationResult:
    if len(entry_ids) < 2:
        raise MissingMatchDataError(
            "Grouped reconciliation needs at least two bank entries", operation=operation
        )
    return await _link_entries_to_obligation(
        db,
        entry_ids,
        ref,
        operation=operation,
        label="grouped entries",
        accepts=accepts,
        notes=notes,
    )


async def reconcile_grouped_disbursement(
    db: AsyncSession,
    entry_ids: Sequence[UUID],
    loan_transaction_id: UUID,
    *,
    notes: str | None = None,
) -> ReconciliationResult:
    return await _reconcile_grouped(
        db,
        entry_ids,
        ObligationRef(ObligationKind.LOAN_TRANSACTION, loan_transaction_id),
        operation="reconcile_grouped_disbursement",
        accepts=_loan_transaction_of(LoanTransactionType.DISBURSEMENT),
        notes=notes,
    )


async def reconcile_grouped_repayment(
    db: AsyncSession,
    entry_ids: Sequence[UUID],
    loan_transaction_id: UUID,
    *,
    notes: str | None = None,
) -> ReconciliationResult:
    return await _reconcile_grouped(
        db,
        entry_ids,
        ObligationRef(ObligationKind.LOAN_TRANSACTION, loan_transaction_id),
        operation="reconcile_grouped_repayment",
        accepts=_loan_transaction_of(LoanTransactionType.REPAYMENT),
        notes=notes,
    )


async def reconcile_grouped_investor(
    db: AsyncSession,
    entry_ids: Sequence[UUID],
    investor_transaction_id: UUID,
    *,
    notes: str | None = None,
) -> ReconciliationResult:
    return await _reconcile_grouped(
        db,
        entry_ids,
        ObligationRef(ObligationKind.INVESTOR_TRANSACTION, investor_transaction_id),
        operation="reconcile_grouped_investor",
        accepts=lambda record: record.type
        in {InvestorTransactionType.CAPITAL_IN, InvestorTransactionType.CAPITAL_OUT},
        notes=notes,
    )


async def execute_manual_match(
    db: AsyncSession,
    relationship: ManualRelationship | str,
    entry_ids: Sequence[UUID],
    refs: Sequence[ObligationRef],
    *,
    notes: str | None = None,
) -> ReconciliationResult:
    """Operator-chosen match in one of four shapes.

    Only net receipts compare the signed entry sum; every other shape
    compares absolute amounts.
    """
    relationship = ManualRelationship(relationship)
    operation = f"manual_{relationship.value}"
    shapes = {
        ManualRelationship.ONE_TO_ONE: len(entry_ids) == 1 and len(refs) == 1,
        ManualRelationship.ONE_TO_MANY: len(entry_ids) == 1 and len(refs) >= 2,
        ManualRelationship.MANY_TO_ONE: len(entry_ids) >= 2 and len(refs) == 1,
        ManualRelationship.NET_RECEIPT: len(entry_ids) >= 2 and len(refs) == 1,
    }
    if not shapes[relationship]:
        raise MissingMatchDataError(
            f"{relationship.value} cannot link {len(entry_ids)} entries to {len(refs)} records",
            operation=operation,
        )

    label = relationship.value.replace("_", "-")
    if relationship in {ManualRelationship.ONE_TO_ONE, ManualRelationship.ONE_TO_MANY}:
        return await _link_entry_to_obligations(
            db, entry_ids[0], refs, operation=operation, label=label, notes=notes
        )
    return await _link_entries_to_obligation(
        db,
        entry_ids,
        refs[0],
        operation=operation,
        label=label,
        signed=relationship == ManualRelationship.NET_RECEIPT,
        notes=notes,
    )


# =============================================================================
# Create and link
# =============================================================================


async def create_loan_repayment(
    db: AsyncSession,
    entry_id: UUID,
    loan_id: UUID | None,
    split: RepaymentSplit | None = None,
    *,
    regenerator: ScheduleRegenerator | None = None,
    notes: str | None = None,
) -> ReconciliationResult:
    """Book a repayment for the entry and add it to the loan's paid totals."""
    operation = "create_loan_repayment"
    async with _atomic(
        db, operation, creates_records=True, bank_entry_id=str(entry_id), loan_id=str(loan_id)
    ):
        [entry] = await _load_entries(db, [entry_id], operation)
        amount = entry.absolute_amount
        split = split or RepaymentSplit(principal=amount)
        if any(part < 0 for part in split.parts):
            raise MissingMatchDataError("Split components must not be negative", operation=operation)
        validate_amounts_balance(amount, split.total, "repayment split", operation=operation)
        loan = await _require(db, Loan, loan_id, operation)

        tx = LoanTransaction(
            loan_id=loan.id,
            type=LoanTransactionType.REPAYMENT,
            amount=amount,
            date=entry.statement_date,
            principal_applied=split.principal,
            interest_applied=split.interest,
            fees_applied=split.fees,
            reference=entry.external_reference,
            notes=notes or entry.description,
        )
        db.add(tx)
        loan.principal_paid = (loan.principal_paid or ZERO) + split.principal
        loan.interest_paid = (loan.interest_paid or ZERO) + split.interest
        loan.fees_paid = (loan.fees_paid or ZERO) + split.fees
        await db.flush()

        link = _add_link(
            db,
            entry.id,
            ObligationRef(ObligationKind.LOAN_TRANSACTION, tx.id),
            amount,
            ReconciliationCategory.LOAN_REPAYMENT,
            was_created=True,
            notes=notes,
        )
        await _mark_reconciled(db, [entry], operation)
        await db.flush()

    if split.principal > 0:
        await (regenerator or default_regenerator).regenerate(loan.id, "repayment reconciled")
    result = ReconciliationResult(operation, [entry_id], [link.id], [tx.id])
    _log_reconciled(result, loan_id=str(loan.id), amount=str(amount))
    return result


async def create_loan_disbursement(
    db: AsyncSession,
    entry_id: UUID,
    loan_id: UUID | None,
    *,
    regenerator: ScheduleRegenerator | None = None,
    notes: str | None = None,
) -> ReconciliationResult:
    operation = "create_loan_disbursement"
    async with _atomic(
        db, operation, creates_records=True, bank_entry_id=str(entry_id), loan_id=str(loan_id)
    ):
        [entry] = await _load_entries(db, [entry_id], operation)
        amount = entry.absolute_amount
        loan = await _require(db, Loan, loan_id, operation)

        tx = LoanTransaction(
            loan_id=loan.id,
            type=LoanTransactionType.DISBURSEMENT,
            amount=amount,
            date=entry.statement_date,
            principal_applied=amount,
            reference=entry.external_reference,
            notes=notes or entry.description,
        )
        db.add(tx)
        await db.flush()

        link = _add_link(
            db,
            entry.id,
            ObligationRef(ObligationKind.LOAN_TRANSACTION, tx.id),
            amount,
            ReconciliationCategory.LOAN_DISBURSEMENT,
            was_created=True,
            notes=notes,
        )
        await _mark_reconciled(db, [entry], operation)
        await db.flush()

    # Outstanding capital changed
    await (regenerator or default_regenerator).regenerate(loan.id, "disbursement reconciled")
    result = ReconciliationResult(operation, [entry_id], [link.id], [tx.id])
    _log_reconciled(result, loan_id=str(loan.id), amount=str(amount))
    return result


async def create_investor_credit(
    db: AsyncSession,
    entry_id: UUID,
    investor_id: UUID | None,
    *,
    notes: str | None = None,
) -> ReconciliationResult:
    operation = "create_investor_credit"
    async with _atomic(
        db,
        operation,
        creates_records=True,
        bank_entry_id=str(entry_id),
        investor_id=str(investor_id),
    ):
        [entry] = await _load_entries(db, [entry_id], operation)
        amount = entry.absolute_amount
        investor = await _require(db, Investor, investor_id, operation)

        tx = InvestorTransaction(
            investor_id=investor.id,
            type=InvestorTransactionType.CAPITAL_IN,
            amount=amount,
            date=entry.statement_date,
            description=notes or entry.description,
            reference=entry.external_reference,
        )
        db.add(tx)
        investor.current_capital_balance = (investor.current_capital_balance or ZERO) + amount
        investor.total_capital_contributed = (investor.total_capital_contributed or ZERO) + amount
        await db.flush()

        link = _add_link(
            db,
            entry.id,
            ObligationRef(ObligationKind.INVESTOR_TRANSACTION, tx.id),
            amount,
            ReconciliationCategory.INVESTOR_FUNDING,
            was_created=True,
            notes=notes,
        )
        await _mark_reconciled(db, [entry], operation)
        await db.flush()

    result = ReconciliationResult(operation, [entry_id], [link.id], [tx.id])
    _log_reconciled(result, investor_id=str(investor.id), amount=str(amount))
    return result


async def create_investor_withdrawal(
    db: AsyncSession,
    entry_id: UUID,
    investor_id: UUID | None,
    split: WithdrawalSplit | None = None,
    *,
    notes: str | None = None,
) -> ReconciliationResult:
    """Book a capital-out and/or interest debit, one link per record.

    Investors on manual accrual get the matching interest credit first so
    the interest ledger never goes negative from a withdrawal alone.
    """
    operation = "create_investor_withdrawal"
    links: list[ReconciliationLink] = []
    created: list[UUID] = []
    async with _atomic(
        db,
        operation,
        creates_records=True,
        bank_entry_id=str(entry_id),
        investor_id=str(investor_id),
    ):
        [entry] = await _load_entries(db, [entry_id], operation)
        amount = entry.absolute_amount
        split = split or WithdrawalSplit(capital=amount)
        if split.capital < 0 or split.interest < 0 or split.total == 0:
            raise MissingMatchDataError(
                "Withdrawal split needs a positive capital or interest part", operation=operation
            )
        validate_amounts_balance(amount, split.total, "withdrawal split", operation=operation)
        investor = await _require(db, Investor, investor_id, operation)

        if split.capital > 0:
            tx = InvestorTransaction(
                investor_id=investor.id,
                type=InvestorTransactionType.CAPITAL_OUT,
                amount=split.capital,
                date=entry.statement_date,
                description=notes or entry.description,
                reference=entry.external_reference,
            )
            db.add(tx)
            investor.current_capital_balance = (
                investor.current_capital_balance or ZERO
            ) - split.capital
            await db.flush()
            created.append(tx.id)
            links.append(
                _add_link(
                    db,
                    entry.id,
                    ObligationRef(ObligationKind.INVESTOR_TRANSACTION, tx.id),
                    split.capital,
                    ReconciliationCategory.INVESTOR_WITHDRAWAL,
                    was_created=True,
                    notes=notes,
                )
            )

        if split.interest > 0:
            if investor.interest_accrual == InterestAccrual.MANUAL:
                db.add(
                    InvestorInterestEntry(
                        investor_id=investor.id,
                        type=InterestEntryType.CREDIT,
                        amount=split.interest,
                        date=entry.statement_date,
                        description=_accrual_description(entry.id),
                    )
                )
            debit = InvestorInterestEntry(
                investor_id=investor.id,
                type=InterestEntryType.DEBIT,
                amount=split.interest,
                date=entry.statement_date,
                description=notes or entry.description,
                reference=entry.external_reference,
            )
            db.add(debit)
            await db.flush()
            created.append(debit.id)
            links.append(
                _add_link(
                    db,
                    entry.id,
                    ObligationRef(ObligationKind.INTEREST_ENTRY, debit.id),
                    split.interest,
                    ReconciliationCategory.INTEREST_WITHDRAWAL,
                    was_created=True,
                    notes=notes,
                )
            )

        await _mark_reconciled(db, [entry], operation)
        await db.flush()

    result = ReconciliationResult(operation, [entry_id], [link.id for link in links], created)
    _log_reconciled(
        result,
        investor_id=str(investor.id),
        capital=str(split.capital),
        interest=str(split.interest),
    )
    return result


async def create_expense(
    db: AsyncSession,
    entry_id: UUID,
    expense_type_id: UUID | None,
    *,
    loan_id: UUID | None = None,
    notes: str | None = None,
) -> ReconciliationResult:
    operation = "create_expense"
    async with _atomic(
        db,
        operation,
        creates_records=True,
        bank_entry_id=str(entry_id),
        expense_type_id=str(expense_type_id),
    ):
        [entry] = await _load_entries(db, [entry_id], operation)
        amount = entry.absolute_amount
        expense_type = await _require(db, ExpenseType, expense_type_id, operation)

        expense = Expense(
            expense_type_id=expense_type.id,
            type_name=expense_type.name,
            loan_id=loan_id,
            amount=amount,
            date=entry.statement_date,
            description=notes or entry.description,
        )
        db.add(expense)
        await db.flush()

        link = _add_link(
            db,
            entry.id,
            ObligationRef(ObligationKind.EXPENSE, expense.id),
            amount,
            ReconciliationCategory.OPERATING_EXPENSE,
            was_created=True,
            notes=notes,
        )
        await _mark_reconciled(db, [entry], operation)
        await db.flush()

    result = ReconciliationResult(operation, [entry_id], [link.id], [expense.id])
    _log_reconciled(result, expense_type=expense_type.name, amount=str(amount))
    return result


# =============================================================================
# Reverse
# =============================================================================


async def _delete_created_record(
    db: AsyncSession, link: ReconciliationLink, regenerate: list[UUID]
) -> int:
    """Delete the record a reconciliation created and undo its balance effect."""
    if link.loan_transaction_id:
        tx = await db.get(LoanTransaction, link.loan_transaction_id)
        if tx is None:
            return 0
        loan = await db.get(Loan, tx.loan_id)
        if loan is not None:
            if tx.type == LoanTransactionType.REPAYMENT:
                loan.principal_paid = (loan.principal_paid or ZERO) - (tx.principal_applied or ZERO)
                loan.interest_paid = (loan.interest_paid or ZERO) - (tx.interest_applied or ZERO)
                loan.fees_paid = (loan.fees_paid or ZERO) - (tx.fees_applied or ZERO)
            if tx.type == LoanTransactionType.DISBURSEMENT or (tx.principal_applied or ZERO) > 0:
                regenerate.append(loan.id)
        await db.delete(tx)
        return 1

    if link.investor_transaction_id:
        tx = await db.get(InvestorTransaction, link.investor_transaction_id)
        if tx is None:
            return 0
        investor = await db.get(Investor, tx.investor_id)
        if investor is not None:
            if tx.type == InvestorTransactionType.CAPITAL_IN:
                investor.current_capital_balance = (investor.current_capital_balance or ZERO) - tx.amount
                investor.total_capital_contributed = (
                    investor.total_capital_contributed or ZERO
                ) - tx.amount
            elif tx.type == InvestorTransactionType.CAPITAL_OUT:
                investor.current_capital_balance = (investor.current_capital_balance or ZERO) + tx.amount
        await db.delete(tx)
        return 1

    if link.interest_id:
        debit = await db.get(InvestorInterestEntry, link.interest_id)
        if debit is None:
            return 0
        accruals = await db.execute(
            delete(InvestorInterestEntry)
            .where(
                InvestorInterestEntry.investor_id == debit.investor_id,
                InvestorInterestEntry.type == InterestEntryType.CREDIT,
                InvestorInterestEntry.description == _accrual_description(link.bank_statement_id),
            )
            .execution_options(synchronize_session="evaluate")
        )
        await db.delete(debit)
        return 1 + (accruals.rowcount or 0)

    if link.expense_id:
        expense = await db.get(Expense, link.expense_id)
        if expense is None:
            return 0
        await db.delete(expense)
        return 1

    return 0


async def unreconcile(
    db: AsyncSession,
    entry_id: UUID,
    *,
    delete_created: bool = True,
    regenerator: ScheduleRegenerator | None = None,
) -> UnreconcileResult:
    """Remove every link of an entry and reset it; a no-op when it has none."""
    operation = "unreconcile"
    result = UnreconcileResult(entry_id=entry_id)
    regenerate: list[UUID] = []

    async with _atomic(db, operation, bank_entry_id=str(entry_id)):
        entry = await db.get(BankStatementEntry, entry_id, populate_existing=True)
        if entry is None:
            raise MissingMatchDataError(
                f"Bank entry {entry_id} not found", operation=operation, bank_entry_id=str(entry_id)
            )
        links = (
            (
                await db.execute(
                    select(ReconciliationLink).where(
                        ReconciliationLink.bank_statement_id == entry_id
                    )
                )
            )
            .scalars()
            .all()
        )
        if links:
            for link in links:
                await db.delete(link)
            await db.flush()
            if delete_created:
                for link in links:
                    if link.was_created:
                        result.records_deleted += await _delete_created_record(db, link, regenerate)
            entry.is_reconciled = False
            entry.reconciled_at = None
            entry.reconciled_by = None
            await db.flush()
            result.links_deleted = len(links)

    if not result.links_deleted:
        logger.info("Nothing to unreconcile", bank_entry_id=str(entry_id))
        return result

    for loan_id in regenerate:
        await (regenerator or default_regenerator).regenerate(loan_id, "reconciliation reversed")
    logger.info(
        "Bank entry unreconciled",
        bank_entry_id=str(entry_id),
        links_deleted=result.links_deleted,
        records_deleted=result.records_deleted,
    )
    return result


# =============================================================================
# Unreconcilable entries
# =============================================================================


async def mark_unreconcilable(
    db: AsyncSession, entry_id: UUID, reason: str
) -> BankStatementEntry:
    """Park an entry that will never match, such as a bank correction pair."""
    operation = "mark_unreconcilable"
    async with _atomic(db, operation, bank_entry_id=str(entry_id)):
        if not reason or not reason.strip():
            raise MissingMatchDataError("A reason is required", operation=operation)
        entry = await _require(db, BankStatementEntry, entry_id, operation)
        if entry.is_reconciled:
            raise AlreadyReconciledError(
                f"Bank entry {entry_id} is already reconciled",
                operation=operation,
                bank_entry_id=str(entry_id),
            )
        entry.is_unreconcilable = True
        entry.unreconcilable_reason = reason.strip()
        entry.unreconcilable_at = datetime.now(UTC)
        await db.flush()
    logger.info("Bank entry marked unreconcilable", bank_entry_id=str(entry_id), reason=reason)
    return entry


async def clear_unreconcilable(db: AsyncSession, entry_id: UUID) -> BankStatementEntry:
    operation = "clear_unreconcilable"
    async with _atomic(db, operation, bank_entry_id=str(entry_id)):
        entry = await _require(db, BankStatementEntry, entry_id, operation)
        entry.is_unreconcilable = False
        entry.unreconcilable_reason = None
        entry.unreconcilable_at = None
        await db.flush()
    return entry


# =============================================================================
# Dispatch
# =============================================================================


async def _execute_create(
    db: AsyncSession,
    candidate: CreateProposal,
    *,
    split: RepaymentSplit | None,
    withdrawal_split: WithdrawalSplit | None,
    expense_type_id: UUID | None,
    regenerator: ScheduleRegenerator | None,
    notes: str | None,
    learn: bool,
) -> ReconciliationResult:
    category = candidate.category
    entry = await _require(db, BankStatementEntry, candidate.entry_id, "execute_reconciliation")

    def entity(kind: EntityKind) -> UUID | None:
        return candidate.entity_id if candidate.entity_kind == kind else None

    loan_id = entity(EntityKind.LOAN)
    investor_id = entity(EntityKind.INVESTOR)
    expense_type_id = expense_type_id or entity(EntityKind.EXPENSE_TYPE)
    learned_split: tuple[Decimal, Decimal, Decimal] | None = None

    if category == ReconciliationCategory.LOAN_REPAYMENT:
        result = await create_loan_repayment(
            db, entry.id, loan_id, split, regenerator=regenerator, notes=notes
        )
        learned_split = split.parts if split else None
    elif category == ReconciliationCategory.LOAN_DISBURSEMENT:
        result = await create_loan_disbursement(
            db, entry.id, loan_id, regenerator=regenerator, notes=notes
        )
    elif category == ReconciliationCategory.INVESTOR_FUNDING:
        result = await create_investor_credit(db, entry.id, investor_id, notes=notes)
    elif category in {
        ReconciliationCategory.INVESTOR_WITHDRAWAL,
        ReconciliationCategory.INTEREST_WITHDRAWAL,
    }:
        if withdrawal_split is None and category == ReconciliationCategory.INTEREST_WITHDRAWAL:
            withdrawal_split = WithdrawalSplit(capital=ZERO, interest=entry.absolute_amount)
        result = await create_investor_withdrawal(
            db, entry.id, investor_id, withdrawal_split, notes=notes
        )
    elif category == ReconciliationCategory.OPERATING_EXPENSE:
        result = await create_expense(db, entry.id, expense_type_id, loan_id=loan_id, notes=notes)
    else:
        raise MissingMatchDataError(
            f"Cannot create a record for category {category.value}",
            operation="execute_reconciliation",
            bank_entry_id=str(entry.id),
        )

    if learn:
        async with db.begin_nested():
            await learn_pattern(
                db,
                entry,
                category,
                loan_id=loan_id,
                investor_id=investor_id,
                expense_type_id=expense_type_id,
                split=learned_split,
            )
    return result


async def execute_reconciliation(
    db: AsyncSession,
    candidate: MatchCandidate,
    *,
    split: RepaymentSplit | None = None,
    withdrawal_split: WithdrawalSplit | None = None,
    expense_type_id: UUID | None = None,
    regenerator: ScheduleRegenerator | None = None,
    notes: str | None = None,
    learn: bool = True,
) -> ReconciliationResult:
    """Execute a chosen candidate with the operation its mode calls for."""
    if isinstance(candidate, Unknown):
        raise NoMatchFoundError(
            "Nothing to reconcile: the entry has no match",
            operation="execute_reconciliation",
            bank_entry_id=str(candidate.entry_id),
        )
    if isinstance(candidate, SingleMatch):
        return await reconcile_single_match(
            db, candidate.entry_id, ObligationRef.of(candidate.obligation), notes=notes
        )
    if isinstance(candidate, GroupMatch):
        return await reconcile_match_group(
            db,
            candidate.entry_id,
            [ObligationRef.of(o) for o in candidate.obligations],
            notes=notes,
        )
    if isinstance(candidate, GroupedEntriesMatch):
        grouped = {
            MatchMode.GROUPED_DISBURSEMENT: reconcile_grouped_disbursement,
            MatchMode.GROUPED_REPAYMENT: reconcile_grouped_repayment,
            MatchMode.GROUPED_INVESTOR: reconcile_grouped_investor,
        }[candidate.mode]
        return await grouped(db, candidate.grouped_entry_ids, candidate.obligation.id, notes=notes)
    return await _execute_create(
        db,
        candidate,
        split=split,
        withdrawal_split=withdrawal_split,
        expense_type_id=expense_type_id,
        regenerator=regenerator,
        notes=notes,
        learn=learn,
    )


async def bulk_reconcile(
    db: AsyncSession,
    suggestions: Sequence[Suggestion],
    *,
    regenerator: ScheduleRegenerator | None = None,
) -> BulkReconcileResult:
    """Reconcile every bulk-eligible suggestion, each in its own savepoint.

    A rejected suggestion is logged and reported; the others still go ahead.
    """
    outcome = BulkReconcileResult()
    async with async_log_timing("bulk_reconcile", logger=logger, suggestions=len(suggestions)) as timing:
        for suggestion in suggestions:
            if not suggestion.bulk_eligible:
                outcome.skipped += 1
                continue
            try:
                await execute_reconciliation(db, suggestion.candidate, regenerator=regenerator)
            except ReconciliationError as exc:
                log_exception(
                    logger,
                    exc,
                    "Bulk reconciliation item failed",
                    level="warning",
                    include_traceback=False,
                    bank_entry_id=str(suggestion.entry.id),
                    operation=exc.operation,
                )
                outcome.failed[suggestion.entry.id] = str(exc)
                continue
            outcome.reconciled.append(suggestion.entry.id)
        timing["reconciled"] = len(outcome.reconciled)
        timing["failed"] = len(outcome.failed)
        timing["skipped"] = outcome.skipped
    return outcome
