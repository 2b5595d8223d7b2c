"""Learn vendor patterns from confirmed create reconciliations."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.logger import get_logger
from reconciler.models import (
    BankStatementEntry,
    ReconciliationCategory,
    ReconciliationPattern,
    TransactionType,
)
from reconciler.services.similarity import extract_vendor_keywords, string_similarity

logger = get_logger(__name__)

PATTERN_SIMILARITY_THRESHOLD = 0.7
AMOUNT_RANGE_FACTOR = Decimal("0.2")
INITIAL_CONFIDENCE = 0.6
CONFIDENCE_STEP = 0.1

_CENTS = Decimal("0.01")
_RATIO = Decimal("0.0001")


def _split_ratios(
    split: tuple[Decimal, Decimal, Decimal] | None,
) -> tuple[Decimal, Decimal, Decimal] | None:
    if split is None:
        return None
    total = sum(split, Decimal("0"))
    if total <= 0:
        return None
    capital, interest, fees = (
        (part / total).quantize(_RATIO, rounding=ROUND_HALF_UP) for part in split
    )
    return capital, interest, fees


async def learn_pattern(
    db: AsyncSession,
    entry: BankStatementEntry,
    category: ReconciliationCategory,
    *,
    loan_id: UUID | None = None,
    investor_id: UUID | None = None,
    expense_type_id: UUID | None = None,
    split: tuple[Decimal, Decimal, Decimal] | None = None,
) -> ReconciliationPattern | None:
    """Create or strengthen the pattern for ``entry``'s vendor keywords.

    ``split`` is (capital, interest, fees); its ratios become the pattern's
    default split. Entries with no usable vendor keywords teach nothing.
    """
    keywords = extract_vendor_keywords(entry.description)
    if not keywords:
        return None
    pattern_text = " ".join(keywords)
    ratios = _split_ratios(split)
    now = datetime.now(UTC)

    existing = (
        (
            await db.execute(
                select(ReconciliationPattern)
                .where(ReconciliationPattern.match_type == category.value)
                .order_by(ReconciliationPattern.created_at)
            )
        )
        .scalars()
        .all()
    )
    for pattern in existing:
        if string_similarity(pattern.description_pattern, pattern_text) <= PATTERN_SIMILARITY_THRESHOLD:
            continue
        pattern.match_count = (pattern.match_count or 0) + 1
        pattern.confidence_score = min(1.0, (pattern.confidence_score or 0) + CONFIDENCE_STEP)
        pattern.last_used_at = now
        if ratios is not None:
            (
                pattern.default_capital_ratio,
                pattern.default_interest_ratio,
                pattern.default_fees_ratio,
            ) = ratios
        await db.flush()
        logger.info(
            "Reconciliation pattern strengthened",
            pattern_id=str(pattern.id),
            match_type=category.value,
            match_count=pattern.match_count,
            confidence_score=pattern.confidence_score,
        )
        return pattern

    amount = entry.absolute_amount
    pattern = ReconciliationPattern(
        description_pattern=pattern_text,
        amount_min=(amount * (1 - AMOUNT_RANGE_FACTOR)).quantize(_CENTS),
        amount_max=(amount * (1 + AMOUNT_RANGE_FACTOR)).quantize(_CENTS),
        transaction_type=(
            TransactionType.CREDIT.value if entry.is_credit else TransactionType.DEBIT.value
        ),
        bank_source=entry.bank_source,
        match_type=category.value,
        loan_id=loan_id,
        investor_id=investor_id,
        expense_type_id=expense_type_id,
        match_count=1,
        confidence_score=INITIAL_CONFIDENCE,
        last_used_at=now,
    )
    if ratios is not None:
        (
            pattern.default_capital_ratio,
            pattern.default_interest_ratio,
            pattern.default_fees_ratio,
        ) = ratios
    db.add(pattern)
    await db.flush()
    logger.info(
        "Reconciliation pattern learned",
        pattern_id=str(pattern.id),
        match_type=category.value,
        description_pattern=pattern_text,
    )
    return pattern
