"""Two-phase pot pipeline: bucket every entry, then match within each bucket."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from uuid import UUID

from reconciler.logger import get_logger
from reconciler.models import (
    BankStatementEntry,
    InvestorStatus,
    InvestorTransactionType,
    LoanStatus,
    LoanTransactionType,
)
from reconciler.services.candidates import EntityKind
from reconciler.services.context import (
    ClaimSet,
    Obligation,
    ObligationKind,
    ReconciliationContext,
)
from reconciler.services.grouping import find_obligation_group
from reconciler.services.scoring import (
    ReconciliationConfig,
    calculate_match_score,
    confidence_percent,
    load_reconciliation_config,
)
from reconciler.services.similarity import name_score

logger = get_logger(__name__)


class Pot(str, Enum):
    LOANS = "loans"
    INVESTORS = "investors"
    EXPENSES = "expenses"
    UNCLASSIFIED = "unclassified"


POT_EXPENSE_KEYWORDS = (
    "expense",
    "expenses",
    "bill",
    "bills",
    "fee",
    "fees",
    "charge",
    "charges",
    "utilities",
    "rent",
    "insurance",
    "subscription",
    "office",
    "supplies",
    "maintenance",
    "professional",
    "legal",
    "accounting",
    "tax",
    "vat",
    "hmrc",
    "council",
    "electric",
    "gas",
    "water",
    "phone",
    "internet",
    "broadband",
    "software",
    "license",
    "licence",
    "stripe",
    "paypal",
    "worldpay",
    "barclays",
    "lloyds",
    "bank charge",
    "direct debit",
    "standing order",
    "service",
    "admin",
    "postage",
    "printing",
    "stationery",
    "travel",
    "parking",
    "fuel",
    "cleaning",
    "security",
    "hosting",
    "domain",
    "cloud",
    "aws",
    "azure",
)
INVESTOR_KEYWORDS = (
    "capital",
    "investment",
    "investor",
    "dividend",
    "interest payment",
    "return",
    "withdrawal",
    "funding",
    "contribution",
)
LOAN_KEYWORDS = ("repayment", "loan", "disbursement", "drawdown", "principal", "borrower")

# Debits below this are usually operational spend
SMALL_EXPENSE_THRESHOLD = Decimal("1000")

POT_LOAN_STATUSES = frozenset({LoanStatus.LIVE, LoanStatus.ACTIVE, LoanStatus.APPROVED})

_PATTERN_POTS = {
    "loan_repayment": Pot.LOANS,
    "loan_disbursement": Pot.LOANS,
    "investor_credit": Pot.INVESTORS,
    "investor_funding": Pot.INVESTORS,
    "investor_withdrawal": Pot.INVESTORS,
    "investor_interest": Pot.INVESTORS,
    "interest_withdrawal": Pot.INVESTORS,
    "operating_expense": Pot.EXPENSES,
    "platform_fee": Pot.EXPENSES,
}


@dataclass(frozen=True)
class PotAssignment:
    """Coarse classification; ``confidence`` is an integer percent."""

    pot: Pot
    confidence: int
    reason: str | None = None
    signals: tuple[str, ...] = ()
    suggested_loan_id: UUID | None = None
    suggested_borrower_id: UUID | None = None
    suggested_investor_id: UUID | None = None
    pattern_id: UUID | None = None


class PotMatchType(str, Enum):
    EXISTING_TRANSACTION = "existing_transaction"
    EXISTING_EXPENSE = "existing_expense"
    GROUPED_PAYMENT = "grouped_payment"
    CREATE_NEW = "create_new"


@dataclass(frozen=True)
class PotMatch:
    match_type: PotMatchType
    confidence: int
    reason: str
    obligations: tuple[Obligation, ...] = ()
    entity_kind: EntityKind | None = None
    entity_id: UUID | None = None
    transaction_type: str | None = None

    @property
    def is_existing(self) -> bool:
        return self.match_type != PotMatchType.CREATE_NEW

    @property
    def obligation_ids(self) -> frozenset[UUID]:
        return frozenset(o.id for o in self.obligations)


@dataclass(frozen=True)
class PotResult:
    entry: BankStatementEntry
    assignment: PotAssignment
    match: PotMatch | None = None

    @property
    def is_existing(self) -> bool:
        return self.match is not None and self.match.is_existing

    @property
    def confidence(self) -> int:
        return self.match.confidence if self.match else 0


def _text_of(entry: BankStatementEntry) -> str:
    return f"{entry.description or ''} {entry.external_reference or ''}".strip()


def _best_name(text: str, *names: str | None) -> float:
    return max((name_score(text, name) for name in names), default=0.0)



_OBLIGATION_POTS = {
    ObligationKind.LOAN_TRANSACTION: Pot.LOANS,
    ObligationKind.INVESTOR_TRANSACTION: Pot.INVESTORS,
    ObligationKind.INTEREST_ENTRY: Pot.INVESTORS,
    ObligationKind.EXPENSE: Pot.EXPENSES,
}

# Exact amount within a week on the shared ladder
OBLIGATION_SIGNAL_MIN_SCORE = 0.75


def _obligation_signal(
    entry: BankStatementEntry,
    context: ReconciliationContext,
    config: ReconciliationConfig,
) -> PotAssignment | None:
    """Pot of the best outstanding record this entry could settle as is."""
    best_score, best = 0.0, None
    for obligation in context.open_obligations():
        if obligation.is_credit != entry.is_credit:
            continue
        score = calculate_match_score(entry, obligation, config)
        if score > best_score:
            best_score, best = score, obligation
    if best is None or best_score < OBLIGATION_SIGNAL_MIN_SCORE:
        return None
    return PotAssignment(
        pot=_OBLIGATION_POTS[best.kind],
        confidence=confidence_percent(best_score * 0.9),
        reason=f"Outstanding {best.kind.value} for {best.amount}",
        signals=("existing_obligation",),
    )


# =============================================================================
# Phase 1: classification
# =============================================================================


def classify_to_pot(
    entry: BankStatementEntry,
    context: ReconciliationContext,
    config: ReconciliationConfig | None = None,
) -> PotAssignment:
    """Assign one entry to a pot using name, pattern and keyword signals.

    Names are checked first since they identify the counterparty. An
    outstanding record with the same amount counts next, then keywords;
    defaults by direction and size only apply when nothing reached 50.
    """
    config = config or load_reconciliation_config()
    text = _text_of(entry)
    text_lower = text.lower()
    is_credit = entry.is_credit
    result = PotAssignment(pot=Pot.UNCLASSIFIED, confidence=0)

    investor_score, best_investor = 0.0, None
    for investor in context.investors.values():
        if investor.status != InvestorStatus.ACTIVE:
            continue
        score = _best_name(text, investor.name, investor.business_name)
        if score > investor_score:
            investor_score, best_investor = score, investor

    borrower_score, best_loan, best_borrower = 0.0, None, None
    for loan in context.loans.values():
        if loan.status not in POT_LOAN_STATUSES:
            continue
        borrower = context.borrowers.get(loan.borrower_id)
        if borrower is None:
            continue
        score = _best_name(text, borrower.name, borrower.business_name)
        if score > borrower_score:
            borrower_score, best_loan, best_borrower = score, loan, borrower
    for borrower in context.borrowers.values():
        score = _best_name(text, borrower.name, borrower.business_name)
        if score > borrower_score:
            borrower_score, best_loan, best_borrower = score, None, borrower

    if best_investor is not None and investor_score >= 0.5:
        percent = confidence_percent(investor_score * 0.95)
        if percent > result.confidence:
            result = PotAssignment(
                pot=Pot.INVESTORS,
                confidence=percent,
                reason=f"Investor: {best_investor.display_name}",
                signals=("investor_name_match",),
                suggested_investor_id=best_investor.id,
            )

    if best_borrower is not None and borrower_score >= 0.5:
        # A named borrower on a credit is almost always a repayment
        multiplier = 0.98 if is_credit else 0.80
        percent = confidence_percent(borrower_score * multiplier)
        if percent > result.confidence:
            result = PotAssignment(
                pot=Pot.LOANS,
                confidence=percent,
                reason=f"Borrower: {best_borrower.display_name}",
                signals=("borrower_name_match",),
                suggested_loan_id=best_loan.id if best_loan else None,
                suggested_borrower_id=best_borrower.id,
            )

    for pattern in context.patterns:
        pattern_text = (pattern.description_pattern or "").lower()
        if len(pattern_text) < 3 or pattern_text not in text_lower:
            continue
        pot = _PATTERN_POTS.get(pattern.match_type)
        if pot is None:
            continue
        percent = min(85 + confidence_percent((pattern.confidence_score or 0.7) / 10), 95)
        if percent > result.confidence:
            result = PotAssignment(
                pot=pot,
                confidence=percent,
                reason=f'Learned: "{pattern.description_pattern}"',
                signals=("learned_pattern",),
                pattern_id=pattern.id,
            )

    if result.confidence < 70:
        existing = _obligation_signal(entry, context, config)
        if existing is not None and existing.confidence > result.confidence:
            result = existing

    if result.confidence < 70:
        if any(keyword in text_lower for keyword in LOAN_KEYWORDS) and 72 > result.confidence:
            result = PotAssignment(
                pot=Pot.LOANS, confidence=72, reason="Loan keyword detected", signals=("loan_keyword",)
            )
        investor_keyword_score = 75 if is_credit else 70
        if (
            any(keyword in text_lower for keyword in INVESTOR_KEYWORDS)
            and investor_keyword_score > result.confidence
        ):
            result = PotAssignment(
                pot=Pot.INVESTORS,
                confidence=investor_keyword_score,
                reason="Investor keyword detected",
                signals=("investor_keyword",),
            )
        if (
            not is_credit
            and any(keyword in text_lower for keyword in POT_EXPENSE_KEYWORDS)
            and 68 > result.confidence
        ):
            result = PotAssignment(
                pot=Pot.EXPENSES,
                confidence=68,
                reason="Expense keyword detected",
                signals=("expense_keyword",),
            )

    if result.confidence < 50:
        if is_credit:
            # Investors exist but none is named: an unknown payer is more likely a borrower
            if context.investors and investor_score < 0.3:
                result = PotAssignment(
                    pot=Pot.LOANS,
                    confidence=40,
                    reason="Credit with no investor match - likely loan repayment",
                    signals=("default_credit_to_loan",),
                )
            else:
                result = PotAssignment(
                    pot=Pot.INVESTORS,
                    confidence=45,
                    reason="Unidentified credit - likely investor capital",
                    signals=("default_credit_to_investor",),
                )
        elif entry.absolute_amount < SMALL_EXPENSE_THRESHOLD:
            result = PotAssignment(
                pot=Pot.EXPENSES,
                confidence=55,
                reason=f"Small debit (< {SMALL_EXPENSE_THRESHOLD}) - likely expense",
                signals=("default_small_debit_to_expense",),
            )
        else:
            result = PotAssignment(
                pot=Pot.UNCLASSIFIED,
                confidence=0,
                reason=f"Large debit (>= {SMALL_EXPENSE_THRESHOLD}) - needs review",
                signals=("large_debit_needs_review",),
            )

    return result


def reclassify_entry(assignment: PotAssignment, new_pot: Pot) -> PotAssignment:
    """Apply a manual pot override, keeping the original signals for audit."""
    return replace(
        assignment,
        pot=new_pot,
        reason="Manually reclassified",
        signals=(*assignment.signals, "manual_override"),
    )


def classify_all_to_pots(
    entries: Iterable[BankStatementEntry],
    context: ReconciliationContext,
    overrides: Mapping[UUID, Pot] | None = None,
    config: ReconciliationConfig | None = None,
) -> dict[Pot, list[PotResult]]:
    overrides = overrides or {}
    buckets: dict[Pot, list[PotResult]] = {pot: [] for pot in Pot}
    for entry in entries:
        assignment = classify_to_pot(entry, context, config)
        if entry.id in overrides:
            assignment = reclassify_entry(assignment, Pot(overrides[entry.id]))
        buckets[assignment.pot].append(PotResult(entry=entry, assignment=assignment))
    return buckets


# =============================================================================
# Phase 2: matching within a pot
# =============================================================================


def _best_existing(
    entry: BankStatementEntry,
    obligations: Iterable[Obligation],
    config: ReconciliationConfig,
) -> tuple[float, Obligation | None]:
    best_score, best = 0.0, None
    for obligation in obligations:
        score = calculate_match_score(entry, obligation, config)
        if score > best_score:
            best_score, best = score, obligation
    return best_score, best


def match_loans_pot(
    results: Sequence[PotResult],
    context: ReconciliationContext,
    claims: ClaimSet | None = None,
    config: ReconciliationConfig | None = None,
) -> list[PotResult]:
    """Existing repayment or disbursement, else create for the named loan, else a grouped payment."""
    config = config or load_reconciliation_config()
    claims = claims or ClaimSet()
    matched: list[PotResult] = []

    for result in results:
        entry = result.entry
        subtype = (
            LoanTransactionType.REPAYMENT if entry.is_credit else LoanTransactionType.DISBURSEMENT
        )
        best_score, obligation = _best_existing(
            entry,
            context.open_obligations(
                claims, kind=ObligationKind.LOAN_TRANSACTION, subtype=subtype.value
            ),
            config,
        )
        match: PotMatch | None = None
        if obligation is not None:
            match = PotMatch(
                match_type=PotMatchType.EXISTING_TRANSACTION,
                confidence=confidence_percent(best_score),
                reason=(
                    f"Matches {subtype.value.lower()} for {context.owner_label(obligation)}"
                ),
                obligations=(obligation,),
                entity_kind=EntityKind.LOAN,
                entity_id=obligation.owner_id,
                transaction_type=subtype.value,
            )

        suggested_loan = context.loans.get(result.assignment.suggested_loan_id)
        if best_score < 0.5 and suggested_loan is not None:
            percent = result.assignment.confidence or 50
            borrower = context.borrowers.get(suggested_loan.borrower_id)
            match = PotMatch(
                match_type=PotMatchType.CREATE_NEW,
                confidence=percent,
                reason=(
                    f"Create {subtype.value.lower()} for "
                    f"{borrower.display_name if borrower else suggested_loan.loan_number}"
                ),
                entity_kind=EntityKind.LOAN,
                entity_id=suggested_loan.id,
                transaction_type=subtype.value,
            )
            best_score = percent / 100

        if entry.is_credit and best_score < 0.9:
            group = find_obligation_group(entry, context, claims, config)
            if group is not None and 0.9 > best_score:
                match = PotMatch(
                    match_type=PotMatchType.GROUPED_PAYMENT,
                    confidence=90,
                    reason=group.rationale,
                    obligations=group.obligations,
                    transaction_type=subtype.value,
                )

        if match is not None and match.is_existing:
            claims = claims.claim_ids(match.obligation_ids, (entry.id,))
        matched.append(replace(result, match=match))
    return matched


def match_investors_pot(
    results: Sequence[PotResult],
    context: ReconciliationContext,
    claims: ClaimSet | None = None,
    config: ReconciliationConfig | None = None,
) -> list[PotResult]:
    config = config or load_reconciliation_config()
    claims = claims or ClaimSet()
    matched: list[PotResult] = []

    for result in results:
        entry = result.entry
        tx_type = (
            InvestorTransactionType.CAPITAL_IN
            if entry.is_credit
            else InvestorTransactionType.CAPITAL_OUT
        )
        best_score, obligation = _best_existing(
            entry,
            context.open_obligations(
                claims, kind=ObligationKind.INVESTOR_TRANSACTION, subtype=tx_type.value
            ),
            config,
        )
        match: PotMatch | None = None
        if obligation is not None:
            match = PotMatch(
                match_type=PotMatchType.EXISTING_TRANSACTION,
                confidence=confidence_percent(best_score),
                reason=(
                    f"Matches {tx_type.value.replace('_', ' ')} for "
                    f"{context.owner_label(obligation)}"
                ),
                obligations=(obligation,),
                entity_kind=EntityKind.INVESTOR,
                entity_id=obligation.owner_id,
                transaction_type=tx_type.value,
            )

        investor = context.investors.get(result.assignment.suggested_investor_id)
        if best_score < 0.5 and investor is not None:
            match = PotMatch(
                match_type=PotMatchType.CREATE_NEW,
                confidence=result.assignment.confidence or 50,
                reason=f"Create {tx_type.value.replace('_', ' ')} for {investor.display_name}",
                entity_kind=EntityKind.INVESTOR,
                entity_id=investor.id,
                transaction_type=tx_type.value,
            )

        if match is not None and match.is_existing:
            claims = claims.claim_ids(match.obligation_ids, (entry.id,))
        matched.append(replace(result, match=match))
    return matched


def match_expenses_pot(
    results: Sequence[PotResult],
    context: ReconciliationContext,
    claims: ClaimSet | None = None,
    config: ReconciliationConfig | None = None,
) -> list[PotResult]:
    """Existing expense, else an expense type from learned patterns, else manual selection."""
    config = config or load_reconciliation_config()
    claims = claims or ClaimSet()
    matched: list[PotResult] = []

    for result in results:
        entry = result.entry
        description = (entry.description or "").lower()
        best_score, obligation = _best_existing(
            entry, context.open_obligations(claims, kind=ObligationKind.EXPENSE), config
        )
        match: PotMatch | None = None
        if obligation is not None:
            match = PotMatch(
                match_type=PotMatchType.EXISTING_EXPENSE,
                confidence=confidence_percent(best_score),
                reason=f"Matches existing {context.owner_label(obligation)}",
                obligations=(obligation,),
                entity_kind=EntityKind.EXPENSE_TYPE,
                entity_id=obligation.owner_id,
            )

        if best_score < 0.5:
            for pattern in context.patterns:
                if pattern.match_type != "operating_expense":
                    continue
                pattern_text = (pattern.description_pattern or "").lower()
                if not pattern_text or pattern_text not in description:
                    continue
                expense_type = context.expense_types.get(pattern.expense_type_id)
                if expense_type is None:
                    continue
                percent = confidence_percent(pattern.confidence_score or 0.6)
                if percent > best_score * 100:
                    match = PotMatch(
                        match_type=PotMatchType.CREATE_NEW,
                        confidence=percent,
                        reason=f"Pattern suggests: {expense_type.name}",
                        entity_kind=EntityKind.EXPENSE_TYPE,
                        entity_id=expense_type.id,
                    )
                    best_score = percent / 100

        if match is None:
            match = PotMatch(
                match_type=PotMatchType.CREATE_NEW,
                confidence=0,
                reason="Select expense type manually",
            )

        if match.is_existing:
            claims = claims.claim_ids(match.obligation_ids, (entry.id,))
        matched.append(replace(result, match=match))
    return matched


def sort_by_match_quality(results: Iterable[PotResult]) -> list[PotResult]:
    """Existing and grouped matches before create proposals, then by confidence.

    ``sorted`` is stable, so equal keys keep the original entry order.
    """
    return sorted(results, key=lambda r: (not r.is_existing, -r.confidence))


def run_pot_pipeline(
    entries: Iterable[BankStatementEntry],
    context: ReconciliationContext,
    overrides: Mapping[UUID, Pot] | None = None,
    config: ReconciliationConfig | None = None,
) -> dict[Pot, list[PotResult]]:
    config = config or load_reconciliation_config()
    buckets = classify_all_to_pots(entries, context, overrides, config)
    pipeline = {
        Pot.UNCLASSIFIED: buckets[Pot.UNCLASSIFIED],
        Pot.LOANS: sort_by_match_quality(match_loans_pot(buckets[Pot.LOANS], context, config=config)),
        Pot.INVESTORS: sort_by_match_quality(
            match_investors_pot(buckets[Pot.INVESTORS], context, config=config)
        ),
        Pot.EXPENSES: sort_by_match_quality(
            match_expenses_pot(buckets[Pot.EXPENSES], context, config=config)
        ),
    }
    logger.info(
        "Pot pipeline completed",
        **{f"{pot.value}_count": len(results) for pot, results in pipeline.items()},
    )
    return pipeline
