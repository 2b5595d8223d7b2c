"""Per-entry intent classification.

Strategies run from most to least authoritative. A later strategy only
replaces the running best with a strictly higher confidence, and is
skipped entirely once the running best reaches its gate.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from operator import attrgetter

from reconciler.logger import get_logger
from reconciler.models import (
    OPEN_LOAN_STATUSES,
    BankStatementEntry,
    InterestEntryType,
    InvestorStatus,
    InvestorTransactionType,
    LoanTransactionType,
    ReconciliationCategory,
    TransactionType,
)
from reconciler.services.candidates import (
    CreateProposal,
    EntityKind,
    MatchCandidate,
    SingleMatch,
    Unknown,
)
from reconciler.services.context import ClaimSet, ObligationKind, ReconciliationContext
from reconciler.services.grouping import find_obligation_group
from reconciler.services.scoring import (
    ReconciliationConfig,
    calculate_match_score,
    load_reconciliation_config,
)
from reconciler.services.similarity import (
    days_between,
    extract_vendor_keywords,
    graded_keyword_overlap,
    name_in_description,
    string_similarity,
)

logger = get_logger(__name__)

EXPENSE_KEYWORDS = (
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
)
# Strong enough to veto a borrower or investor name match
NAME_VETO_KEYWORDS = EXPENSE_KEYWORDS[:6]

SINGLE_NAME_BONUS = 0.15
SINGLE_NAME_BONUS_CAP = 0.99


def _contains_any(text: str, keywords: tuple[str, ...]) -> bool:
    lowered = text.lower()
    return any(keyword in lowered for keyword in keywords)


def _expected_subtypes(
    entry: BankStatementEntry,
) -> tuple[tuple[ObligationKind, str | None], ...]:
    if entry.is_credit:
        return (
            (ObligationKind.LOAN_TRANSACTION, LoanTransactionType.REPAYMENT.value),
            (ObligationKind.INVESTOR_TRANSACTION, InvestorTransactionType.CAPITAL_IN.value),
        )
    return (
        (ObligationKind.LOAN_TRANSACTION, LoanTransactionType.DISBURSEMENT.value),
        (ObligationKind.INVESTOR_TRANSACTION, InvestorTransactionType.CAPITAL_OUT.value),
        (ObligationKind.INTEREST_ENTRY, InterestEntryType.DEBIT.value),
        (ObligationKind.EXPENSE, None),
    )


# =============================================================================
# Strategies
# =============================================================================


def match_direct_obligation(
    entry: BankStatementEntry,
    context: ReconciliationContext,
    claims: ClaimSet,
    config: ReconciliationConfig,
) -> MatchCandidate | None:
    """Score every open obligation of the expected direction; keep the best."""
    best: SingleMatch | None = None
    for kind, subtype in _expected_subtypes(entry):
        for obligation in context.open_obligations(claims, kind=kind, subtype=subtype):
            diff = days_between(entry.statement_date, obligation.date)
            if diff is not None and diff > config.single_match_window_days:
                continue
            score = calculate_match_score(entry, obligation, config)
            if score <= 0:
                continue
            name, business_name = context.owner_names(obligation)
            name_hit = name_in_description(entry.description, name, business_name)
            if name_hit:
                score = min(score + name_hit * SINGLE_NAME_BONUS, SINGLE_NAME_BONUS_CAP)
            if best is None or score > best.confidence:
                best = SingleMatch(
                    entry_id=entry.id,
                    category=obligation.category,
                    confidence=score,
                    rationale=(
                        f"{obligation.category.value.replace('_', ' ').capitalize()} match: "
                        f"{context.owner_label(obligation)}"
                    ),
                    obligation=obligation,
                )
    return best


def match_grouped_obligation(
    entry: BankStatementEntry,
    context: ReconciliationContext,
    claims: ClaimSet,
    config: ReconciliationConfig,
) -> MatchCandidate | None:
    return find_obligation_group(entry, context, claims, config)


def match_learned_pattern(
    entry: BankStatementEntry,
    context: ReconciliationContext,
    claims: ClaimSet,
    config: ReconciliationConfig,
) -> MatchCandidate | None:
    """Recognise a vendor from previously confirmed create reconciliations."""
    entry_keywords = extract_vendor_keywords(entry.description)
    if not entry_keywords:
        return None

    direction = TransactionType.CREDIT.value if entry.is_credit else TransactionType.DEBIT.value
    amount = entry.absolute_amount
    best: CreateProposal | None = None

    for pattern in context.patterns:
        pattern_keywords = extract_vendor_keywords(pattern.description_pattern)
        if not pattern_keywords:
            continue
        if pattern.amount_min and amount < pattern.amount_min:
            continue
        if pattern.amount_max and amount > pattern.amount_max:
            continue
        if pattern.transaction_type and pattern.transaction_type != direction:
            continue
        overlap = graded_keyword_overlap(entry_keywords, pattern_keywords)
        if overlap < config.pattern_min_overlap:
            continue

        usage_boost = min((pattern.match_count or 1) / 20, 0.15)
        score = (pattern.confidence_score or 0.5) * 0.6 + overlap * 0.25 + usage_boost
        score = min(score, 1.0)

        if best is None or score > best.confidence:
            if pattern.loan_id:
                entity = (EntityKind.LOAN, pattern.loan_id)
            elif pattern.investor_id:
                entity = (EntityKind.INVESTOR, pattern.investor_id)
            elif pattern.expense_type_id:
                entity = (EntityKind.EXPENSE_TYPE, pattern.expense_type_id)
            else:
                entity = (None, None)
            best = CreateProposal(
                entry_id=entry.id,
                category=ReconciliationCategory.from_pattern_type(pattern.match_type),
                confidence=score,
                rationale=f'Pattern: "{pattern.description_pattern}"',
                entity_kind=entity[0],
                entity_id=entity[1],
                pattern_id=pattern.id,
            )
    return best


def match_expense_keyword(
    entry: BankStatementEntry,
    context: ReconciliationContext,
    claims: ClaimSet,
    config: ReconciliationConfig,
) -> MatchCandidate | None:
    if entry.is_credit or not _contains_any(entry.description or "", EXPENSE_KEYWORDS):
        return None
    return CreateProposal(
        entry_id=entry.id,
        category=ReconciliationCategory.OPERATING_EXPENSE,
        confidence=config.expense_keyword_score,
        rationale="Description contains expense keyword",
    )


def match_borrower_name(
    entry: BankStatementEntry,
    context: ReconciliationContext,
    claims: ClaimSet,
    config: ReconciliationConfig,
) -> MatchCandidate | None:
    description = entry.description or ""
    if _contains_any(description, NAME_VETO_KEYWORDS):
        return None

    best: CreateProposal | None = None
    for loan in context.loans.values():
        if loan.status not in OPEN_LOAN_STATUSES:
            continue
        borrower = context.borrowers.get(loan.borrower_id)
        if borrower is None:
            continue
        similarity = max(
            string_similarity(description, borrower.name),
            string_similarity(description, borrower.business_name),
        )
        if similarity <= config.borrower_name_min_similarity:
            continue
        if best is None or similarity > best.confidence:
            best = CreateProposal(
                entry_id=entry.id,
                category=(
                    ReconciliationCategory.LOAN_REPAYMENT
                    if entry.is_credit
                    else ReconciliationCategory.LOAN_DISBURSEMENT
                ),
                confidence=similarity,
                rationale=f"Borrower name: {borrower.display_name}",
                entity_kind=EntityKind.LOAN,
                entity_id=loan.id,
            )
    return best


def match_investor_name(
    entry: BankStatementEntry,
    context: ReconciliationContext,
    claims: ClaimSet,
    config: ReconciliationConfig,
) -> MatchCandidate | None:
    description = entry.description or ""
    if _contains_any(description, NAME_VETO_KEYWORDS):
        return None

    best: CreateProposal | None = None
    for investor in context.investors.values():
        if investor.status != InvestorStatus.ACTIVE:
            continue
        similarity = max(
            string_similarity(description, investor.name),
            string_similarity(description, investor.business_name),
        )
        if similarity <= config.investor_name_min_similarity:
            continue
        if best is None or similarity > best.confidence:
            best = CreateProposal(
                entry_id=entry.id,
                category=(
                    ReconciliationCategory.INVESTOR_FUNDING
                    if entry.is_credit
                    else ReconciliationCategory.INVESTOR_WITHDRAWAL
                ),
                confidence=similarity,
                rationale=f"Investor name: {investor.display_name}",
                entity_kind=EntityKind.INVESTOR,
                entity_id=investor.id,
            )
    return best


# =============================================================================
# Fold
# =============================================================================


StrategyFn = Callable[
    [BankStatementEntry, ReconciliationContext, ClaimSet, ReconciliationConfig],
    MatchCandidate | None,
]


@dataclass(frozen=True)
class Strategy:
    """A named scoring tier; ``gate`` reads the config threshold that disables it."""

    name: str
    run: StrategyFn
    gate: Callable[[ReconciliationConfig], float] | None = None
    debit_only: bool = False


STRATEGIES: tuple[Strategy, ...] = (
    Strategy("direct_obligation", match_direct_obligation),
    Strategy("grouped_obligation", match_grouped_obligation, attrgetter("group_gate")),
    Strategy("learned_pattern", match_learned_pattern, attrgetter("pattern_gate")),
    Strategy(
        "expense_keyword",
        match_expense_keyword,
        attrgetter("expense_keyword_gate"),
        debit_only=True,
    ),
    Strategy("borrower_name", match_borrower_name, attrgetter("borrower_name_gate")),
    Strategy("investor_name", match_investor_name, attrgetter("investor_name_gate")),
)


def classify_entry(
    entry: BankStatementEntry,
    context: ReconciliationContext,
    claims: ClaimSet | None = None,
    config: ReconciliationConfig | None = None,
    strategies: tuple[Strategy, ...] = STRATEGIES,
) -> MatchCandidate:
    """Return the single best candidate for ``entry``, or Unknown below the floor."""
    config = config or load_reconciliation_config()
    claims = claims or ClaimSet()

    best: MatchCandidate | None = None
    for strategy in strategies:
        running = best.confidence if best is not None else 0.0
        if strategy.gate is not None and running >= strategy.gate(config):
            continue
        if strategy.debit_only and entry.is_credit:
            continue
        candidate = strategy.run(entry, context, claims, config)
        if candidate is not None and candidate.confidence > running:
            best = candidate

    if best is None or best.confidence < config.min_confidence:
        logger.debug(
            "Entry left unclassified",
            bank_entry_id=str(entry.id),
            best_confidence=best.confidence if best else 0.0,
        )
        return Unknown(entry_id=entry.id, rationale="No match above confidence floor")
    return best


classify_intent = classify_entry
