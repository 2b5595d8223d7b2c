"""Grouped matching: many obligations to one entry, and many entries to one obligation."""

from __future__ import annotations

from collections.abc import Sequence
from decimal import Decimal
from itertools import combinations
from uuid import UUID

from reconciler.models import (
    BankStatementEntry,
    InvestorTransactionType,
    LoanTransactionType,
    ReconciliationCategory,
)
from reconciler.services.candidates import GroupedEntriesMatch, GroupMatch, MatchMode
from reconciler.services.context import (
    ClaimSet,
    Obligation,
    ObligationKind,
    ReconciliationContext,
)
from reconciler.services.errors import AmbiguousGroupError
from reconciler.services.scoring import DEFAULT_CONFIG, ReconciliationConfig
from reconciler.services.similarity import (
    amounts_match,
    days_between,
    dates_within_days,
    descriptions_related,
    name_in_description,
)

# Bound on the subset search pool; combinations grow quickly past this
MAX_SUBSET_CANDIDATES = 12

BY_BORROWER_SCORES = (0.92, 0.85)
BY_EMAIL_SCORES = (0.90, 0.82)
GROUP_NAME_BONUS = 0.05
GROUP_NAME_BONUS_CAP = 0.95


def _total(obligations: Sequence[Obligation]) -> Decimal:
    return sum((o.amount for o in obligations), Decimal("0"))


def _all_same_day(entry: BankStatementEntry, obligations: Sequence[Obligation]) -> bool:
    return all(days_between(o.date, entry.statement_date) == 0 for o in obligations)


def _normalized_email(email: str | None) -> str | None:
    if not email:
        return None
    return email.strip().lower() or None


def _group_rationale(
    label: str, obligations: Sequence[Obligation], context: ReconciliationContext
) -> str:
    loan_numbers = ", ".join(dict.fromkeys(context.loan_number(o) for o in obligations))
    return f"Grouped: {label} - {len(obligations)} loans ({loan_numbers})"


def find_obligation_group(
    entry: BankStatementEntry,
    context: ReconciliationContext,
    claims: ClaimSet | None = None,
    config: ReconciliationConfig = DEFAULT_CONFIG,
    *,
    strict: bool = False,
) -> GroupMatch | None:
    """Find 2+ open repayments whose sum equals one bank credit.

    Partitions by borrower are tried first; partitions by shared contact
    email only while no borrower partition reached the group gate. On equal
    confidence the earlier partition wins, unless ``strict`` asks for the
    tie to be reported.
    """
    if not entry.is_credit:
        return None

    repayments = [
        o
        for o in context.open_obligations(
            claims,
            kind=ObligationKind.LOAN_TRANSACTION,
            subtype=LoanTransactionType.REPAYMENT.value,
        )
        if dates_within_days(entry.statement_date, o.date, config.group_window_days)
    ]
    if len(repayments) < 2:
        return None

    by_borrower: dict[UUID, list[Obligation]] = {}
    for obligation in repayments:
        if obligation.party_id is not None:
            by_borrower.setdefault(obligation.party_id, []).append(obligation)

    best: GroupMatch | None = None

    def consider(
        key: str, label: str, members: list[Obligation], scores: tuple[float, float]
    ) -> None:
        nonlocal best
        if len(members) < 2:
            return
        if not amounts_match(entry.absolute_amount, _total(members), config.group_amount_percent):
            return
        score = scores[0] if _all_same_day(entry, members) else scores[1]
        if best is not None and score == best.confidence and strict:
            raise AmbiguousGroupError(
                "Two grouping partitions tie on confidence",
                operation="find_obligation_group",
                bank_entry_id=str(entry.id),
                partitions=[best.group_key, key],
            )
        if best is None or score > best.confidence:
            best = GroupMatch(
                entry_id=entry.id,
                category=ReconciliationCategory.LOAN_REPAYMENT,
                confidence=score,
                rationale=_group_rationale(label, members, context),
                obligations=tuple(members),
                group_key=key,
            )

    for borrower_id, members in by_borrower.items():
        borrower = context.borrowers.get(borrower_id)
        label = borrower.display_name if borrower else "Unknown"
        consider(f"borrower:{borrower_id}", label, members, BY_BORROWER_SCORES)

    if config.group_by_email and (best is None or best.confidence < config.group_gate):
        by_email: dict[str, list[Obligation]] = {}
        for obligation in repayments:
            borrower = context.borrowers.get(obligation.party_id) if obligation.party_id else None
            email = _normalized_email(borrower.email if borrower else None)
            if email:
                by_email.setdefault(email, []).append(obligation)

        for email, members in by_email.items():
            # Shared email only means something across distinct borrower records
            if len({o.party_id for o in members}) < 2:
                continue
            consider(f"email:{email}", f"email group ({email})", members, BY_EMAIL_SCORES)

    return best


def group_entries_match_obligation(
    entries: Sequence[BankStatementEntry],
    obligation: Obligation,
    tolerance_percent: Decimal | int = 1,
) -> bool:
    """True when 2+ bank entries together settle ``obligation``."""
    if len(entries) < 2:
        return False
    total = sum((abs(e.amount) for e in entries), Decimal("0"))
    return amounts_match(total, obligation.amount, tolerance_percent)


def find_entry_subset(
    target_entry: BankStatementEntry,
    candidates: Sequence[BankStatementEntry],
    target_amount: Decimal,
    *,
    max_size: int = 5,
    window_days: int = 3,
    tolerance_percent: Decimal | int = 1,
) -> tuple[BankStatementEntry, ...] | None:
    """Smallest set of entries, including ``target_entry``, summing to ``target_amount``.

    Returns None when the target alone already matches: that is a direct
    match, not a group.
    """
    if amounts_match(target_entry.absolute_amount, target_amount, tolerance_percent):
        return None

    pool = [
        e
        for e in candidates
        if e.id != target_entry.id
        and e.is_credit == target_entry.is_credit
        and not e.is_reconciled
        and not e.is_unreconcilable
        and dates_within_days(e.statement_date, target_entry.statement_date, window_days)
    ]
    pool.sort(key=lambda e: days_between(e.statement_date, target_entry.statement_date))
    pool = pool[:MAX_SUBSET_CANDIDATES]

    for size in range(1, max_size):
        for combo in combinations(pool, size):
            total = target_entry.absolute_amount + sum(
                (e.absolute_amount for e in combo), Decimal("0")
            )
            if amounts_match(total, target_amount, tolerance_percent):
                return (target_entry, *combo)
    return None


def _grouped_mode(obligation: Obligation) -> MatchMode | None:
    if obligation.kind == ObligationKind.INVESTOR_TRANSACTION:
        return MatchMode.GROUPED_INVESTOR
    if obligation.kind != ObligationKind.LOAN_TRANSACTION:
        return None
    if obligation.subtype == LoanTransactionType.REPAYMENT.value:
        return MatchMode.GROUPED_REPAYMENT
    if obligation.subtype == LoanTransactionType.DISBURSEMENT.value:
        return MatchMode.GROUPED_DISBURSEMENT
    return None


def _grouped_entries_confidence(
    entries: Sequence[BankStatementEntry], obligation: Obligation
) -> float:
    same_day = len({e.statement_date for e in entries}) == 1
    near = all(dates_within_days(e.statement_date, obligation.date, 3) for e in entries)
    if same_day and near:
        return 0.92
    if near:
        return 0.80
    if same_day:
        return 0.75
    return 0.60


def find_grouped_entries(
    entry: BankStatementEntry,
    context: ReconciliationContext,
    claims: ClaimSet | None = None,
    config: ReconciliationConfig = DEFAULT_CONFIG,
) -> GroupedEntriesMatch | None:
    """Find sibling bank entries that, with ``entry``, settle one open obligation.

    Covers split disbursements, part-paid repayments and investor capital
    sent in several transfers.
    """
    claims = claims or ClaimSet()
    siblings = [e for e in context.bank_entries if not claims.is_entry_claimed(e.id)]
    best: GroupedEntriesMatch | None = None

    for obligation in context.open_obligations(claims):
        mode = _grouped_mode(obligation)
        if mode is None or obligation.is_credit != entry.is_credit:
            continue
        if obligation.amount <= entry.absolute_amount:
            continue
        if not dates_within_days(
            entry.statement_date, obligation.date, config.grouped_entries_window_days
        ):
            continue

        subset = find_entry_subset(
            entry,
            siblings,
            obligation.amount,
            max_size=config.max_group_size,
            window_days=config.group_window_days,
            tolerance_percent=config.group_amount_percent,
        )
        if subset is None:
            continue
        if not all(
            dates_within_days(e.statement_date, obligation.date, config.grouped_entries_window_days)
            for e in subset
        ):
            continue

        name, business_name = context.owner_names(obligation)
        name_hit = max(name_in_description(e.description, name, business_name) for e in subset)
        related = all(descriptions_related(subset[0].description, e.description) for e in subset[1:])
        if not related and name_hit <= 0.5:
            continue

        score = min(
            _grouped_entries_confidence(subset, obligation) + name_hit * GROUP_NAME_BONUS,
            GROUP_NAME_BONUS_CAP,
        )
        if best is None or score > best.confidence:
            best = GroupedEntriesMatch(
                entry_id=entry.id,
                category=obligation.category,
                confidence=score,
                rationale=(
                    f"{len(subset)} bank entries = {obligation.amount:.2f} "
                    f"for {context.owner_label(obligation)}"
                ),
                mode=mode,
                grouped_entry_ids=tuple(e.id for e in subset),
                obligation=obligation,
            )
    return best


def find_investor_withdrawal_group(
    entry: BankStatementEntry,
    context: ReconciliationContext,
    claims: ClaimSet | None = None,
    config: ReconciliationConfig = DEFAULT_CONFIG,
) -> GroupMatch | None:
    """Match one bank debit to an investor's capital-out and interest debits.

    Capital and interest are often booked separately but paid out in a
    single transfer.
    """
    if entry.is_credit:
        return None

    by_investor: dict[UUID, list[Obligation]] = {}
    for obligation in context.open_obligations(claims):
        is_capital_out = (
            obligation.kind == ObligationKind.INVESTOR_TRANSACTION
            and obligation.subtype == InvestorTransactionType.CAPITAL_OUT.value
        )
        if not is_capital_out and obligation.kind != ObligationKind.INTEREST_ENTRY:
            continue
        if obligation.party_id is None:
            continue
        if not dates_within_days(entry.statement_date, obligation.date, config.group_window_days):
            continue
        by_investor.setdefault(obligation.party_id, []).append(obligation)

    best: GroupMatch | None = None
    for investor_id, members in by_investor.items():
        capital = [o for o in members if o.kind == ObligationKind.INVESTOR_TRANSACTION]
        interest = [o for o in members if o.kind == ObligationKind.INTEREST_ENTRY]

        chosen: list[Obligation] | None = None
        if capital and interest and amounts_match(
            entry.absolute_amount, _total(members), config.group_amount_percent
        ):
            chosen, score, category = members, 0.92, ReconciliationCategory.INVESTOR_WITHDRAWAL
        elif len(interest) >= 2 and amounts_match(
            entry.absolute_amount, _total(interest), config.group_amount_percent
        ):
            score = 0.92 if _all_same_day(entry, interest) else 0.90
            chosen, category = interest, ReconciliationCategory.INTEREST_WITHDRAWAL
        if chosen is None:
            continue

        investor = context.investors.get(investor_id)
        if investor is not None:
            bonus = name_in_description(entry.description, investor.name, investor.business_name)
            score = min(score + bonus * GROUP_NAME_BONUS, GROUP_NAME_BONUS_CAP)
        if best is None or score > best.confidence:
            label = investor.display_name if investor else "Unknown"
            best = GroupMatch(
                entry_id=entry.id,
                category=category,
                confidence=score,
                rationale=f"Investor withdrawal: {label} - {len(chosen)} records",
                obligations=tuple(chosen),
                group_key=f"investor:{investor_id}",
            )
    return best
