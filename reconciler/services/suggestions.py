"""Batch suggestions with sequential claim resolution."""

from __future__ import annotations

import datetime as dt
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from reconciler.logger import get_logger, log_timing
from reconciler.models import BankStatementEntry
from reconciler.services.candidates import MatchCandidate
from reconciler.services.classification import classify_entry
from reconciler.services.context import ClaimSet, ReconciliationContext
from reconciler.services.grouping import find_grouped_entries, find_investor_withdrawal_group
from reconciler.services.scoring import (
    ReconciliationConfig,
    confidence_level,
    is_bulk_eligible,
    load_reconciliation_config,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class Suggestion:
    entry: BankStatementEntry
    candidate: MatchCandidate
    percent: int
    level: str
    bulk_eligible: bool

    @classmethod
    def build(
        cls,
        entry: BankStatementEntry,
        candidate: MatchCandidate,
        config: ReconciliationConfig,
    ) -> Suggestion:
        percent = candidate.percent
        return cls(
            entry=entry,
            candidate=candidate,
            percent=percent,
            level=confidence_level(percent, config),
            bulk_eligible=candidate.mode is not None and is_bulk_eligible(percent, config),
        )


def best_candidate(
    entry: BankStatementEntry,
    context: ReconciliationContext,
    claims: ClaimSet,
    config: ReconciliationConfig,
) -> MatchCandidate:
    """Classifier result, upgraded by a batch-level grouped search when it is weak.

    The grouped searches look across sibling bank entries, which the
    per-entry classifier never does.
    """
    candidate = classify_entry(entry, context, claims, config)
    if candidate.confidence >= config.group_gate:
        return candidate
    for finder in (find_investor_withdrawal_group, find_grouped_entries):
        grouped = finder(entry, context, claims, config)
        if grouped is not None and grouped.confidence > candidate.confidence:
            candidate = grouped
    return candidate


def _date_key(entry: BankStatementEntry) -> dt.date:
    return entry.statement_date or dt.date.max


def generate_suggestions(
    entries: Iterable[BankStatementEntry],
    context: ReconciliationContext,
    config: ReconciliationConfig | None = None,
) -> list[Suggestion]:
    """Suggest one reconciliation per unreconciled entry.

    Every entry is first scored against the untouched snapshot. Claims are
    then granted in descending confidence (earlier date, then input order,
    break ties); an entry whose first choice collides with an earlier claim
    is scored again against what is still free. Entries absorbed into a
    grouped-entries suggestion get no suggestion of their own.
    """
    config = config or load_reconciliation_config()
    pending = [
        (index, entry)
        for index, entry in enumerate(entries)
        if not entry.is_reconciled and not entry.is_unreconcilable
    ]

    with log_timing("generate_suggestions", logger=logger, entries=len(pending)) as timing:
        empty = ClaimSet()
        first_pass = {entry.id: best_candidate(entry, context, empty, config) for _, entry in pending}
        queue = sorted(
            pending,
            key=lambda item: (-first_pass[item[1].id].confidence, _date_key(item[1]), item[0]),
        )

        claims = ClaimSet()
        chosen: dict[int, Suggestion] = {}
        rescored = 0
        for index, entry in queue:
            if claims.is_entry_claimed(entry.id):
                continue
            candidate = first_pass[entry.id]
            if claims.conflicts(candidate):
                candidate = best_candidate(entry, context, claims, config)
                rescored += 1
            if candidate.mode is not None:
                claims = claims.claim(candidate)
            chosen[index] = Suggestion.build(entry, candidate, config)

        ordered = sorted(chosen.items(), key=lambda item: (_date_key(item[1].entry), item[0]))
        suggestions = [suggestion for _, suggestion in ordered]
        timing["suggested"] = sum(1 for s in suggestions if s.candidate.mode is not None)
        timing["rescored"] = rescored

    return suggestions


def select_bulk_eligible(suggestions: Sequence[Suggestion]) -> list[Suggestion]:
    """Only high-confidence suggestions may be accepted without review."""
    return [suggestion for suggestion in suggestions if suggestion.bulk_eligible]
