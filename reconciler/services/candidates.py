"""Match candidates: one variant per match mode.

Each variant carries exactly the references its mode needs, so callers
dispatch on the type instead of probing optional fields.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import ClassVar
from uuid import UUID

from reconciler.models import ReconciliationCategory
from reconciler.services.context import Obligation
from reconciler.services.scoring import confidence_percent


class MatchMode(str, Enum):
    MATCH = "match"
    MATCH_GROUP = "match_group"
    GROUPED_DISBURSEMENT = "grouped_disbursement"
    GROUPED_INVESTOR = "grouped_investor"
    GROUPED_REPAYMENT = "grouped_repayment"
    CREATE = "create"


GROUPED_ENTRY_MODES = frozenset(
    {MatchMode.GROUPED_DISBURSEMENT, MatchMode.GROUPED_INVESTOR, MatchMode.GROUPED_REPAYMENT}
)


class EntityKind(str, Enum):
    """Entity a create proposal books the new record against."""

    LOAN = "loan"
    INVESTOR = "investor"
    EXPENSE_TYPE = "expense_type"


@dataclass(frozen=True, kw_only=True)
class _Candidate:
    entry_id: UUID
    category: ReconciliationCategory
    confidence: float
    rationale: str = ""

    @property
    def percent(self) -> int:
        return confidence_percent(self.confidence)

    @property
    def obligation_ids(self) -> frozenset[UUID]:
        return frozenset()

    @property
    def entry_ids(self) -> frozenset[UUID]:
        return frozenset({self.entry_id})

    def with_confidence(self, confidence: float):
        return replace(self, confidence=confidence)


@dataclass(frozen=True, kw_only=True)
class SingleMatch(_Candidate):
    mode: ClassVar[MatchMode] = MatchMode.MATCH
    obligation: Obligation

    @property
    def obligation_ids(self) -> frozenset[UUID]:
        return frozenset({self.obligation.id})


@dataclass(frozen=True, kw_only=True)
class GroupMatch(_Candidate):
    mode: ClassVar[MatchMode] = MatchMode.MATCH_GROUP
    obligations: tuple[Obligation, ...]
    group_key: str

    @property
    def obligation_ids(self) -> frozenset[UUID]:
        return frozenset(o.id for o in self.obligations)


@dataclass(frozen=True, kw_only=True)
class GroupedEntriesMatch(_Candidate):
    """Several bank entries that together settle one obligation."""

    mode: MatchMode
    grouped_entry_ids: tuple[UUID, ...]
    obligation: Obligation

    def __post_init__(self) -> None:
        if self.mode not in GROUPED_ENTRY_MODES:
            raise ValueError(f"{self.mode} is not a grouped-entries mode")

    @property
    def obligation_ids(self) -> frozenset[UUID]:
        return frozenset({self.obligation.id})

    @property
    def entry_ids(self) -> frozenset[UUID]:
        return frozenset(self.grouped_entry_ids)


@dataclass(frozen=True, kw_only=True)
class CreateProposal(_Candidate):
    mode: ClassVar[MatchMode] = MatchMode.CREATE
    entity_kind: EntityKind | None = None
    entity_id: UUID | None = None
    pattern_id: UUID | None = None


@dataclass(frozen=True, kw_only=True)
class Unknown(_Candidate):
    mode: ClassVar[None] = None
    category: ReconciliationCategory = ReconciliationCategory.UNKNOWN
    confidence: float = 0.0

    @property
    def entry_ids(self) -> frozenset[UUID]:
        return frozenset()


MatchCandidate = SingleMatch | GroupMatch | GroupedEntriesMatch | CreateProposal | Unknown
