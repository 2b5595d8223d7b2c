"""Pydantic schemas for reconciliation API."""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from reconciler.models import ReconciliationCategory
from reconciler.schemas.base import BaseResponse, ListResponse
from reconciler.services.candidates import EntityKind, MatchMode
from reconciler.services.context import ObligationKind
from reconciler.services.pots import Pot, PotMatchType
from reconciler.services.reconciliation import ManualRelationship


class ObligationRefSchema(BaseModel):
    """Reference to a ledger record a bank entry can settle."""

    kind: ObligationKind
    id: UUID


class BankEntrySummary(BaseResponse):
    """Summary of a bank statement entry."""

    id: UUID
    statement_date: date | None
    description: str
    amount: Decimal
    external_reference: str | None
    is_reconciled: bool
    reconciled_at: datetime | None
    reconciled_by: str | None
    is_unreconcilable: bool
    unreconcilable_reason: str | None


# =============================================================================
# Suggestions
# =============================================================================


class SuggestionRequest(BaseModel):
    """Restrict suggestions to some entries; all unreconciled entries otherwise."""

    bank_entry_ids: list[UUID] | None = None


class SuggestionResponse(BaseModel):
    bank_entry_id: UUID
    statement_date: date | None
    description: str
    amount: Decimal
    mode: MatchMode | None
    category: ReconciliationCategory
    confidence: int = Field(ge=0, le=100)
    level: str
    bulk_eligible: bool
    rationale: str
    obligations: list[ObligationRefSchema] = Field(default_factory=list)
    grouped_entry_ids: list[UUID] = Field(default_factory=list)
    entity_kind: EntityKind | None = None
    entity_id: UUID | None = None
    pattern_id: UUID | None = None


SuggestionListResponse = ListResponse[SuggestionResponse]


# =============================================================================
# Pots
# =============================================================================


class PotRequest(BaseModel):
    """Operator pot overrides keyed by bank entry id."""

    overrides: dict[UUID, Pot] = Field(default_factory=dict)


class PotResultResponse(BaseModel):
    bank_entry_id: UUID
    description: str
    amount: Decimal
    pot: Pot
    pot_confidence: int
    reason: str | None
    signals: list[str]
    match_type: PotMatchType | None = None
    match_confidence: int = 0
    match_reason: str | None = None
    obligations: list[ObligationRefSchema] = Field(default_factory=list)
    entity_kind: EntityKind | None = None
    entity_id: UUID | None = None
    transaction_type: str | None = None


class PotPipelineResponse(BaseModel):
    pots: dict[Pot, list[PotResultResponse]]


# =============================================================================
# Execution
# =============================================================================


class RepaymentSplitSchema(BaseModel):
    principal: Decimal = Field(ge=0)
    interest: Decimal = Field(default=Decimal("0"), ge=0)
    fees: Decimal = Field(default=Decimal("0"), ge=0)


class WithdrawalSplitSchema(BaseModel):
    capital: Decimal = Field(ge=0)
    interest: Decimal = Field(default=Decimal("0"), ge=0)


class ExecuteRequest(BaseModel):
    """Execute one candidate, typically taken from a suggestion."""

    bank_entry_ids: list[UUID] = Field(min_length=1)
    mode: MatchMode
    category: ReconciliationCategory | None = None
    obligations: list[ObligationRefSchema] = Field(default_factory=list)
    entity_kind: EntityKind | None = None
    entity_id: UUID | None = None
    expense_type_id: UUID | None = None
    split: RepaymentSplitSchema | None = None
    withdrawal_split: WithdrawalSplitSchema | None = None
    notes: str | None = None

    @model_validator(mode="after")
    def _check_shape(self) -> "ExecuteRequest":
        if self.mode == MatchMode.CREATE:
            if self.category is None:
                raise ValueError("category is required for create")
            if len(self.bank_entry_ids) != 1:
                raise ValueError("create takes exactly one bank entry")
        elif not self.obligations:
            raise ValueError(f"{self.mode.value} needs at least one obligation")
        return self


class ManualMatchRequest(BaseModel):
    relationship: ManualRelationship
    bank_entry_ids: list[UUID] = Field(min_length=1)
    obligations: list[ObligationRefSchema] = Field(min_length=1)
    notes: str | None = None


class ReconciliationResultResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    operation: str
    entry_ids: list[UUID]
    link_ids: list[UUID]
    created_ids: list[UUID] = Field(default_factory=list)


class BulkAcceptRequest(BaseModel):
    bank_entry_ids: list[UUID] | None = None


class BulkAcceptResponse(BaseModel):
    reconciled: list[UUID]
    failed: dict[UUID, str]
    skipped: int


class UnreconcileResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entry_id: UUID
    links_deleted: int
    records_deleted: int


class UnreconcilableRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)
