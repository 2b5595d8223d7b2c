"""Reconciliation API router."""

from uuid import UUID

from fastapi import APIRouter, Query
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.deps import DbSession
from reconciler.models import BankStatementEntry
from reconciler.schemas.reconciliation import (
    BankEntrySummary,
    BulkAcceptRequest,
    BulkAcceptResponse,
    ExecuteRequest,
    ManualMatchRequest,
    ObligationRefSchema,
    PotPipelineResponse,
    PotRequest,
    PotResultResponse,
    ReconciliationResultResponse,
    SuggestionListResponse,
    SuggestionRequest,
    SuggestionResponse,
    UnreconcilableRequest,
    UnreconcileResponse,
)
from reconciler.services.candidates import (
    CreateProposal,
    GroupedEntriesMatch,
    GroupMatch,
    MatchCandidate,
    MatchMode,
    SingleMatch,
)
from reconciler.services.context import Obligation, ReconciliationContext, load_context
from reconciler.services.errors import MissingMatchDataError, ReconciliationError
from reconciler.services.pots import PotResult, run_pot_pipeline
from reconciler.services.reconciliation import (
    ObligationRef,
    ReconciliationResult,
    RepaymentSplit,
    WithdrawalSplit,
    bulk_reconcile,
    clear_unreconcilable,
    execute_manual_match,
    execute_reconciliation,
    mark_unreconcilable,
    reconcile_grouped_disbursement,
    reconcile_grouped_investor,
    reconcile_grouped_repayment,
    reconcile_match_group,
    reconcile_single_match,
    unreconcile,
)
from reconciler.services.suggestions import Suggestion, generate_suggestions
from reconciler.utils.exceptions import raise_reconciliation_error

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


def _obligation_refs(obligations: tuple[Obligation, ...]) -> list[ObligationRefSchema]:
    return [ObligationRefSchema(kind=o.kind, id=o.id) for o in obligations]


def _candidate_obligations(candidate: MatchCandidate) -> tuple[Obligation, ...]:
    if isinstance(candidate, SingleMatch | GroupedEntriesMatch):
        return (candidate.obligation,)
    if isinstance(candidate, GroupMatch):
        return candidate.obligations
    return ()


def _build_suggestion_response(suggestion: Suggestion) -> SuggestionResponse:
    candidate = suggestion.candidate
    entry = suggestion.entry
    return SuggestionResponse(
        bank_entry_id=entry.id,
        statement_date=entry.statement_date,
        description=entry.description,
        amount=entry.amount,
        mode=candidate.mode,
        category=candidate.category,
        confidence=suggestion.percent,
        level=suggestion.level,
        bulk_eligible=suggestion.bulk_eligible,
        rationale=candidate.rationale,
        obligations=_obligation_refs(_candidate_obligations(candidate)),
        grouped_entry_ids=(
            list(candidate.grouped_entry_ids) if isinstance(candidate, GroupedEntriesMatch) else []
        ),
        entity_kind=candidate.entity_kind if isinstance(candidate, CreateProposal) else None,
        entity_id=candidate.entity_id if isinstance(candidate, CreateProposal) else None,
        pattern_id=candidate.pattern_id if isinstance(candidate, CreateProposal) else None,
    )


def _build_pot_result_response(result: PotResult) -> PotResultResponse:
    match = result.match
    return PotResultResponse(
        bank_entry_id=result.entry.id,
        description=result.entry.description,
        amount=result.entry.amount,
        pot=result.assignment.pot,
        pot_confidence=result.assignment.confidence,
        reason=result.assignment.reason,
        signals=list(result.assignment.signals),
        match_type=match.match_type if match else None,
        match_confidence=match.confidence if match else 0,
        match_reason=match.reason if match else None,
        obligations=_obligation_refs(match.obligations) if match else [],
        entity_kind=match.entity_kind if match else None,
        entity_id=match.entity_id if match else None,
        transaction_type=match.transaction_type if match else None,
    )


def _select_entries(
    context: ReconciliationContext, entry_ids: list[UUID] | None
) -> list[BankStatementEntry]:
    if entry_ids is None:
        return list(context.bank_entries)
    wanted = set(entry_ids)
    return [entry for entry in context.bank_entries if entry.id in wanted]


def _refs(obligations: list[ObligationRefSchema]) -> list[ObligationRef]:
    return [ObligationRef(ref.kind, ref.id) for ref in obligations]


async def _execute(db: AsyncSession, payload: ExecuteRequest) -> ReconciliationResult:
    entry_ids = payload.bank_entry_ids
    refs = _refs(payload.obligations)

    if payload.mode == MatchMode.CREATE:
        candidate = CreateProposal(
            entry_id=entry_ids[0],
            category=payload.category,
            confidence=1.0,
            rationale="Operator selection",
            entity_kind=payload.entity_kind,
            entity_id=payload.entity_id,
        )
        return await execute_reconciliation(
            db,
            candidate,
            split=RepaymentSplit(**payload.split.model_dump()) if payload.split else None,
            withdrawal_split=(
                WithdrawalSplit(**payload.withdrawal_split.model_dump())
                if payload.withdrawal_split
                else None
            ),
            expense_type_id=payload.expense_type_id,
            notes=payload.notes,
        )

    if payload.mode in {MatchMode.MATCH, MatchMode.MATCH_GROUP}:
        if len(entry_ids) != 1:
            raise MissingMatchDataError(
                f"{payload.mode.value} takes exactly one bank entry", operation="execute"
            )
        if payload.mode == MatchMode.MATCH:
            if len(refs) != 1:
                raise MissingMatchDataError("match takes exactly one obligation", operation="execute")
            return await reconcile_single_match(db, entry_ids[0], refs[0], notes=payload.notes)
        return await reconcile_match_group(db, entry_ids[0], refs, notes=payload.notes)

    if len(refs) != 1:
        raise MissingMatchDataError(
            f"{payload.mode.value} takes exactly one obligation", operation="execute"
        )
    grouped = {
        MatchMode.GROUPED_DISBURSEMENT: reconcile_grouped_disbursement,
        MatchMode.GROUPED_REPAYMENT: reconcile_grouped_repayment,
        MatchMode.GROUPED_INVESTOR: reconcile_grouped_investor,
    }[payload.mode]
    return await grouped(db, entry_ids, refs[0].id, notes=payload.notes)


@router.post("/suggestions", response_model=SuggestionListResponse)
async def list_suggestions(payload: SuggestionRequest, db: DbSession) -> SuggestionListResponse:
    context = await load_context(db)
    suggestions = generate_suggestions(_select_entries(context, payload.bank_entry_ids), context)
    items = [_build_suggestion_response(suggestion) for suggestion in suggestions]
    return SuggestionListResponse(items=items, total=len(items))


@router.post("/pots", response_model=PotPipelineResponse)
async def pot_pipeline(payload: PotRequest, db: DbSession) -> PotPipelineResponse:
    context = await load_context(db)
    pipeline = run_pot_pipeline(context.bank_entries, context, payload.overrides)
    return PotPipelineResponse(
        pots={
            pot: [_build_pot_result_response(result) for result in results]
            for pot, results in pipeline.items()
        }
    )


@router.post("/execute", response_model=ReconciliationResultResponse)
async def execute(payload: ExecuteRequest, db: DbSession) -> ReconciliationResultResponse:
    try:
        result = await _execute(db, payload)
        await db.commit()
    except ReconciliationError as exc:
        await db.rollback()
        raise_reconciliation_error(exc)
    return ReconciliationResultResponse.model_validate(result)


@router.post("/manual-match", response_model=ReconciliationResultResponse)
async def manual_match(payload: ManualMatchRequest, db: DbSession) -> ReconciliationResultResponse:
    try:
        result = await execute_manual_match(
            db,
            payload.relationship,
            payload.bank_entry_ids,
            _refs(payload.obligations),
            notes=payload.notes,
        )
        await db.commit()
    except ReconciliationError as exc:
        await db.rollback()
        raise_reconciliation_error(exc)
    return ReconciliationResultResponse.model_validate(result)


@router.post("/bulk-accept", response_model=BulkAcceptResponse)
async def bulk_accept(payload: BulkAcceptRequest, db: DbSession) -> BulkAcceptResponse:
    """Reconcile every suggestion at or above the bulk threshold."""
    context = await load_context(db)
    suggestions = generate_suggestions(_select_entries(context, payload.bank_entry_ids), context)
    result = await bulk_reconcile(db, suggestions)
    await db.commit()
    return BulkAcceptResponse(
        reconciled=result.reconciled, failed=result.failed, skipped=result.skipped
    )


@router.post("/entries/{entry_id}/unreconcile", response_model=UnreconcileResponse)
async def unreconcile_entry(
    entry_id: UUID,
    db: DbSession,
    delete_created: bool = Query(default=True),
) -> UnreconcileResponse:
    try:
        result = await unreconcile(db, entry_id, delete_created=delete_created)
        await db.commit()
    except ReconciliationError as exc:
        await db.rollback()
        raise_reconciliation_error(exc)
    return UnreconcileResponse.model_validate(result)


@router.post("/entries/{entry_id}/unreconcilable", response_model=BankEntrySummary)
async def mark_entry_unreconcilable(
    entry_id: UUID, payload: UnreconcilableRequest, db: DbSession
) -> BankEntrySummary:
    try:
        entry = await mark_unreconcilable(db, entry_id, payload.reason)
        await db.commit()
    except ReconciliationError as exc:
        await db.rollback()
        raise_reconciliation_error(exc)
    return BankEntrySummary.model_validate(entry)


@router.delete("/entries/{entry_id}/unreconcilable", response_model=BankEntrySummary)
async def clear_entry_unreconcilable(entry_id: UUID, db: DbSession) -> BankEntrySummary:
    try:
        entry = await clear_unreconcilable(db, entry_id)
        await db.commit()
    except ReconciliationError as exc:
        await db.rollback()
        raise_reconciliation_error(exc)
    return BankEntrySummary.model_validate(entry)
