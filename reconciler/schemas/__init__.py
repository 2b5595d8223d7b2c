from reconciler.schemas.base import BaseResponse, ListResponse
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
    RepaymentSplitSchema,
    SuggestionListResponse,
    SuggestionRequest,
    SuggestionResponse,
    UnreconcilableRequest,
    UnreconcileResponse,
    WithdrawalSplitSchema,
)

__all__ = [
    "BankEntrySummary",
    "BaseResponse",
    "BulkAcceptRequest",
    "BulkAcceptResponse",
    "ExecuteRequest",
    "ListResponse",
    "ManualMatchRequest",
    "ObligationRefSchema",
    "PotPipelineResponse",
    "PotRequest",
    "PotResultResponse",
    "ReconciliationResultResponse",
    "RepaymentSplitSchema",
    "SuggestionListResponse",
    "SuggestionRequest",
    "SuggestionResponse",
    "UnreconcilableRequest",
    "UnreconcileResponse",
    "WithdrawalSplitSchema",
]
