"""Domain models describing transfers, purchases and reconciled positions."""

from .models import (
    AcquisitionKind,
    AcquisitionRecord,
    AcquisitionSource,
    BlockRange,
    DataQuality,
    ListingSnapshot,
    MatchMethod,
    MatchResult,
    PositionResult,
    PositionState,
    PurchaseRecord,
    ReconciliationDiagnostics,
    ReconciliationSnapshot,
    RetrievalStats,
    TokenReconciliation,
    TransferEvent,
    TransferHistory,
)

__all__ = [
    "AcquisitionKind",
    "AcquisitionRecord",
    "AcquisitionSource",
    "BlockRange",
    "DataQuality",
    "ListingSnapshot",
    "MatchMethod",
    "MatchResult",
    "PositionResult",
    "PositionState",
    "PurchaseRecord",
    "ReconciliationDiagnostics",
    "ReconciliationSnapshot",
    "RetrievalStats",
    "TokenReconciliation",
    "TransferEvent",
    "TransferHistory",
]
