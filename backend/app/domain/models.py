"""Typed domain representations shared by the upstream clients, the reconciliation core and the API."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum


class AcquisitionKind(str, Enum):
    MINT = "mint"
    TRANSFER = "transfer"
    UNKNOWN = "unknown"


class AcquisitionSource(str, Enum):
    MARKETPLACE = "marketplace"
    TRANSFERS = "transfers"
    NONE = "none"


class MatchMethod(str, Enum):
    EXACT_TX = "exact_tx"
    TIME_WINDOW = "time_window"
    NONE = "none"


class PositionState(str, Enum):
    UP = "up"
    DOWN = "down"
    FLAT = "flat"
    NO_COST_BASIS = "no_cost_basis"
    NO_MARKET_REF = "no_market_ref"


class DataQuality(str, Enum):
    STRONG = "strong"
    FAIR = "fair"
    LIMITED = "limited"


@dataclass(frozen=True, slots=True)
class TransferEvent:
    """A single ERC-721 ownership transfer observed on chain."""

    from_address: str
    to_address: str
    token_id: str
    block_height: int
    event_index: int
    tx_id: str

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.block_height, self.event_index)


@dataclass(frozen=True, slots=True)
class BlockRange:
    from_height: int
    to_height: int


@dataclass(frozen=True, slots=True)
class AcquisitionRecord:
    """First incoming transfer of a token to a wallet."""

    acquired_at: datetime | None
    from_address: str
    tx_id: str
    acquisition_kind: AcquisitionKind
    block_height: int | None = None


@dataclass(slots=True)
class TransferHistory:
    """Resolver output: the ordered event sequence plus what was derived from it."""

    events: list[TransferEvent] = field(default_factory=list)
    acquisition: AcquisitionRecord | None = None
    current_owner: str | None = None
    from_height: int | None = None
    to_height: int | None = None
    chunks_queried: int = 0
    gaps: list[BlockRange] = field(default_factory=list)
    error: str | None = None

    @property
    def is_partial(self) -> bool:
        return bool(self.gaps) or self.error is not None


@dataclass(frozen=True, slots=True)
class PurchaseRecord:
    """Normalized marketplace purchase; see ``upstream.normalize`` for the boundary."""

    purchase_id: str
    token_key: str
    buyer_address: str
    price_in_game_currency: Decimal
    purchase_timestamp: datetime
    price_usd: Decimal | None = None
    tx_id: str | None = None
    order_id: str | None = None


@dataclass(frozen=True, slots=True)
class MatchResult:
    matched_purchase: PurchaseRecord | None = None
    match_method: MatchMethod = MatchMethod.NONE
    candidates_in_window: int = 0


@dataclass(frozen=True, slots=True)
class ListingSnapshot:
    low: Decimal | None
    high: Decimal | None
    observed_at: datetime
    error: str | None = None


@dataclass(frozen=True, slots=True)
class PositionResult:
    state: PositionState
    pnl_ratio: Decimal | None = None
    pnl_absolute: Decimal | None = None
    market_reference: Decimal | None = None
    data_quality: DataQuality | None = None


@dataclass(slots=True)
class RetrievalStats:
    """Per-strategy candidate counts collected by the purchase retriever."""

    marketplace_configured: bool = False
    by_token: int = 0
    by_viewer_wallet: int = 0
    by_current_owner: int = 0
    merged: int = 0
    deduplicated: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ReconciliationSnapshot:
    """Inputs of a reconciliation, persisted so the position can be recomputed on read."""

    acquisition: AcquisitionRecord | None
    match: MatchResult
    acquisition_source: AcquisitionSource
    listing: ListingSnapshot | None
    transfer_event_count: int = 0
    current_owner: str | None = None
    purchase_price_usd: Decimal | None = None

    @property
    def acquisition_price(self) -> Decimal | None:
        purchase = self.match.matched_purchase
        return purchase.price_in_game_currency if purchase else None

    @property
    def is_free_transfer(self) -> bool:
        return (
            self.acquisition is not None
            and self.acquisition.acquisition_kind is AcquisitionKind.TRANSFER
            and self.match.matched_purchase is None
        )


@dataclass(slots=True)
class ReconciliationDiagnostics:
    transfer_chunks_queried: int = 0
    transfer_gaps: list[BlockRange] = field(default_factory=list)
    transfer_error: str | None = None
    retrieval: RetrievalStats = field(default_factory=RetrievalStats)
    listing_error: str | None = None
    price_error: str | None = None


@dataclass(slots=True)
class TokenReconciliation:
    """Final per-token result handed to the presentation layer."""

    wallet_address: str
    token_key: str
    snapshot: ReconciliationSnapshot
    position: PositionResult
    diagnostics: ReconciliationDiagnostics = field(default_factory=ReconciliationDiagnostics)
    from_cache: bool = False
    error: str | None = None
