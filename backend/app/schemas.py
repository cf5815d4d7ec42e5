from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from app.domain import TokenReconciliation


class Acquisition(BaseModel):
    acquired_at: datetime | None = None
    from_address: str
    tx_id: str
    acquisition_kind: str
    block_height: int | None = None

    model_config = {"from_attributes": True}


class Purchase(BaseModel):
    purchase_id: str
    token_key: str
    buyer_address: str
    price_in_game_currency: float
    purchase_timestamp: datetime
    price_usd: float | None = None
    tx_id: str | None = None
    order_id: str | None = None

    model_config = {"from_attributes": True}

    @field_validator("price_in_game_currency", "price_usd", mode="before")
    @classmethod
    def _coerce_decimal(cls, value: Any) -> float | None:
        if value is None:
            return None
        return float(value)


class Listing(BaseModel):
    low: float | None = None
    high: float | None = None
    observed_at: datetime
    error: str | None = None

    model_config = {"from_attributes": True}

    @field_validator("low", "high", mode="before")
    @classmethod
    def _coerce_decimal(cls, value: Any) -> float | None:
        if value is None:
            return None
        return float(value)


class Position(BaseModel):
    state: str
    pnl_ratio: float | None = None
    pnl_absolute: float | None = None
    market_reference: float | None = None
    data_quality: str | None = None

    model_config = {"from_attributes": True}

    @field_validator("pnl_ratio", "pnl_absolute", "market_reference", mode="before")
    @classmethod
    def _coerce_decimal(cls, value: Any) -> float | None:
        if value is None:
            return None
        return float(value)


class BlockGap(BaseModel):
    from_height: int
    to_height: int

    model_config = {"from_attributes": True}


class Diagnostics(BaseModel):
    transfer_chunks_queried: int = 0
    transfer_gaps: list[BlockGap] = Field(default_factory=list)
    transfer_error: str | None = None
    marketplace_configured: bool = False
    candidates_by_token: int = 0
    candidates_by_viewer_wallet: int = 0
    candidates_by_current_owner: int = 0
    candidates_unique: int = 0
    retrieval_errors: list[str] = Field(default_factory=list)
    listing_error: str | None = None
    price_error: str | None = None


class TokenPositionResponse(BaseModel):
    wallet_address: str
    token_key: str
    acquisition_source: str
    acquisition: Acquisition | None = None
    is_free_transfer: bool = False
    matched_purchase: Purchase | None = None
    match_method: str
    acquisition_price: float | None = None
    purchase_price_usd: float | None = None
    current_owner: str | None = None
    transfer_event_count: int = 0
    listing: Listing | None = None
    position: Position
    from_cache: bool = False
    refresh_scheduled: bool = False
    error: str | None = None
    diagnostics: Diagnostics = Field(default_factory=Diagnostics)

    @field_validator("acquisition_price", "purchase_price_usd", mode="before")
    @classmethod
    def _coerce_decimal(cls, value: Any) -> float | None:
        if value is None:
            return None
        return float(value)

    @classmethod
    def from_result(
        cls, result: TokenReconciliation, *, refresh_scheduled: bool = False
    ) -> "TokenPositionResponse":
        snapshot = result.snapshot
        diagnostics = result.diagnostics
        retrieval = diagnostics.retrieval
        return cls(
            wallet_address=result.wallet_address,
            token_key=result.token_key,
            acquisition_source=snapshot.acquisition_source.value,
            acquisition=(
                Acquisition(
                    acquired_at=snapshot.acquisition.acquired_at,
                    from_address=snapshot.acquisition.from_address,
                    tx_id=snapshot.acquisition.tx_id,
                    acquisition_kind=snapshot.acquisition.acquisition_kind.value,
                    block_height=snapshot.acquisition.block_height,
                )
                if snapshot.acquisition
                else None
            ),
            is_free_transfer=snapshot.is_free_transfer,
            matched_purchase=(
                Purchase.model_validate(snapshot.match.matched_purchase)
                if snapshot.match.matched_purchase
                else None
            ),
            match_method=snapshot.match.match_method.value,
            acquisition_price=snapshot.acquisition_price,
            purchase_price_usd=snapshot.purchase_price_usd,
            current_owner=snapshot.current_owner,
            transfer_event_count=snapshot.transfer_event_count,
            listing=Listing.model_validate(snapshot.listing) if snapshot.listing else None,
            position=Position(
                state=result.position.state.value,
                pnl_ratio=result.position.pnl_ratio,
                pnl_absolute=result.position.pnl_absolute,
                market_reference=result.position.market_reference,
                data_quality=(
                    result.position.data_quality.value if result.position.data_quality else None
                ),
            ),
            from_cache=result.from_cache,
            refresh_scheduled=refresh_scheduled,
            error=result.error,
            diagnostics=Diagnostics(
                transfer_chunks_queried=diagnostics.transfer_chunks_queried,
                transfer_gaps=[BlockGap.model_validate(gap) for gap in diagnostics.transfer_gaps],
                transfer_error=diagnostics.transfer_error,
                marketplace_configured=retrieval.marketplace_configured,
                candidates_by_token=retrieval.by_token,
                candidates_by_viewer_wallet=retrieval.by_viewer_wallet,
                candidates_by_current_owner=retrieval.by_current_owner,
                candidates_unique=retrieval.deduplicated,
                retrieval_errors=list(retrieval.errors),
                listing_error=diagnostics.listing_error,
                price_error=diagnostics.price_error,
            ),
        )


class PortfolioResponse(BaseModel):
    wallet_address: str
    total: int
    complete: bool
    items: list[TokenPositionResponse]


class CacheClearResponse(BaseModel):
    wallet_address: str
    removed: int
