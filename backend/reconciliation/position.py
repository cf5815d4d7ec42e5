"""Market reference, listing data quality and gain/loss classification."""

from __future__ import annotations

from decimal import Decimal

from app.domain import DataQuality, ListingSnapshot, PositionResult, PositionState

EPSILON = Decimal("1e-9")
MIN_COST_BASIS = Decimal("0.000001")
STRONG_SPREAD = Decimal("0.25")
FAIR_SPREAD = Decimal("0.60")
FLAT_DEADBAND = Decimal("0.03")

_TWO = Decimal(2)


def _valid_bound(value: Decimal | None) -> bool:
    # NaN, infinite and negative bounds are treated as absent.
    return value is not None and value.is_finite() and value >= 0


def _bounds(listing: ListingSnapshot | None) -> tuple[Decimal | None, Decimal | None]:
    if listing is None:
        return None, None
    low = listing.low if _valid_bound(listing.low) else None
    high = listing.high if _valid_bound(listing.high) else None
    return low, high


def market_reference(listing: ListingSnapshot | None) -> Decimal | None:
    low, high = _bounds(listing)
    if low is not None and high is not None:
        return (low + high) / _TWO
    return low if low is not None else high


def spread_ratio(low: Decimal, high: Decimal) -> Decimal:
    return (high - low) / max(low, EPSILON)


def data_quality(listing: ListingSnapshot | None) -> DataQuality | None:
    low, high = _bounds(listing)
    if low is None or high is None:
        return None
    ratio = spread_ratio(low, high)
    if ratio <= STRONG_SPREAD:
        return DataQuality.STRONG
    if ratio <= FAIR_SPREAD:
        return DataQuality.FAIR
    return DataQuality.LIMITED


def has_cost_basis(price: Decimal | None) -> bool:
    # Effectively-zero prices are treated as missing, not as a free acquisition.
    return price is not None and price.is_finite() and price >= MIN_COST_BASIS


def compute_position(
    acquisition_price: Decimal | None, listing: ListingSnapshot | None
) -> PositionResult:
    reference = market_reference(listing)
    if reference is None:
        return PositionResult(state=PositionState.NO_MARKET_REF)

    quality = data_quality(listing)
    if not has_cost_basis(acquisition_price):
        return PositionResult(
            state=PositionState.NO_COST_BASIS,
            market_reference=reference,
            data_quality=quality,
        )

    pnl_absolute = reference - acquisition_price
    pnl_ratio = pnl_absolute / max(acquisition_price, EPSILON)
    if abs(pnl_ratio) < FLAT_DEADBAND:
        state = PositionState.FLAT
    elif pnl_ratio > 0:
        state = PositionState.UP
    else:
        state = PositionState.DOWN
    return PositionResult(
        state=state,
        pnl_ratio=pnl_ratio,
        pnl_absolute=pnl_absolute,
        market_reference=reference,
        data_quality=quality,
    )


__all__ = [
    "EPSILON",
    "FAIR_SPREAD",
    "FLAT_DEADBAND",
    "MIN_COST_BASIS",
    "STRONG_SPREAD",
    "compute_position",
    "data_quality",
    "has_cost_basis",
    "market_reference",
    "spread_ratio",
]
