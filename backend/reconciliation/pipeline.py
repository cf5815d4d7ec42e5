"""Per-token reconciliation: transfers and listings, then purchases, match, USD price and position."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

from loguru import logger

from app.core.config import Settings
from app.domain import (
    AcquisitionSource,
    ListingSnapshot,
    PurchaseRecord,
    ReconciliationDiagnostics,
    ReconciliationSnapshot,
    TokenReconciliation,
)
from upstream.errors import UpstreamError

from .context import ReconciliationContext
from .errors import InvalidInputError, describe_failure
from .keys import build_token_key, normalize_address, normalize_token_id
from .matcher import match_acquisition
from .position import compute_position
from .resolver import resolve_transfer_history
from .retriever import retrieve_candidates

UPSTREAM_FAILURES = (UpstreamError, asyncio.TimeoutError)


@dataclass(frozen=True, slots=True)
class TokenRef:
    wallet_address: str
    contract_address: str
    token_id: str
    token_key: str


def resolve_token_ref(
    settings: Settings, wallet_address: str, contract_address: str | None, token_id: object
) -> TokenRef:
    """Validate caller input; malformed values raise ``InvalidInputError`` and are never defaulted."""
    wallet = normalize_address(wallet_address)
    contract = contract_address or settings.nft_contract_address
    if not contract:
        raise InvalidInputError("No contract address given and no default collection configured")
    contract = normalize_address(contract)
    normalized_id = normalize_token_id(token_id)
    return TokenRef(
        wallet_address=wallet,
        contract_address=contract,
        token_id=normalized_id,
        token_key=build_token_key(settings.chain_name, contract, normalized_id),
    )


async def fetch_listing(
    context: ReconciliationContext, contract_address: str, token_id: str
) -> ListingSnapshot:
    failure_key = f"{contract_address}:{token_id}"
    recent_failure = context.failures.get(failure_key)
    if recent_failure is not None:
        logger.debug("Skipping listing lookup for {}; failed recently", failure_key)
        return ListingSnapshot(low=None, high=None, observed_at=context.clock(), error=recent_failure)
    try:
        return await context.bounded(context.listings.get_listings(contract_address, token_id))
    except UPSTREAM_FAILURES as exc:
        error = describe_failure(exc)
        logger.warning("Listing lookup for {} failed: {}", failure_key, error)
        context.failures.record(failure_key, error)
        return ListingSnapshot(low=None, high=None, observed_at=context.clock(), error=error)


async def purchase_price_usd(
    context: ReconciliationContext,
    purchase: PurchaseRecord,
    diagnostics: ReconciliationDiagnostics,
) -> Decimal | None:
    if purchase.price_usd is not None:
        return purchase.price_usd
    try:
        rate = await context.bounded(
            context.prices.get_historical_price(purchase.purchase_timestamp)
        )
    except UPSTREAM_FAILURES as exc:
        diagnostics.price_error = describe_failure(exc)
        logger.warning(
            "Historical price for {} unavailable: {}", purchase.purchase_id, diagnostics.price_error
        )
        return None
    if rate is None:
        return None
    return purchase.price_in_game_currency * rate


def evaluate(
    ref: TokenRef,
    snapshot: ReconciliationSnapshot,
    *,
    diagnostics: ReconciliationDiagnostics | None = None,
    from_cache: bool = False,
) -> TokenReconciliation:
    return TokenReconciliation(
        wallet_address=ref.wallet_address,
        token_key=ref.token_key,
        snapshot=snapshot,
        position=compute_position(snapshot.acquisition_price, snapshot.listing),
        diagnostics=diagnostics or ReconciliationDiagnostics(),
        from_cache=from_cache,
    )


async def reconcile_ref(context: ReconciliationContext, ref: TokenRef) -> TokenReconciliation:
    history, listing = await asyncio.gather(
        resolve_transfer_history(context, ref.contract_address, ref.token_id, ref.wallet_address),
        fetch_listing(context, ref.contract_address, ref.token_id),
    )
    acquisition = history.acquisition
    acquired_at = acquisition.acquired_at if acquisition else None

    candidates, retrieval = await retrieve_candidates(
        context, ref.token_key, ref.wallet_address, history.current_owner, acquired_at
    )
    match = match_acquisition(
        acquisition,
        candidates,
        viewer_wallet=ref.wallet_address,
        current_owner=history.current_owner,
        window=timedelta(minutes=context.settings.match_window_minutes),
    )

    diagnostics = ReconciliationDiagnostics(
        transfer_chunks_queried=history.chunks_queried,
        transfer_gaps=list(history.gaps),
        transfer_error=history.error,
        retrieval=retrieval,
        listing_error=listing.error,
    )

    price_usd = None
    if match.matched_purchase is not None:
        source = AcquisitionSource.MARKETPLACE
        price_usd = await purchase_price_usd(context, match.matched_purchase, diagnostics)
    elif acquisition is not None:
        source = AcquisitionSource.TRANSFERS
    else:
        source = AcquisitionSource.NONE

    snapshot = ReconciliationSnapshot(
        acquisition=acquisition,
        match=match,
        acquisition_source=source,
        listing=listing,
        transfer_event_count=len(history.events),
        current_owner=history.current_owner,
        purchase_price_usd=price_usd,
    )
    result = evaluate(ref, snapshot, diagnostics=diagnostics)
    logger.info(
        "Reconciled {} for {}: source={} match={} state={}",
        ref.token_key,
        ref.wallet_address,
        source.value,
        match.match_method.value,
        result.position.state.value,
    )
    return result


async def reconcile_token(
    context: ReconciliationContext,
    wallet_address: str,
    contract_address: str | None,
    token_id: object,
) -> TokenReconciliation:
    ref = resolve_token_ref(context.settings, wallet_address, contract_address, token_id)
    return await reconcile_ref(context, ref)


__all__ = [
    "TokenRef",
    "evaluate",
    "fetch_listing",
    "purchase_price_usd",
    "reconcile_ref",
    "reconcile_token",
    "resolve_token_ref",
]
