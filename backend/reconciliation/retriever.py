from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Iterable

from loguru import logger

from app.domain import PurchaseRecord, RetrievalStats
from upstream.errors import UpstreamError

from .context import ReconciliationContext
from .errors import describe_failure

IdentityKey = tuple[object, ...]


def purchase_identity_keys(record: PurchaseRecord) -> list[IdentityKey]:
    """Every key under which two purchase records count as the same purchase."""
    keys: list[IdentityKey] = [("purchase", record.purchase_id)]
    if record.tx_id:
        keys.append(("tx", record.tx_id.lower()))
    if record.order_id:
        keys.append(("order", record.order_id))
    keys.append(
        (
            "composite",
            record.token_key.lower(),
            int(record.purchase_timestamp.timestamp()),
            record.price_in_game_currency.normalize(),
        )
    )
    return keys


def dedupe_purchases(records: Iterable[PurchaseRecord]) -> list[PurchaseRecord]:
    """Collapse records sharing any identity key, keeping the first occurrence.

    Keys of dropped records are remembered too, so a chain of partial overlaps
    collapses into the first record of the chain.
    """
    seen: set[IdentityKey] = set()
    unique: list[PurchaseRecord] = []
    for record in records:
        keys = purchase_identity_keys(record)
        if not any(key in seen for key in keys):
            unique.append(record)
        seen.update(keys)
    return unique


def filter_by_token_key(records: Iterable[PurchaseRecord], token_key: str) -> list[PurchaseRecord]:
    target = token_key.lower()
    return [record for record in records if record.token_key.lower() == target]


class PurchaseRetriever:
    """Best-effort recall of candidate purchases from three independent lookups."""

    def __init__(self, context: ReconciliationContext) -> None:
        self.context = context
        self.settings = context.settings

    async def _lookup(
        self, label: str, call: Awaitable[list[PurchaseRecord]], stats: RetrievalStats
    ) -> list[PurchaseRecord]:
        try:
            return await self.context.bounded(call)
        except (UpstreamError, asyncio.TimeoutError) as exc:
            message = f"{label}: {describe_failure(exc)}"
            logger.warning("Purchase lookup failed ({})", message)
            stats.errors.append(message)
            return []

    async def retrieve(
        self,
        token_key: str,
        wallet_address: str,
        current_owner: str | None,
        acquired_at: datetime | None,
    ) -> tuple[list[PurchaseRecord], RetrievalStats]:
        marketplace = self.context.marketplace
        stats = RetrievalStats(marketplace_configured=marketplace.is_configured)
        if not stats.marketplace_configured:
            logger.info("Marketplace not configured; no purchase candidates for {}", token_key)
            return [], stats

        wallet = wallet_address.lower()
        owner = current_owner.lower() if current_owner else None

        lookups: dict[str, Awaitable[list[PurchaseRecord]]] = {
            "by_token": marketplace.get_purchases_by_token(token_key),
        }
        if acquired_at is not None:
            window = timedelta(hours=self.settings.wallet_lookup_window_hours)
            wallets = {"by_viewer_wallet": wallet}
            if owner and owner != wallet:
                wallets["by_current_owner"] = owner
            for label, address in wallets.items():
                lookups[label] = marketplace.get_purchases_by_wallet(
                    address,
                    acquired_at - window,
                    acquired_at + window,
                    self.settings.wallet_lookup_limit,
                )

        results = await asyncio.gather(
            *(self._lookup(label, call, stats) for label, call in lookups.items())
        )
        by_label = dict(zip(lookups, results))

        by_token = filter_by_token_key(by_label.get("by_token", []), token_key)
        by_viewer = filter_by_token_key(by_label.get("by_viewer_wallet", []), token_key)
        by_owner = filter_by_token_key(by_label.get("by_current_owner", []), token_key)
        stats.by_token = len(by_token)
        stats.by_viewer_wallet = len(by_viewer)
        stats.by_current_owner = len(by_owner)

        merged = [*by_token, *by_viewer, *by_owner]
        candidates = dedupe_purchases(merged)
        stats.merged = len(merged)
        stats.deduplicated = len(candidates)
        logger.debug(
            "Purchase candidates for {}: token={} viewer={} owner={} unique={}",
            token_key,
            stats.by_token,
            stats.by_viewer_wallet,
            stats.by_current_owner,
            stats.deduplicated,
        )
        return candidates, stats


async def retrieve_candidates(
    context: ReconciliationContext,
    token_key: str,
    wallet_address: str,
    current_owner: str | None,
    acquired_at: datetime | None,
) -> tuple[list[PurchaseRecord], RetrievalStats]:
    return await PurchaseRetriever(context).retrieve(
        token_key, wallet_address, current_owner, acquired_at
    )


__all__ = [
    "PurchaseRetriever",
    "dedupe_purchases",
    "filter_by_token_key",
    "purchase_identity_keys",
    "retrieve_candidates",
]
