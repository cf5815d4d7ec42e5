"""JSON payloads for cached reconciliation snapshots.

Only inputs are persisted; the position is recomputed from them on every read.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from app.domain import (
    AcquisitionKind,
    AcquisitionRecord,
    AcquisitionSource,
    ListingSnapshot,
    MatchMethod,
    MatchResult,
    PurchaseRecord,
    ReconciliationSnapshot,
)


class SnapshotDecodeError(ValueError):
    """Raised when a cached payload no longer matches the snapshot shape."""


def _dec(value: Decimal | None) -> str | None:
    return None if value is None else str(value)


def _parse_dec(value: Any) -> Decimal | None:
    return None if value is None else Decimal(str(value))


def _ts(value: datetime | None) -> str | None:
    return None if value is None else value.isoformat()


def _parse_ts(value: Any) -> datetime | None:
    return None if value is None else datetime.fromisoformat(value)


def _acquisition_to_dict(acquisition: AcquisitionRecord) -> dict[str, Any]:
    return {
        "acquired_at": _ts(acquisition.acquired_at),
        "from_address": acquisition.from_address,
        "tx_id": acquisition.tx_id,
        "acquisition_kind": acquisition.acquisition_kind.value,
        "block_height": acquisition.block_height,
    }


def _purchase_to_dict(purchase: PurchaseRecord) -> dict[str, Any]:
    return {
        "purchase_id": purchase.purchase_id,
        "token_key": purchase.token_key,
        "buyer_address": purchase.buyer_address,
        "price_in_game_currency": _dec(purchase.price_in_game_currency),
        "purchase_timestamp": _ts(purchase.purchase_timestamp),
        "price_usd": _dec(purchase.price_usd),
        "tx_id": purchase.tx_id,
        "order_id": purchase.order_id,
    }


def snapshot_to_payload(snapshot: ReconciliationSnapshot) -> dict[str, Any]:
    listing = snapshot.listing
    purchase = snapshot.match.matched_purchase
    return {
        "acquisition": _acquisition_to_dict(snapshot.acquisition) if snapshot.acquisition else None,
        "match": {
            "matched_purchase": _purchase_to_dict(purchase) if purchase else None,
            "match_method": snapshot.match.match_method.value,
            "candidates_in_window": snapshot.match.candidates_in_window,
        },
        "acquisition_source": snapshot.acquisition_source.value,
        "listing": (
            {
                "low": _dec(listing.low),
                "high": _dec(listing.high),
                "observed_at": _ts(listing.observed_at),
                "error": listing.error,
            }
            if listing
            else None
        ),
        "transfer_event_count": snapshot.transfer_event_count,
        "current_owner": snapshot.current_owner,
        "purchase_price_usd": _dec(snapshot.purchase_price_usd),
    }


def snapshot_from_payload(payload: dict[str, Any]) -> ReconciliationSnapshot:
    try:
        raw_acquisition = payload.get("acquisition")
        acquisition = None
        if raw_acquisition:
            acquisition = AcquisitionRecord(
                acquired_at=_parse_ts(raw_acquisition.get("acquired_at")),
                from_address=raw_acquisition["from_address"],
                tx_id=raw_acquisition["tx_id"],
                acquisition_kind=AcquisitionKind(raw_acquisition["acquisition_kind"]),
                block_height=raw_acquisition.get("block_height"),
            )

        raw_match = payload.get("match") or {}
        raw_purchase = raw_match.get("matched_purchase")
        purchase = None
        if raw_purchase:
            purchase = PurchaseRecord(
                purchase_id=raw_purchase["purchase_id"],
                token_key=raw_purchase["token_key"],
                buyer_address=raw_purchase["buyer_address"],
                price_in_game_currency=Decimal(raw_purchase["price_in_game_currency"]),
                purchase_timestamp=datetime.fromisoformat(raw_purchase["purchase_timestamp"]),
                price_usd=_parse_dec(raw_purchase.get("price_usd")),
                tx_id=raw_purchase.get("tx_id"),
                order_id=raw_purchase.get("order_id"),
            )
        match = MatchResult(
            matched_purchase=purchase,
            match_method=MatchMethod(raw_match.get("match_method", MatchMethod.NONE.value)),
            candidates_in_window=int(raw_match.get("candidates_in_window", 0)),
        )

        raw_listing = payload.get("listing")
        listing = None
        if raw_listing:
            listing = ListingSnapshot(
                low=_parse_dec(raw_listing.get("low")),
                high=_parse_dec(raw_listing.get("high")),
                observed_at=datetime.fromisoformat(raw_listing["observed_at"]),
                error=raw_listing.get("error"),
            )

        return ReconciliationSnapshot(
            acquisition=acquisition,
            match=match,
            acquisition_source=AcquisitionSource(payload["acquisition_source"]),
            listing=listing,
            transfer_event_count=int(payload.get("transfer_event_count", 0)),
            current_owner=payload.get("current_owner"),
            purchase_price_usd=_parse_dec(payload.get("purchase_price_usd")),
        )
    except (KeyError, TypeError, ValueError, ArithmeticError) as exc:
        raise SnapshotDecodeError(f"Unreadable reconciliation snapshot: {exc}") from exc


__all__ = ["SnapshotDecodeError", "snapshot_from_payload", "snapshot_to_payload"]
