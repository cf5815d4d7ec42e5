from __future__ import annotations

from datetime import timedelta
from typing import Iterable

from loguru import logger

from app.domain import AcquisitionRecord, MatchMethod, MatchResult, PurchaseRecord

DEFAULT_MATCH_WINDOW = timedelta(minutes=10)


def match_acquisition(
    acquisition: AcquisitionRecord | None,
    candidates: Iterable[PurchaseRecord],
    *,
    viewer_wallet: str | None = None,
    current_owner: str | None = None,
    window: timedelta = DEFAULT_MATCH_WINDOW,
) -> MatchResult:
    """Pick at most one purchase as the price paid for ``acquisition``.

    An exact transaction hash match wins outright. Otherwise candidates within
    ``window`` of the acquisition time are ranked by buyer identity (viewer
    wallet or current owner first), then time distance, then purchase id.
    """
    if acquisition is None:
        return MatchResult()

    pool = list(candidates)
    if acquisition.tx_id:
        tx_id = acquisition.tx_id.lower()
        exact = sorted(
            (c for c in pool if c.tx_id and c.tx_id.lower() == tx_id),
            key=lambda c: c.purchase_id,
        )
        if exact:
            logger.debug("Exact tx match {} for {}", exact[0].purchase_id, tx_id)
            return MatchResult(exact[0], MatchMethod.EXACT_TX, candidates_in_window=len(exact))

    if acquisition.acquired_at is None:
        return MatchResult()

    acquired_at = acquisition.acquired_at
    in_window = [c for c in pool if abs(c.purchase_timestamp - acquired_at) <= window]
    if not in_window:
        return MatchResult()

    identities = {address.lower() for address in (viewer_wallet, current_owner) if address}

    def rank(candidate: PurchaseRecord) -> tuple[int, timedelta, str]:
        identity_match = candidate.buyer_address.lower() in identities
        distance = abs(candidate.purchase_timestamp - acquired_at)
        return (0 if identity_match else 1, distance, candidate.purchase_id)

    ranked = sorted(in_window, key=rank)
    logger.debug(
        "Time-window match {} chosen from {} candidates",
        ranked[0].purchase_id,
        len(ranked),
    )
    return MatchResult(ranked[0], MatchMethod.TIME_WINDOW, candidates_in_window=len(ranked))


__all__ = ["DEFAULT_MATCH_WINDOW", "match_acquisition"]
