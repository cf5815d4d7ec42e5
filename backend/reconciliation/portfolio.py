from __future__ import annotations

import asyncio
from typing import Iterable

from loguru import logger

from app.domain import (
    AcquisitionSource,
    MatchResult,
    PositionResult,
    PositionState,
    ReconciliationSnapshot,
    TokenReconciliation,
)

from .context import RefreshSession
from .pipeline import TokenRef, resolve_token_ref
from .refresh import RefreshController


def degraded_result(ref: TokenRef, error: str) -> TokenReconciliation:
    return TokenReconciliation(
        wallet_address=ref.wallet_address,
        token_key=ref.token_key,
        snapshot=ReconciliationSnapshot(
            acquisition=None,
            match=MatchResult(),
            acquisition_source=AcquisitionSource.NONE,
            listing=None,
        ),
        position=PositionResult(state=PositionState.NO_MARKET_REF),
        error=error,
    )


async def _run_one(
    controller: RefreshController, session: RefreshSession, ref: TokenRef
) -> TokenReconciliation | None:
    try:
        return await controller.refresh(session, ref)
    except Exception as exc:
        logger.exception("Reconciliation of {} failed", ref.token_key)
        return degraded_result(ref, f"{exc.__class__.__name__}: {exc}")


async def run_portfolio(
    controller: RefreshController,
    session: RefreshSession,
    wallet_address: str,
    contract_address: str | None,
    token_ids: Iterable[object],
) -> list[TokenReconciliation]:
    """Reconcile ``token_ids`` in fixed-width batches, returning results in input order.

    All inputs are validated before any work starts. If the session is cancelled
    the run stops at the next batch boundary and returns what has completed.
    """
    settings = controller.settings
    refs = [
        resolve_token_ref(settings, wallet_address, contract_address, token_id)
        for token_id in token_ids
    ]
    batch_size = settings.portfolio_batch_size
    results: list[TokenReconciliation] = []
    for start in range(0, len(refs), batch_size):
        if session.cancelled:
            logger.info("Portfolio run for {} cancelled after {} tokens", wallet_address, len(results))
            break
        batch = refs[start : start + batch_size]
        outcomes = await asyncio.gather(*(_run_one(controller, session, ref) for ref in batch))
        if session.cancelled or any(outcome is None for outcome in outcomes):
            logger.info("Portfolio run for {} cancelled after {} tokens", wallet_address, len(results))
            break
        results.extend(outcomes)
    return results


__all__ = ["degraded_result", "run_portfolio"]
