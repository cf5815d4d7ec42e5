"""Entry points the HTTP layer uses to view tokens and portfolios."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from functools import partial
from typing import Awaitable, Callable, Sequence

from loguru import logger

from app.core.config import Settings
from app.db import SessionLocal
from app.domain import TokenReconciliation
from app.repositories import CacheRepository
from reconciliation.context import ReconciliationContext, RefreshSession
from reconciliation.errors import InvalidInputError
from reconciliation.keys import normalize_address
from reconciliation.pipeline import TokenRef, resolve_token_ref
from reconciliation.portfolio import degraded_result, run_portfolio
from reconciliation.refresh import RefreshController


@dataclass(slots=True)
class TokenView:
    result: TokenReconciliation
    background: Callable[[], Awaitable[None]] | None = None


@dataclass(slots=True)
class PortfolioView:
    results: list[TokenReconciliation]
    requested: int

    @property
    def complete(self) -> bool:
        return len(self.results) == self.requested


class PortfolioService:
    def __init__(
        self,
        controller: RefreshController,
        cache: CacheRepository | None = None,
    ) -> None:
        self.controller = controller
        self.cache = cache

    @property
    def settings(self) -> Settings:
        return self.controller.settings

    async def view_token(
        self,
        wallet_address: str,
        token_id: str,
        *,
        contract_address: str | None = None,
        refresh: bool = True,
    ) -> TokenView:
        """Render from cache when possible and hand back the background refresh to schedule.

        On a cache miss the pipeline runs inline.
        """
        ref = resolve_token_ref(self.settings, wallet_address, contract_address, token_id)
        session = self.controller.open_session(f"{ref.wallet_address}:{ref.token_key}")
        cached = await self.controller.read_cached(ref)

        if cached is not None:
            if not refresh:
                self.controller.close_session(session)
                return TokenView(cached)
            return TokenView(
                cached, background=partial(self._refresh_in_background, session, ref, cached)
            )

        try:
            result = await self.controller.refresh(session, ref)
        finally:
            self.controller.close_session(session)
        if result is None:
            # A newer view of the same token took over; show whatever it has cached so far.
            result = await self.controller.read_cached(ref) or degraded_result(
                ref, "superseded by a newer request"
            )
        return TokenView(result)

    async def _refresh_in_background(
        self, session: RefreshSession, ref: TokenRef, cached: TokenReconciliation
    ) -> None:
        try:
            await self.controller.refresh(session, ref, cached)
        except Exception:
            logger.exception("Background refresh of {} for {} failed", ref.token_key, ref.wallet_address)
        finally:
            self.controller.close_session(session)

    async def view_portfolio(
        self,
        wallet_address: str,
        token_ids: Sequence[str],
        *,
        contract_address: str | None = None,
    ) -> PortfolioView:
        if not token_ids:
            raise InvalidInputError("At least one token_id is required")
        wallet = normalize_address(wallet_address)
        session = self.controller.open_session(f"{wallet}:portfolio")
        try:
            results = await run_portfolio(
                self.controller, session, wallet, contract_address, token_ids
            )
        finally:
            self.controller.close_session(session)
        return PortfolioView(results=results, requested=len(token_ids))

    async def clear_wallet(self, wallet_address: str) -> int:
        wallet = normalize_address(wallet_address)
        self.controller.cancel_wallet(wallet)
        if self.cache is None:
            return 0
        return await asyncio.to_thread(self.cache.clear_wallet, wallet)

    async def aclose(self) -> None:
        await self.controller.context.aclose()


def build_portfolio_service(settings: Settings) -> PortfolioService:
    cache = CacheRepository(SessionLocal)
    context = ReconciliationContext.from_settings(settings, cache=cache)
    return PortfolioService(RefreshController(context), cache)


__all__ = ["PortfolioService", "PortfolioView", "TokenView", "build_portfolio_service"]
