from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from app.core.config import Settings
from app.models import utcnow
from app.repositories.cache_repository import CacheStore
from upstream import ChainClient, ListingsClient, MarketplaceClient, PriceClient

T = TypeVar("T")


class FailureCache:
    """Remembers recently failed lookups so repeat requests short-circuit until the entry expires."""

    def __init__(
        self,
        ttl_seconds: int,
        *,
        max_entries: int = 100,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.ttl = timedelta(seconds=ttl_seconds)
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, tuple[datetime, str]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        failed_at, error = entry
        if self._clock() - failed_at >= self.ttl:
            del self._entries[key]
            return None
        return error

    def record(self, key: str, error: str) -> None:
        self._entries[key] = (self._clock(), error)
        if len(self._entries) > self.max_entries:
            self._sweep()

    def clear(self, key: str | None = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def _sweep(self) -> None:
        now = self._clock()
        for key in [k for k, (failed_at, _) in self._entries.items() if now - failed_at >= self.ttl]:
            del self._entries[key]
        # Still over capacity: drop the oldest failures first.
        overflow = len(self._entries) - self.max_entries
        if overflow > 0:
            oldest = sorted(self._entries, key=lambda k: self._entries[k][0])[:overflow]
            for key in oldest:
                del self._entries[key]


@dataclass(slots=True)
class RefreshSession:
    """Cancellation handle for one view; once cancelled, nothing it produces is applied."""

    scope: str
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    cancelled: bool = False

    def cancel(self) -> None:
        if not self.cancelled:
            logger.info("Cancelling refresh session {} for {}", self.session_id, self.scope)
        self.cancelled = True


@dataclass(slots=True)
class ReconciliationContext:
    """Runtime context passed to every reconciliation component."""

    settings: Settings
    chain: ChainClient
    marketplace: MarketplaceClient
    listings: ListingsClient
    prices: PriceClient
    cache: CacheStore | None = None
    failures: FailureCache | None = None
    clock: Callable[[], datetime] = utcnow

    def __post_init__(self) -> None:
        if self.failures is None:
            self.failures = FailureCache(
                self.settings.listing_failure_ttl_seconds, clock=self.clock
            )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        cache: CacheStore | None = None,
        **overrides: Any,
    ) -> "ReconciliationContext":
        timeout = settings.upstream_timeout_seconds
        clients = {
            "chain": ChainClient(rpc_url=str(settings.chain_rpc_url), timeout=timeout),
            "marketplace": MarketplaceClient(
                base_url=str(settings.marketplace_api_url or ""),
                api_key=settings.marketplace_api_key,
                default_chain=settings.chain_name,
                timeout=timeout,
            ),
            "listings": ListingsClient(
                base_url=str(settings.listings_api_url),
                api_key=settings.listings_api_key,
                chain=settings.listings_chain,
                timeout=timeout,
            ),
            "prices": PriceClient(
                base_url=str(settings.price_api_url),
                api_key=settings.price_api_key,
                coin_id=settings.price_coin_id,
                cache=cache,
                cache_ttl_seconds=settings.historical_price_ttl_seconds,
                timeout=timeout,
            ),
        }
        clients.update(overrides)
        return cls(settings=settings, cache=cache, **clients)

    @property
    def timeout(self) -> float:
        return self.settings.upstream_timeout_seconds

    async def bounded(self, awaitable: Awaitable[T]) -> T:
        """Await an upstream call under the configured per-call timeout."""
        return await asyncio.wait_for(awaitable, timeout=self.timeout)

    async def aclose(self) -> None:
        for client in (self.chain, self.marketplace, self.listings, self.prices):
            closer = getattr(client, "aclose", None)
            if closer is not None:
                await closer()


__all__ = ["FailureCache", "ReconciliationContext", "RefreshSession"]
