from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
from loguru import logger

from app.core.config import settings
from app.repositories.cache_repository import CACHE_NAMESPACE, CacheStore

from .base import AsyncApiClient

PRICE_CACHE_VERSION = "v1"


def build_historical_price_cache_key(coin_id: str, as_of: datetime) -> str:
    day = as_of.astimezone(timezone.utc).strftime("%Y-%m-%d")
    return f"{CACHE_NAMESPACE}:price:{coin_id}:{PRICE_CACHE_VERSION}:historical:{day}"


def _usd_price(payload: Any) -> Any:
    # market_data.current_price.usd; any other shape counts as no price.
    node = payload
    for field in ("market_data", "current_price", "usd"):
        if not isinstance(node, dict):
            return None
        node = node.get(field)
    return node


class PriceClient(AsyncApiClient):
    """Daily historical USD price of the in-game currency, cached per day when a store is supplied."""

    source = "price"

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        coin_id: str | None = None,
        cache: CacheStore | None = None,
        cache_ttl_seconds: int | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(timeout=timeout, client=client)
        self.base_url = (base_url or str(settings.price_api_url)).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.price_api_key
        self.coin_id = coin_id or settings.price_coin_id
        self.cache = cache
        self.cache_ttl_seconds = cache_ttl_seconds or settings.historical_price_ttl_seconds

    async def get_historical_price(self, as_of: datetime) -> Decimal | None:
        cache_key = build_historical_price_cache_key(self.coin_id, as_of)
        if self.cache is not None:
            cached = await asyncio.to_thread(self.cache.get, cache_key, PRICE_CACHE_VERSION)
            if cached.hit and cached.value and cached.value.get("usd") is not None:
                return Decimal(str(cached.value["usd"]))

        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["x-cg-demo-api-key"] = self.api_key
        payload = await self._request_json(
            "GET",
            f"{self.base_url}/coins/{self.coin_id}/history",
            params={
                "date": as_of.astimezone(timezone.utc).strftime("%d-%m-%Y"),
                "localization": "false",
            },
            headers=headers,
        )

        raw_price = _usd_price(payload)
        if raw_price is None:
            logger.warning("No historical {} price for {}", self.coin_id, as_of.date())
            return None
        try:
            price = Decimal(str(raw_price))
        except InvalidOperation:
            logger.warning("Unparseable historical price {!r} for {}", raw_price, as_of.date())
            return None
        if not price.is_finite() or price < 0:
            logger.warning("Rejecting historical price {} for {}", price, as_of.date())
            return None

        if self.cache is not None:
            await asyncio.to_thread(
                self.cache.set,
                cache_key,
                PRICE_CACHE_VERSION,
                {"usd": str(price)},
                self.cache_ttl_seconds,
            )
        return price


__all__ = ["PRICE_CACHE_VERSION", "PriceClient", "build_historical_price_cache_key"]
