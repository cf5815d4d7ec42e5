from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable

import httpx

from app.core.config import settings
from app.domain import ListingSnapshot
from app.models import utcnow

from .base import AsyncApiClient

_WEI_SCALE = Decimal(10) ** 18


def _listing_price(order: Any) -> Decimal | None:
    if not isinstance(order, dict) or not order.get("current_price"):
        return None
    try:
        price = Decimal(int(str(order["current_price"]))) / _WEI_SCALE
    except (InvalidOperation, ValueError):
        return None
    return price if price > 0 else None


class ListingsClient(AsyncApiClient):
    """Active Seaport listings for a single token, reduced to a low/high snapshot."""

    source = "listings"

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        chain: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(timeout=timeout, client=client)
        self.base_url = (base_url or str(settings.listings_api_url)).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.listings_api_key
        self.chain = chain or settings.listings_chain
        self._clock = clock

    async def get_listings(self, contract_address: str, token_id: str) -> ListingSnapshot:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-API-KEY"] = self.api_key
        payload = await self._request_json(
            "GET",
            f"{self.base_url}/orders/{self.chain}/seaport/listings",
            params={
                "asset_contract_address": contract_address,
                "token_ids": token_id,
                "limit": 50,
            },
            headers=headers,
        )
        orders = payload.get("orders") if isinstance(payload, dict) else None
        prices = [price for price in map(_listing_price, orders or []) if price is not None]
        if not prices:
            return ListingSnapshot(low=None, high=None, observed_at=self._clock())
        return ListingSnapshot(low=min(prices), high=max(prices), observed_at=self._clock())


__all__ = ["ListingsClient"]
