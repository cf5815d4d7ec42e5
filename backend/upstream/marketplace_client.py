from __future__ import annotations

from datetime import datetime
from typing import Any

import httpx
from loguru import logger

from app.core.config import settings
from app.domain import PurchaseRecord
from reconciliation.keys import parse_token_key

from .base import AsyncApiClient
from .errors import UpstreamError, UpstreamNotConfigured
from .normalize import extract_items, normalize_purchases

_PLACEHOLDER_MARKERS = ("yourgame",)
_ENVELOPE_KEYS = ("purchases", "items", "data")


def _isoformat_utc(dt: datetime) -> str:
    return dt.isoformat().replace("+00:00", "Z")


class MarketplaceClient(AsyncApiClient):
    """In-game marketplace sales ledger; every lookup degrades to ``[]`` when unconfigured."""

    source = "marketplace"

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        default_chain: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(timeout=timeout, client=client)
        if base_url is None and settings.marketplace_api_url:
            base_url = str(settings.marketplace_api_url)
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key if api_key is not None else settings.marketplace_api_key
        self.default_chain = default_chain or settings.chain_name

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url) and not any(
            marker in self.base_url for marker in _PLACEHOLDER_MARKERS
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _get(self, path: str, params: dict[str, Any]) -> Any:
        if not self.is_configured:
            raise UpstreamNotConfigured(self.source)
        try:
            payload = await self._request_json(
                "GET", f"{self.base_url}{path}", params=params, headers=self._headers()
            )
        except UpstreamError as exc:
            if exc.status_code == 503:
                raise UpstreamNotConfigured(self.source) from exc
            raise
        if isinstance(payload, dict) and payload.get("configured") is False:
            raise UpstreamNotConfigured(self.source)
        return payload

    async def get_purchases_by_token(self, token_key: str) -> list[PurchaseRecord]:
        chain, contract, token_id = parse_token_key(token_key)
        try:
            payload = await self._get(
                "/purchases/token",
                {"chain": chain, "contract": contract, "tokenId": token_id},
            )
        except UpstreamNotConfigured:
            logger.warning("Marketplace not configured; skipping token lookup for {}", token_key)
            return []
        items = extract_items(payload, *_ENVELOPE_KEYS)
        return normalize_purchases(items, token_key=token_key, default_chain=self.default_chain)

    async def get_purchases_by_wallet(
        self,
        wallet_address: str,
        from_time: datetime | None = None,
        to_time: datetime | None = None,
        limit: int | None = None,
    ) -> list[PurchaseRecord]:
        wallet = wallet_address.lower()
        params: dict[str, Any] = {"wallet": wallet}
        if from_time is not None:
            params["fromDate"] = _isoformat_utc(from_time)
        if to_time is not None:
            params["toDate"] = _isoformat_utc(to_time)
        if limit:
            params["limit"] = limit
        try:
            payload = await self._get("/purchases/wallet", params)
        except UpstreamNotConfigured:
            logger.warning("Marketplace not configured; skipping wallet lookup for {}", wallet)
            return []
        items = extract_items(payload, *_ENVELOPE_KEYS)
        return normalize_purchases(items, fallback_buyer=wallet, default_chain=self.default_chain)


__all__ = ["MarketplaceClient"]
