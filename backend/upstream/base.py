from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from app.core.config import settings

from .errors import UpstreamError


class AsyncApiClient:
    """Shared lifecycle and JSON request handling for collaborator clients."""

    source = "upstream"

    def __init__(
        self,
        *,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.timeout = timeout or settings.upstream_timeout_seconds
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=self.timeout)

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        logger.debug("{} {} {} params={}", self.source, method, url, params)
        try:
            response = await self.client.request(
                method, url, params=params, json=json, headers=headers
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise UpstreamError(self.source, f"HTTP {status} from {url}", status_code=status) from exc
        except httpx.TimeoutException as exc:
            raise UpstreamError(self.source, f"timed out calling {url}") from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(self.source, f"{exc.__class__.__name__} calling {url}") from exc
        except ValueError as exc:
            raise UpstreamError(self.source, f"invalid JSON from {url}") from exc

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


__all__ = ["AsyncApiClient"]
