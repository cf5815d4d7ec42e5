from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import httpx
from loguru import logger

from app.core.config import settings
from app.domain import TransferEvent

from .base import AsyncApiClient
from .errors import UpstreamError

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


def _hex_to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 16) if value.startswith(("0x", "0X")) else int(value)
        except ValueError:
            pass
    raise ValueError(f"expected hex quantity, got {value!r}")


def _topic_address(topic: str) -> str:
    return "0x" + topic[-40:].lower()


def _token_topic(token_id: str) -> str:
    return "0x" + format(int(token_id), "064x")


def decode_transfer_log(log: dict[str, Any]) -> TransferEvent | None:
    """Decode an ERC-721 ``Transfer`` log; other shapes (e.g. ERC-20) yield ``None``."""
    if log.get("removed"):
        return None
    topics = log.get("topics") or []
    if len(topics) != 4 or str(topics[0]).lower() != TRANSFER_TOPIC:
        return None
    try:
        return TransferEvent(
            from_address=_topic_address(topics[1]),
            to_address=_topic_address(topics[2]),
            token_id=str(_hex_to_int(topics[3])),
            block_height=_hex_to_int(log.get("blockNumber")),
            event_index=_hex_to_int(log.get("logIndex")),
            tx_id=str(log.get("transactionHash") or "").lower(),
        )
    except (TypeError, ValueError):
        logger.warning("Skipping undecodable transfer log {}", log)
        return None


class ChainClient(AsyncApiClient):
    """Minimal JSON-RPC client covering the calls the transfer resolver needs."""

    source = "chain"

    def __init__(
        self,
        *,
        rpc_url: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(timeout=timeout, client=client)
        self.rpc_url = rpc_url or str(settings.chain_rpc_url)
        self._request_id = 0

    async def _call(self, method: str, params: list[Any]) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        body = await self._request_json("POST", self.rpc_url, json=payload)
        if not isinstance(body, dict):
            raise UpstreamError(self.source, f"{method} returned a non-object response")
        error = body.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise UpstreamError(self.source, f"{method} failed: {message}")
        return body.get("result")

    async def block_number(self) -> int:
        return _hex_to_int(await self._call("eth_blockNumber", []))

    async def block_timestamp(self, height: int) -> datetime | None:
        block = await self._call("eth_getBlockByNumber", [hex(height), False])
        if not isinstance(block, dict) or block.get("timestamp") is None:
            return None
        return datetime.fromtimestamp(_hex_to_int(block["timestamp"]), tz=timezone.utc)

    async def query_transfer_events(
        self,
        contract_address: str,
        token_id: str,
        from_height: int,
        to_height: int,
    ) -> list[TransferEvent]:
        log_filter = {
            "address": contract_address,
            "fromBlock": hex(from_height),
            "toBlock": hex(to_height),
            "topics": [TRANSFER_TOPIC, None, None, _token_topic(token_id)],
        }
        logs = await self._call("eth_getLogs", [log_filter])
        if not isinstance(logs, list):
            raise UpstreamError(self.source, "eth_getLogs returned a non-list result")
        events = [event for event in (decode_transfer_log(log) for log in logs) if event]
        events.sort(key=lambda event: event.sort_key)
        return events


__all__ = ["ChainClient", "TRANSFER_TOPIC", "decode_transfer_log"]
