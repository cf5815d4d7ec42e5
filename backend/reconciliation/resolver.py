"""Transfer history resolution: which wallet received a token first, when, and from whom.

Block ranges are walked in bounded chunks. A chunk that fails is split into
``log_chunk_divisor`` smaller chunks and retried; once a chunk is at or below
``log_min_chunk_size`` a further failure is recorded as a gap and the walk
continues. The resolver never raises for upstream failures: whatever was
collected is returned with the gaps and the error noted on the history.
"""

from __future__ import annotations

import asyncio
from datetime import datetime

from loguru import logger

from app.domain import (
    AcquisitionKind,
    AcquisitionRecord,
    BlockRange,
    TransferEvent,
    TransferHistory,
)
from upstream.errors import UpstreamError

from .context import ReconciliationContext
from .errors import describe_failure
from .keys import ZERO_ADDRESS

UPSTREAM_FAILURES = (UpstreamError, asyncio.TimeoutError)


def iter_block_ranges(from_height: int, to_height: int, chunk_size: int) -> list[BlockRange]:
    ranges: list[BlockRange] = []
    start = from_height
    while start <= to_height:
        end = min(start + chunk_size - 1, to_height)
        ranges.append(BlockRange(start, end))
        start = end + 1
    return ranges


def split_block_range(block_range: BlockRange, divisor: int) -> list[BlockRange]:
    span = block_range.to_height - block_range.from_height + 1
    size = max(1, -(-span // divisor))
    return iter_block_ranges(block_range.from_height, block_range.to_height, size)


def find_first_incoming(events: list[TransferEvent], wallet_address: str) -> TransferEvent | None:
    # First-ever receipt only; a token that left and came back keeps its original acquisition.
    wallet = wallet_address.lower()
    incoming = [event for event in events if event.to_address == wallet]
    if not incoming:
        return None
    return min(incoming, key=lambda event: event.sort_key)


def classify_acquisition(event: TransferEvent) -> AcquisitionKind:
    if event.from_address == ZERO_ADDRESS:
        return AcquisitionKind.MINT
    return AcquisitionKind.TRANSFER


def resolve_start_height(context: ReconciliationContext, contract_address: str, latest: int) -> int:
    known = context.settings.deployment_height(contract_address)
    if known is not None:
        return min(known, latest)
    return max(0, latest - context.settings.lookback_blocks)


class TransferHistoryResolver:
    def __init__(self, context: ReconciliationContext) -> None:
        self.context = context
        self.settings = context.settings

    async def _query_chunk(
        self,
        history: TransferHistory,
        contract_address: str,
        token_id: str,
        block_range: BlockRange,
    ) -> list[TransferEvent]:
        history.chunks_queried += 1
        try:
            return await self.context.bounded(
                self.context.chain.query_transfer_events(
                    contract_address, token_id, block_range.from_height, block_range.to_height
                )
            )
        except UPSTREAM_FAILURES as exc:
            span = block_range.to_height - block_range.from_height + 1
            if span <= self.settings.log_min_chunk_size:
                logger.warning(
                    "Transfer query for {} #{} failed on blocks {}-{}; recording gap: {}",
                    contract_address,
                    token_id,
                    block_range.from_height,
                    block_range.to_height,
                    describe_failure(exc),
                )
                history.gaps.append(block_range)
                return []

        events: list[TransferEvent] = []
        for sub_range in split_block_range(block_range, self.settings.log_chunk_divisor):
            events.extend(await self._query_chunk(history, contract_address, token_id, sub_range))
        return events

    async def resolve(
        self, contract_address: str, token_id: str, wallet_address: str
    ) -> TransferHistory:
        history = TransferHistory()
        try:
            latest = await self.context.bounded(self.context.chain.block_number())
        except UPSTREAM_FAILURES as exc:
            history.error = f"chain head unavailable: {describe_failure(exc)}"
            logger.warning("Transfer history for {} #{}: {}", contract_address, token_id, history.error)
            return history

        history.from_height = resolve_start_height(self.context, contract_address, latest)
        history.to_height = latest

        events: list[TransferEvent] = []
        for block_range in iter_block_ranges(
            history.from_height, history.to_height, self.settings.log_chunk_size
        ):
            events.extend(await self._query_chunk(history, contract_address, token_id, block_range))

        history.events = sorted(set(events), key=lambda event: event.sort_key)
        if history.events:
            history.current_owner = history.events[-1].to_address

        first = find_first_incoming(history.events, wallet_address)
        if first is not None:
            history.acquisition = AcquisitionRecord(
                acquired_at=await self._block_time(first.block_height),
                from_address=first.from_address,
                tx_id=first.tx_id,
                acquisition_kind=classify_acquisition(first),
                block_height=first.block_height,
            )

        logger.info(
            "Resolved {} transfer events for {} #{} over {} chunks ({} gaps)",
            len(history.events),
            contract_address,
            token_id,
            history.chunks_queried,
            len(history.gaps),
        )
        return history

    async def _block_time(self, height: int) -> datetime | None:
        try:
            return await self.context.bounded(self.context.chain.block_timestamp(height))
        except UPSTREAM_FAILURES as exc:
            logger.warning("Block timestamp for {} unavailable: {}", height, describe_failure(exc))
            return None


async def resolve_transfer_history(
    context: ReconciliationContext,
    contract_address: str,
    token_id: str,
    wallet_address: str,
) -> TransferHistory:
    return await TransferHistoryResolver(context).resolve(contract_address, token_id, wallet_address)


__all__ = [
    "TransferHistoryResolver",
    "classify_acquisition",
    "find_first_incoming",
    "iter_block_ranges",
    "resolve_start_height",
    "resolve_transfer_history",
    "split_block_range",
]
