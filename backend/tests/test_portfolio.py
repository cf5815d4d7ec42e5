from __future__ import annotations

import asyncio

import pytest

from app.domain import PositionState
from reconciliation.errors import InvalidInputError
from reconciliation.pipeline import resolve_token_ref
from reconciliation.portfolio import run_portfolio
from reconciliation.refresh import RefreshController

from conftest import CONTRACT, WALLET, FakeChain


class CountingChain(FakeChain):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.active = 0
        self.peak = 0
        self.blow_up_on = set()

    async def query_transfer_events(self, contract, token_id, from_height, to_height):
        if token_id in self.blow_up_on:
            raise RuntimeError(f"decoder bug for token {token_id}")
        self.active += 1
        self.peak = max(self.peak, self.active)
        # Later tokens finish first so ordering cannot come from completion order.
        await asyncio.sleep(0.001 * (20 - int(token_id)))
        self.active -= 1
        return await super().query_transfer_events(contract, token_id, from_height, to_height)


@pytest.mark.asyncio
async def test_results_keep_input_order_and_batches_stay_bounded(make_context, test_settings):
    test_settings.log_chunk_size = 1_000_000
    chain = CountingChain()
    controller = RefreshController(make_context(chain=chain))
    token_ids = [str(i) for i in range(12)]

    results = await run_portfolio(
        controller, controller.open_session(f"{WALLET}:portfolio"), WALLET, CONTRACT, token_ids
    )

    assert [r.token_key.rsplit(":", 1)[1] for r in results] == token_ids
    assert chain.peak <= test_settings.portfolio_batch_size


@pytest.mark.asyncio
async def test_one_failing_token_degrades_without_aborting(make_context, test_settings):
    test_settings.log_chunk_size = 1_000_000
    chain = CountingChain()
    chain.blow_up_on = {"3"}
    controller = RefreshController(make_context(chain=chain))

    results = await run_portfolio(
        controller, controller.open_session("p"), WALLET, CONTRACT, ["1", "3", "5"]
    )

    assert len(results) == 3
    assert results[1].error.startswith("RuntimeError")
    assert results[1].position.state is PositionState.NO_MARKET_REF
    assert results[0].error is None and results[2].error is None


@pytest.mark.asyncio
async def test_cancellation_stops_at_batch_boundary(make_context, test_settings):
    test_settings.log_chunk_size = 1_000_000
    test_settings.portfolio_batch_size = 2
    controller = RefreshController(make_context())
    session = controller.open_session("p")

    class CancelAfterFirstBatch(CountingChain):
        async def query_transfer_events(self, *args):
            session.cancel()
            return await super().query_transfer_events(*args)

    controller.context.chain = CancelAfterFirstBatch()

    results = await run_portfolio(controller, session, WALLET, CONTRACT, ["1", "2", "3", "4"])

    assert results == []
    ref = resolve_token_ref(test_settings, WALLET, CONTRACT, "1")
    assert (await controller.read_cached(ref)) is None


@pytest.mark.asyncio
async def test_invalid_token_id_fails_whole_call(make_context):
    controller = RefreshController(make_context())

    with pytest.raises(InvalidInputError):
        await run_portfolio(controller, controller.open_session("p"), WALLET, CONTRACT, ["1", "x"])
