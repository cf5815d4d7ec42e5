from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

from reconciliation.retriever import dedupe_purchases, retrieve_candidates
from upstream.errors import UpstreamError

from conftest import ACQUIRED_AT, OTHER_WALLET, TOKEN_KEY, WALLET, FakeMarketplace, purchase


def test_shared_tx_id_collapses_records():
    first = purchase("A", tx_id="0xT1")
    second = purchase("B", tx_id="0xt1", price="55", at=ACQUIRED_AT + timedelta(hours=1))

    assert dedupe_purchases([first, second]) == [first]


def test_shared_order_id_or_composite_collapses_records():
    base = purchase("A", order_id="order-1")
    same_order = purchase("B", order_id="order-1", price="7")
    same_composite = purchase("C", at=ACQUIRED_AT.replace(microsecond=500_000), price="100.00")
    distinct = purchase("D", price="101")

    assert dedupe_purchases([base, same_order, same_composite, distinct]) == [base, distinct]


def test_composite_key_ignores_token_key_case():
    upper = replace(purchase("B"), token_key=TOKEN_KEY.upper())

    assert dedupe_purchases([purchase("A"), upper]) == [purchase("A")]


def test_dedupe_is_idempotent():
    records = [
        purchase("A", tx_id="0x1"),
        purchase("B", tx_id="0x1", order_id="o-2", price="2"),
        purchase("C", order_id="o-2", price="3"),
        purchase("D", price="4"),
        purchase("A", price="5"),
    ]
    once = dedupe_purchases(records)

    assert dedupe_purchases(once) == once
    assert [record.purchase_id for record in once] == ["A", "D"]


@pytest.mark.asyncio
async def test_retrieves_from_token_viewer_and_owner(make_context):
    foreign = replace(purchase("foreign"), token_key="gunz:0x" + "1" * 40 + ":7")
    marketplace = FakeMarketplace(
        by_token=[purchase("A", tx_id="0x1")],
        by_wallet={
            WALLET: [purchase("B", tx_id="0x1"), foreign],
            OTHER_WALLET: [purchase("C", price="90", buyer=OTHER_WALLET)],
        },
    )
    context = make_context(marketplace=marketplace)

    candidates, stats = await retrieve_candidates(context, TOKEN_KEY, WALLET, OTHER_WALLET, ACQUIRED_AT)

    assert [c.purchase_id for c in candidates] == ["A", "C"]
    assert marketplace.wallet_calls == [WALLET, OTHER_WALLET]
    assert (stats.by_token, stats.by_viewer_wallet, stats.by_current_owner) == (1, 1, 1)
    assert stats.merged == 3
    assert stats.deduplicated == 2


@pytest.mark.asyncio
async def test_owner_lookup_skipped_when_owner_is_viewer(make_context):
    marketplace = FakeMarketplace()
    context = make_context(marketplace=marketplace)

    await retrieve_candidates(context, TOKEN_KEY, WALLET, WALLET.upper().replace("0X", "0x"), ACQUIRED_AT)

    assert marketplace.wallet_calls == [WALLET]


@pytest.mark.asyncio
async def test_wallet_lookups_need_acquisition_time(make_context):
    marketplace = FakeMarketplace(by_token=[purchase("A")])
    context = make_context(marketplace=marketplace)

    candidates, _ = await retrieve_candidates(context, TOKEN_KEY, WALLET, OTHER_WALLET, None)

    assert [c.purchase_id for c in candidates] == ["A"]
    assert marketplace.wallet_calls == []


@pytest.mark.asyncio
async def test_unconfigured_marketplace_returns_empty(make_context):
    context = make_context(marketplace=FakeMarketplace(by_token=[purchase("A")], configured=False))

    candidates, stats = await retrieve_candidates(context, TOKEN_KEY, WALLET, None, ACQUIRED_AT)

    assert candidates == []
    assert stats.marketplace_configured is False


@pytest.mark.asyncio
async def test_failed_lookup_degrades_to_remaining_results(make_context):
    class FlakyMarketplace(FakeMarketplace):
        async def get_purchases_by_token(self, token_key):
            raise UpstreamError("marketplace", "HTTP 500")

    marketplace = FlakyMarketplace(by_wallet={WALLET: [purchase("B")]})
    context = make_context(marketplace=marketplace)

    candidates, stats = await retrieve_candidates(context, TOKEN_KEY, WALLET, None, ACQUIRED_AT)

    assert [c.purchase_id for c in candidates] == ["B"]
    assert stats.errors == ["by_token: marketplace: HTTP 500"]
