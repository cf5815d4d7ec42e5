from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from upstream.normalize import extract_items, normalize_purchase, normalize_purchases

from conftest import CONTRACT, TOKEN_KEY, WALLET

EXPECTED_TS = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_normalizes_marketplace_payload():
    record = normalize_purchase(
        {
            "id": "p-1",
            "buyer": WALLET.upper().replace("0X", "0x"),
            "priceGun": "125.5",
            "priceUsd": 3.2,
            "purchaseDate": "2025-03-01T12:00:00Z",
            "txHash": "0xABCDEF",
            "orderId": "o-9",
            "chain": "gunz",
            "contract": CONTRACT.upper().replace("0X", "0x"),
            "tokenId": "007",
        }
    )

    assert record.purchase_id == "p-1"
    assert record.token_key == TOKEN_KEY
    assert record.buyer_address == WALLET
    assert record.price_in_game_currency == Decimal("125.5")
    assert record.price_usd == Decimal("3.2")
    assert record.purchase_timestamp == EXPECTED_TS
    assert record.tx_id == "0xabcdef"
    assert record.order_id == "o-9"


def test_accepts_aliases_and_timestamp_shapes():
    seconds = int(EXPECTED_TS.timestamp())
    payloads = [
        {"purchaseId": "a", "price": 1, "timestamp": seconds},
        {"purchaseId": "b", "price": 1, "timestamp": seconds * 1000},
        {"purchaseId": "c", "price": 1, "createdAt": {"seconds": seconds}},
        {"purchaseId": "d", "price": 1, "purchaseDate": str(seconds)},
    ]

    records = normalize_purchases(payloads, token_key=TOKEN_KEY, fallback_buyer=WALLET)

    assert [r.purchase_timestamp for r in records] == [EXPECTED_TS] * 4
    assert all(r.buyer_address == WALLET for r in records)


def test_drops_records_missing_price_timestamp_or_token():
    assert normalize_purchase({"id": "x", "timestamp": 1}, token_key=TOKEN_KEY) is None
    assert normalize_purchase({"id": "x", "price": 1}, token_key=TOKEN_KEY) is None
    assert normalize_purchase({"id": "x", "price": -1, "timestamp": 1}, token_key=TOKEN_KEY) is None
    assert normalize_purchase({"id": "x", "price": 1, "timestamp": 1}) is None
    assert normalize_purchase({"id": "x", "price": 1, "timestamp": 1, "tokenKey": "bad"}) is None
    assert normalize_purchase("not a record") is None


def test_identity_falls_back_to_tx_order_then_composite():
    base = {"price": "10", "timestamp": int(EXPECTED_TS.timestamp())}

    by_tx = normalize_purchase({**base, "transactionHash": "0xFF"}, token_key=TOKEN_KEY)
    by_order = normalize_purchase({**base, "orderId": "o-1"}, token_key=TOKEN_KEY)
    composite = normalize_purchase(base, token_key=TOKEN_KEY)

    assert by_tx.purchase_id == "0xff"
    assert by_order.purchase_id == "o-1"
    assert composite.purchase_id == f"{TOKEN_KEY}:{int(EXPECTED_TS.timestamp())}:10"


def test_extract_items_reads_common_envelopes():
    assert extract_items([1, 2], "purchases") == [1, 2]
    assert extract_items({"data": [3]}, "purchases", "items", "data") == [3]
    assert extract_items({"purchases": None, "items": [4]}, "purchases", "items") == [4]
    assert extract_items("oops", "purchases") == []
