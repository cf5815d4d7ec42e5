from __future__ import annotations

import sys
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from app.core.config import Settings
from app.db import build_engine, build_session_factory, init_db
from app.domain import ListingSnapshot, PurchaseRecord, TransferEvent
from app.repositories import CacheRepository

WALLET = "0x" + "a" * 40
OTHER_WALLET = "0x" + "b" * 40
CONTRACT = "0x9ed98e159be43a8d42b64053831fcae5e4d7d271"
TOKEN_KEY = f"gunz:{CONTRACT}:7"
ACQUIRED_AT = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = ACQUIRED_AT) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeChain:
    """In-memory chain: serves ``events`` for any range and fails on ranges listed in ``failing``."""

    def __init__(self, events=(), *, head=1_000_000, timestamps=None, failing=None):
        self.events = list(events)
        self.head = head
        self.timestamps = timestamps or {}
        self.failing = failing or (lambda from_height, to_height: False)
        self.calls: list[tuple[int, int]] = []

    async def block_number(self) -> int:
        return self.head

    async def block_timestamp(self, height: int):
        return self.timestamps.get(height, ACQUIRED_AT)

    async def query_transfer_events(self, contract, token_id, from_height, to_height):
        from upstream.errors import UpstreamError

        self.calls.append((from_height, to_height))
        if self.failing(from_height, to_height):
            raise UpstreamError("chain", "range too large")
        return [e for e in self.events if from_height <= e.block_height <= to_height]


class FakeMarketplace:
    def __init__(self, by_token=(), by_wallet=None, *, configured=True):
        self.by_token = list(by_token)
        self.by_wallet = by_wallet or {}
        self.is_configured = configured
        self.wallet_calls: list[str] = []

    async def get_purchases_by_token(self, token_key):
        return list(self.by_token)

    async def get_purchases_by_wallet(self, wallet, from_time=None, to_time=None, limit=None):
        self.wallet_calls.append(wallet)
        return list(self.by_wallet.get(wallet, []))


class FakeListings:
    def __init__(self, low=None, high=None, *, error=None):
        self.low = low
        self.high = high
        self.error = error
        self.calls = 0

    async def get_listings(self, contract, token_id):
        from upstream.errors import UpstreamError

        self.calls += 1
        if self.error:
            raise UpstreamError("listings", self.error)
        return ListingSnapshot(low=self.low, high=self.high, observed_at=ACQUIRED_AT)


class FakePrices:
    def __init__(self, rate=None):
        self.rate = rate

    async def get_historical_price(self, as_of):
        return self.rate


def transfer(from_address, to_address, block_height, event_index=0, tx_id=None, token_id="7"):
    return TransferEvent(
        from_address=from_address,
        to_address=to_address,
        token_id=token_id,
        block_height=block_height,
        event_index=event_index,
        tx_id=tx_id or f"0x{block_height:064x}",
    )


def purchase(purchase_id, *, buyer=WALLET, at=ACQUIRED_AT, price="100", tx_id=None, order_id=None):
    return PurchaseRecord(
        purchase_id=purchase_id,
        token_key=TOKEN_KEY,
        buyer_address=buyer,
        price_in_game_currency=Decimal(price),
        purchase_timestamp=at,
        tx_id=tx_id,
        order_id=order_id,
    )


@pytest.fixture
def test_settings(monkeypatch) -> Settings:
    settings = Settings(
        database_url="sqlite:///:memory:",
        nft_contract_address=CONTRACT,
        deployment_heights={f"43419:{CONTRACT}": 900_000},
        log_chunk_size=40_000,
        log_min_chunk_size=10_000,
        log_chunk_divisor=4,
        marketplace_api_url="https://market.example.com/api",
    )
    monkeypatch.setattr("app.core.config.get_settings", lambda: settings)
    monkeypatch.setattr("app.core.config.settings", settings)
    return settings


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite:///:memory:")
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def cache_store(session_factory, clock) -> CacheRepository:
    return CacheRepository(session_factory, clock=clock)


@pytest.fixture
def make_context(test_settings, cache_store, clock):
    from reconciliation.context import ReconciliationContext

    def _make(*, chain=None, marketplace=None, listings=None, prices=None, cache=cache_store):
        return ReconciliationContext(
            settings=test_settings,
            chain=chain or FakeChain(),
            marketplace=marketplace or FakeMarketplace(),
            listings=listings or FakeListings(),
            prices=prices or FakePrices(),
            cache=cache,
            clock=clock,
        )

    return _make
