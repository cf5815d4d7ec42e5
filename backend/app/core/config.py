import json
from functools import lru_cache
from typing import Any

from pydantic import AnyUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_DEPLOYMENT_HEIGHTS: dict[str, int] = {
    # GunzChain: Off The Grid collection
    "43419:0x9ed98e159be43a8d42b64053831fcae5e4d7d271": 1_000_000,
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = Field(False, description="Enable FastAPI debug mode")
    database_url: AnyUrl | str = Field(
        default="sqlite:///./data/walletscope.db",
        description="SQLAlchemy compatible database URL backing the reconciliation cache",
    )
    chain_name: str = Field(
        default="gunz",
        description="Chain segment used when building token keys",
    )
    chain_id: int = Field(
        default=43419,
        description="Chain id used to look up known contract deployment heights",
    )
    chain_rpc_url: AnyUrl | str = Field(
        default="https://subnets.avax.network/gunzilla/mainnet/rpc",
        description="JSON-RPC endpoint used for transfer event queries",
    )
    nft_contract_address: str | None = Field(
        default=None,
        description="Default NFT collection contract used when requests omit one",
    )
    deployment_heights: dict[str, int] | str = Field(
        default_factory=lambda: dict(DEFAULT_DEPLOYMENT_HEIGHTS),
        description="Known deployment heights keyed by '{chainId}:{contract}'",
    )
    lookback_blocks: int = Field(
        default=(6 * 30 * 24 * 60 * 60) // 2,
        description="Fallback lookback window for contracts without a known deployment height",
        ge=1,
    )
    log_chunk_size: int = Field(
        default=100_000,
        description="Initial block range size for transfer event queries",
        ge=1,
    )
    log_min_chunk_size: int = Field(
        default=10_000,
        description="Failed chunks at or below this size are recorded as gaps instead of subdivided",
        ge=1,
    )
    log_chunk_divisor: int = Field(
        default=4,
        description="Factor by which a failed chunk is subdivided",
        ge=2,
    )
    marketplace_api_url: AnyUrl | str | None = Field(
        default=None,
        description="Base URL of the in-game marketplace sales ledger",
    )
    marketplace_api_key: str | None = Field(
        default=None,
        description="Bearer token for the in-game marketplace",
    )
    listings_api_url: AnyUrl | str = Field(
        default="https://api.opensea.io/api/v2",
        description="Base URL of the listings provider",
    )
    listings_api_key: str | None = Field(
        default=None,
        description="API key for the listings provider",
    )
    listings_chain: str = Field(
        default="avalanche",
        description="Chain slug the listings provider uses for the collection",
    )
    price_api_url: AnyUrl | str = Field(
        default="https://api.coingecko.com/api/v3",
        description="Base URL of the price oracle",
    )
    price_api_key: str | None = Field(
        default=None,
        description="Demo API key for the price oracle",
    )
    price_coin_id: str = Field(
        default="gunz",
        description="Price oracle identifier of the in-game currency",
    )
    upstream_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout applied to every upstream call",
        gt=0,
    )
    match_window_minutes: int = Field(
        default=10,
        description="Half-width of the purchase/acquisition time matching window",
        ge=1,
    )
    wallet_lookup_window_hours: int = Field(
        default=24,
        description="Half-width of the by-wallet purchase lookup around the acquisition time",
        ge=1,
    )
    wallet_lookup_limit: int = Field(
        default=100,
        description="Maximum purchases requested per by-wallet lookup",
        ge=1,
    )
    portfolio_batch_size: int = Field(
        default=5,
        description="Number of tokens reconciled concurrently in a portfolio run",
        ge=1,
    )
    cache_schema_version: str = Field(
        default="v3",
        description="Schema version stamped on cached reconciliation snapshots",
    )
    cache_ttl_seconds: int = Field(
        default=24 * 60 * 60,
        description="Lifetime of cached reconciliation snapshots",
        ge=1,
    )
    listing_failure_ttl_seconds: int = Field(
        default=10 * 60,
        description="How long a failed listing lookup short-circuits repeat requests",
        ge=1,
    )
    historical_price_ttl_seconds: int = Field(
        default=7 * 24 * 60 * 60,
        description="Lifetime of cached historical prices",
        ge=1,
    )

    @field_validator("deployment_heights", mode="before")
    @classmethod
    def _parse_deployment_heights(cls, value: Any) -> dict[str, int]:
        if value in (None, "", {}):
            return {}
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError("DEPLOYMENT_HEIGHTS must be a JSON object") from exc
        if not isinstance(value, dict):
            raise ValueError("DEPLOYMENT_HEIGHTS must map '{chainId}:{contract}' to a block height")
        heights: dict[str, int] = {}
        for key, height in value.items():
            chain_part, _, contract_part = str(key).partition(":")
            if not chain_part or not contract_part:
                raise ValueError(f"Invalid deployment height key: {key!r}")
            try:
                parsed = int(height)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"Deployment height for {key!r} must be an integer") from exc
            if parsed < 0:
                raise ValueError(f"Deployment height for {key!r} must be non-negative")
            heights[f"{chain_part}:{contract_part.lower()}"] = parsed
        return heights

    def deployment_height(self, contract_address: str) -> int | None:
        return self.deployment_heights.get(f"{self.chain_id}:{contract_address.lower()}")


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
