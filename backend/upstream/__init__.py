"""Async clients for the chain, marketplace, listings and price collaborators."""

from .chain_client import ChainClient
from .errors import UpstreamError, UpstreamNotConfigured
from .listings_client import ListingsClient
from .marketplace_client import MarketplaceClient
from .price_client import PriceClient

__all__ = [
    "ChainClient",
    "ListingsClient",
    "MarketplaceClient",
    "PriceClient",
    "UpstreamError",
    "UpstreamNotConfigured",
]
