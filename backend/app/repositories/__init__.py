"""Repository abstractions for database interactions."""

from .cache_repository import CacheLookup, CacheRepository, CacheStore

__all__ = [
    "CacheLookup",
    "CacheRepository",
    "CacheStore",
]
