"""Versioned, TTL-expiring key-value store backed by the ``cache_entries`` table."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Protocol

from loguru import logger
from sqlalchemy import delete
from sqlalchemy.orm import Session, sessionmaker

from app.db import session_scope
from app.models import CacheEntryRecord, utcnow

CACHE_NAMESPACE = "walletscope"

MISS_NOT_FOUND = "not_found"
MISS_VERSION_MISMATCH = "version_mismatch"
MISS_EXPIRED = "expired"
MISS_PARSE_ERROR = "parse_error"


@dataclass(slots=True)
class CacheLookup:
    """Outcome of a cache read; ``reason`` is set only on a miss."""

    hit: bool
    cache_key: str
    value: dict[str, Any] | None = None
    reason: str | None = None


class CacheStore(Protocol):
    def get(self, key: str, expected_version: str) -> CacheLookup: ...

    def set(self, key: str, version: str, value: dict[str, Any], ttl_seconds: int) -> None: ...

    def remove(self, key: str) -> None: ...


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back out.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class CacheRepository:
    """Cache store over SQLAlchemy; every mismatch or expiry evicts the row."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        # Callers run on worker threads; an in-memory SQLite engine shares one connection.
        self._lock = threading.Lock()

    def get(self, key: str, expected_version: str) -> CacheLookup:
        with self._lock:
            with session_scope(self._session_factory) as session:
                record = session.get(CacheEntryRecord, key)
                if record is None:
                    return CacheLookup(hit=False, cache_key=key, reason=MISS_NOT_FOUND)

                if record.schema_version != expected_version:
                    session.delete(record)
                    return CacheLookup(hit=False, cache_key=key, reason=MISS_VERSION_MISMATCH)

                if self._clock() > _as_utc(record.expires_at):
                    session.delete(record)
                    return CacheLookup(hit=False, cache_key=key, reason=MISS_EXPIRED)

                if not isinstance(record.payload, dict):
                    logger.warning("Evicting unreadable cache entry {}", key)
                    session.delete(record)
                    return CacheLookup(hit=False, cache_key=key, reason=MISS_PARSE_ERROR)

                return CacheLookup(hit=True, cache_key=key, value=dict(record.payload))

    def set(self, key: str, version: str, value: dict[str, Any], ttl_seconds: int) -> None:
        with self._lock:
            now = self._clock()
            with session_scope(self._session_factory) as session:
                record = session.get(CacheEntryRecord, key)
                if record is None:
                    record = CacheEntryRecord(cache_key=key)
                    session.add(record)
                record.schema_version = version
                record.payload = value
                record.cached_at = now
                record.expires_at = now + timedelta(seconds=ttl_seconds)

    def remove(self, key: str) -> None:
        with self._lock:
            with session_scope(self._session_factory) as session:
                session.execute(delete(CacheEntryRecord).where(CacheEntryRecord.cache_key == key))

    def clear_wallet(self, wallet_address: str) -> int:
        with self._lock:
            marker = f":{wallet_address.lower()}:"
            with session_scope(self._session_factory) as session:
                result = session.execute(
                    delete(CacheEntryRecord).where(CacheEntryRecord.cache_key.contains(marker))
                )
                removed = result.rowcount or 0
            logger.info("Cleared {} cache entries for wallet {}", removed, wallet_address)
            return removed

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            with session_scope(self._session_factory) as session:
                result = session.execute(
                    delete(CacheEntryRecord).where(CacheEntryRecord.expires_at < now)
                )
                return result.rowcount or 0


__all__ = [
    "CACHE_NAMESPACE",
    "CacheLookup",
    "CacheRepository",
    "CacheStore",
    "MISS_EXPIRED",
    "MISS_NOT_FOUND",
    "MISS_PARSE_ERROR",
    "MISS_VERSION_MISMATCH",
]
