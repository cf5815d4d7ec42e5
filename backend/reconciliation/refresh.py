"""Cache-then-refresh state machine for one (wallet, token) view.

``IDLE -> CACHE_RENDERED -> REFRESHING -> REFRESHED``, or ``IDLE -> REFRESHING``
on a cache miss. A refresh always re-runs the full pipeline; ``should_replace``
decides whether its output supersedes what was rendered from the cache.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator

from loguru import logger

from app.domain import ReconciliationSnapshot, TokenReconciliation

from .context import ReconciliationContext, RefreshSession
from .keys import build_cache_key
from .pipeline import TokenRef, evaluate, reconcile_ref
from .serialization import SnapshotDecodeError, snapshot_from_payload, snapshot_to_payload


class RefreshState(str, Enum):
    IDLE = "idle"
    CACHE_RENDERED = "cache_rendered"
    REFRESHING = "refreshing"
    REFRESHED = "refreshed"


def should_replace(
    cached: ReconciliationSnapshot | None, fresh: ReconciliationSnapshot
) -> bool:
    if cached is None:
        return True
    if cached.acquisition_source != fresh.acquisition_source:
        return True
    if fresh.acquisition is not None:
        if cached.acquisition is None:
            return True
        if cached.acquisition.acquired_at is None and fresh.acquisition.acquired_at is not None:
            return True
        if cached.acquisition.acquisition_kind != fresh.acquisition.acquisition_kind:
            return True
    if fresh.transfer_event_count > cached.transfer_event_count:
        return True
    cached_purchase = cached.match.matched_purchase
    fresh_purchase = fresh.match.matched_purchase
    if (cached_purchase and cached_purchase.purchase_id) != (
        fresh_purchase and fresh_purchase.purchase_id
    ):
        return True
    if fresh.listing is not None and fresh.listing.error is None:
        if cached.listing is None:
            return True
        return (cached.listing.low, cached.listing.high) != (fresh.listing.low, fresh.listing.high)
    return False


class _KeyLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class RefreshController:
    """Owns per-key refresh state, per-key locks and the live session of each view scope.

    Locks exist only while a refresh of their key is running or waiting. Settled states
    are kept for the most recent ``max_tracked_states`` keys.
    """

    def __init__(self, context: ReconciliationContext, *, max_tracked_states: int = 1024) -> None:
        self.context = context
        self.settings = context.settings
        self.max_tracked_states = max_tracked_states
        self._states: OrderedDict[str, RefreshState] = OrderedDict()
        self._locks: dict[str, _KeyLock] = {}
        self._sessions: dict[str, RefreshSession] = {}

    def cache_key(self, ref: TokenRef) -> str:
        return build_cache_key(self.settings.cache_schema_version, ref.wallet_address, ref.token_key)

    def state(self, ref: TokenRef) -> RefreshState:
        return self._states.get(self.cache_key(ref), RefreshState.IDLE)

    def _set_state(self, key: str, state: RefreshState) -> None:
        if state is RefreshState.IDLE:
            self._states.pop(key, None)
            return
        self._states[key] = state
        self._states.move_to_end(key)
        overflow = len(self._states) - self.max_tracked_states
        if overflow <= 0:
            return
        # Oldest settled keys go first; a running refresh keeps its state.
        settled = [k for k, s in self._states.items() if s is not RefreshState.REFRESHING]
        for stale in settled[:overflow]:
            del self._states[stale]

    def open_session(self, scope: str) -> RefreshSession:
        """Start a view; an earlier session for the same scope is cancelled."""
        previous = self._sessions.get(scope)
        if previous is not None:
            previous.cancel()
        session = RefreshSession(scope=scope)
        self._sessions[scope] = session
        return session

    def close_session(self, session: RefreshSession) -> None:
        if self._sessions.get(session.scope) is session:
            del self._sessions[session.scope]

    def cancel_wallet(self, wallet_address: str) -> int:
        wallet = wallet_address.lower()
        cancelled = 0
        for scope in [scope for scope in self._sessions if scope.startswith(f"{wallet}:")]:
            self._sessions.pop(scope).cancel()
            cancelled += 1
        return cancelled

    @asynccontextmanager
    async def _locked(self, key: str) -> AsyncIterator[None]:
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    async def read_cached(self, ref: TokenRef) -> TokenReconciliation | None:
        cache = self.context.cache
        if cache is None:
            return None
        key = self.cache_key(ref)
        lookup = await asyncio.to_thread(cache.get, key, self.settings.cache_schema_version)
        if not lookup.hit:
            logger.debug("Cache miss for {} ({})", key, lookup.reason)
            return None
        try:
            snapshot = snapshot_from_payload(lookup.value or {})
        except SnapshotDecodeError as exc:
            logger.warning("Evicting {}: {}", key, exc)
            await asyncio.to_thread(cache.remove, key)
            return None
        self._set_state(key, RefreshState.CACHE_RENDERED)
        return evaluate(ref, snapshot, from_cache=True)

    async def _write(self, key: str, snapshot: ReconciliationSnapshot) -> None:
        if self.context.cache is None:
            return
        await asyncio.to_thread(
            self.context.cache.set,
            key,
            self.settings.cache_schema_version,
            snapshot_to_payload(snapshot),
            self.settings.cache_ttl_seconds,
        )

    async def refresh(
        self,
        session: RefreshSession,
        ref: TokenRef,
        cached: TokenReconciliation | None = None,
    ) -> TokenReconciliation | None:
        """Re-run the pipeline and return what should now be displayed.

        Returns ``None`` when the session was cancelled; nothing is written in that case.
        """
        key = self.cache_key(ref)
        async with self._locked(key):
            if session.cancelled:
                return None
            settled = RefreshState.CACHE_RENDERED if cached else RefreshState.IDLE
            self._set_state(key, RefreshState.REFRESHING)
            try:
                fresh = await reconcile_ref(self.context, ref)
            except BaseException:
                self._set_state(key, settled)
                raise

            if session.cancelled:
                logger.info("Discarding refresh of {}; session {} cancelled", key, session.session_id)
                self._set_state(key, settled)
                return None

            if not should_replace(cached.snapshot if cached else None, fresh.snapshot):
                logger.debug("Refresh of {} matches the cached result", key)
                self._set_state(key, RefreshState.REFRESHED)
                return cached

            await self._write(key, fresh.snapshot)
            self._set_state(key, RefreshState.REFRESHED)
            return fresh


__all__ = ["RefreshController", "RefreshState", "should_replace"]
