"""Token-gated channel membership.

A wallet may use an event's channel when it organizes the event, holds at
least one ticket on the event contract, or has an active resale listing for
one on the marketplace (listed but not yet transferred). Chain answers are
cached for a short TTL; failures are never cached and never grant access.
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Protocol, Tuple

from .chain import ChainError, ChainReader
from .clock import now_ms
from .directory import Event


logger = logging.getLogger(__name__)

ACCESS_CACHE_TTL_MS = 60_000

CacheKey = Tuple[int, str, str]


class AccessDecision(enum.Enum):
    ALLOWED = "allowed"
    DENIED = "denied"
    UNKNOWN = "unknown"

    @property
    def allowed(self) -> bool:
        return self is AccessDecision.ALLOWED


@dataclass(frozen=True)
class AccessCacheEntry:
    is_holder: bool
    expires_at_ms: int


class AccessCache(Protocol):
    def get(self, key: CacheKey) -> bool | None:
        ...

    def put(self, key: CacheKey, is_holder: bool) -> None:
        ...


class InMemoryAccessCache:
    """Read-through holder cache; expiry is the only eviction."""

    def __init__(self, ttl_ms: int = ACCESS_CACHE_TTL_MS, *, now_func: Callable[[], int] = now_ms) -> None:
        self.ttl_ms = ttl_ms
        self._now = now_func
        self._lock = threading.Lock()
        self._entries: Dict[CacheKey, AccessCacheEntry] = {}

    def get(self, key: CacheKey) -> bool | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._now() >= entry.expires_at_ms:
                self._entries.pop(key, None)
                return None
            return entry.is_holder

    def put(self, key: CacheKey, is_holder: bool) -> None:
        with self._lock:
            self._entries[key] = AccessCacheEntry(is_holder=is_holder, expires_at_ms=self._now() + self.ttl_ms)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def cache_key(event: Event, wallet: str) -> CacheKey:
    return (event.chain_id, (event.contract_address or "").lower(), wallet.lower())


class AccessGate:
    def __init__(self, chain: ChainReader, cache: AccessCache) -> None:
        self._chain = chain
        self._cache = cache

    async def check(self, event: Event, wallet: str) -> AccessDecision:
        wallet = wallet.lower()
        if wallet == event.organizer_address.lower():
            return AccessDecision.ALLOWED
        if not event.contract_address:
            return AccessDecision.DENIED

        key = cache_key(event, wallet)
        cached = self._cache.get(key)
        if cached is not None:
            return AccessDecision.ALLOWED if cached else AccessDecision.DENIED

        try:
            is_holder = await self._holds_or_lists(event, wallet)
        except ChainError as exc:
            logger.warning(
                "holder check failed for %s on chain %s contract %s: %s",
                wallet,
                event.chain_id,
                event.contract_address,
                exc,
            )
            return AccessDecision.UNKNOWN

        self._cache.put(key, is_holder)
        return AccessDecision.ALLOWED if is_holder else AccessDecision.DENIED

    async def is_member(self, event: Event, wallet: str) -> bool:
        decision = await self.check(event, wallet)
        return decision.allowed

    async def _holds_or_lists(self, event: Event, wallet: str) -> bool:
        contract = (event.contract_address or "").lower()
        balance = await self._chain.token_balance(event.chain_id, contract, wallet)
        if balance > 0:
            return True
        listings = await self._chain.listings_by_seller(event.chain_id, wallet)
        return any(listing.active and listing.nft_address.lower() == contract for listing in listings)
