"""Namespaced TTL cache for marketplace items, descriptions and users."""

from __future__ import annotations

import time
from collections import Counter
from typing import Any, Awaitable, Callable

from mlagent.utils.logging import get_logger

log = get_logger(__name__)

# Seconds. Questions are never cached, each one is a unique event.
DEFAULT_TTLS: dict[str, int] = {
    "USER": 10800,
    "ITEM": 1800,
    "ITEM_DESC": 1800,
}
FALLBACK_TTL = 600


class MarketplaceCache:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        # key -> (expires_at, value)
        self._entries: dict[str, tuple[float, Any]] = {}

    @staticmethod
    def key(type_: str, id_: str, owner: str | None = None) -> str:
        prefix = f"ml:{owner}" if owner else "ml:shared"
        return f"{prefix}:{type_}:{id_}"

    async def get(self, type_: str, id_: str, owner: str | None = None) -> Any | None:
        key = self.key(type_, id_, owner)
        entry = self._entries.get(key)
        if entry is None:
            log.debug("cache_miss", key=key)
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            log.debug("cache_expired", key=key)
            return None
        log.debug("cache_hit", key=key)
        return value

    async def set(
        self,
        type_: str,
        id_: str,
        value: Any,
        owner: str | None = None,
        ttl: int | None = None,
    ) -> None:
        key = self.key(type_, id_, owner)
        ttl = ttl or DEFAULT_TTLS.get(type_, FALLBACK_TTL)
        self._entries[key] = (self._clock() + ttl, value)
        log.debug("cache_set", key=key, ttl=ttl)

    async def get_or_fetch(
        self,
        type_: str,
        id_: str,
        fetch: Callable[[], Awaitable[Any]],
        owner: str | None = None,
        ttl: int | None = None,
    ) -> Any | None:
        """Return the cached value, or fetch and cache it. Never raises."""
        cached = await self.get(type_, id_, owner)
        if cached is not None:
            return cached
        try:
            value = await fetch()
        except Exception:
            log.exception("cache_fetch_failed", type=type_, id=id_)
            return None
        if value:
            await self.set(type_, id_, value, owner, ttl)
        return value

    async def invalidate(self, type_: str, id_: str, owner: str | None = None) -> None:
        self._entries.pop(self.key(type_, id_, owner), None)

    async def get_stats(self) -> dict[str, Any]:
        now = self._clock()
        live = [k for k, (expires_at, _) in self._entries.items() if expires_at > now]
        by_account = Counter(k.split(":", 2)[1] for k in live)
        return {"total_keys": len(live), "by_account": dict(by_account)}
