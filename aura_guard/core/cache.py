"""
Response caching for web-data lookups.

Near-duplicate queries collapse onto one slot through query normalization,
and every api type carries its own time-to-live.
"""

import copy
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from aura_guard.storage.store import Store

log = logging.getLogger(__name__)

CACHE_PREFIX = "cache:"

_NOT_ALNUM_OR_SPACE = re.compile(r"[^a-z0-9\s]")


def normalize_query(query: str) -> str:
    """Lowercase, drop everything but [a-z0-9] and whitespace, then trim.

    Trimming last keeps the function idempotent: characters removed next to
    the edges cannot leave whitespace behind.
    """
    return _NOT_ALNUM_OR_SPACE.sub("", query.lower()).strip()


def cache_key(api_type: str, query: str) -> str:
    return f"{CACHE_PREFIX}{api_type}:{normalize_query(query)}"


@dataclass(frozen=True)
class CacheLookup:
    """Result of a cache read; ``age`` is in seconds."""
    hit: bool
    data: Any = None
    age: float = 0.0


MISS = CacheLookup(hit=False)


class ResponseCache:
    """TTL cache keyed by (api type, normalized query).

    An entry is never returned once ``now > expires_at``, whatever the
    backing store does with its own expiry. Callers get their own copy of
    the cached data.
    """

    def __init__(
        self,
        store: Store,
        ttl_seconds: Dict[str, int],
        clock: Callable[[], datetime] = datetime.now,
        max_entries: Optional[int] = None
    ):
        self.store = store
        self.ttl_seconds = dict(ttl_seconds)
        self.clock = clock
        self.max_entries = max_entries
        self.hits = 0
        self.misses = 0

    async def get(self, api_type: str, query: str) -> CacheLookup:
        entry = await self.store.get(cache_key(api_type, query))
        now = self.clock().timestamp()

        if not entry or now > entry["expires_at"]:
            self.misses += 1
            return MISS

        self.hits += 1
        return CacheLookup(hit=True, data=copy.deepcopy(entry["data"]), age=now - entry["created_at"])

    async def set(self, api_type: str, query: str, data: Any) -> bool:
        """Store data under the query's slot.

        Returns:
            False when the api type has no TTL configured (not cached)
        """
        ttl = self.ttl_seconds.get(api_type)
        if not ttl:
            return False

        now = self.clock().timestamp()
        await self.store.set(
            cache_key(api_type, query),
            {"data": copy.deepcopy(data), "created_at": now, "expires_at": now + ttl},
            ttl=ttl,
        )
        await self.sweep()
        return True

    async def sweep(self) -> int:
        """Remove expired entries, then the oldest ones beyond ``max_entries``.

        Returns:
            Number of entries removed
        """
        now = self.clock().timestamp()
        removed = 0
        alive = []
        for key in await self.store.scan(CACHE_PREFIX):
            entry = await self.store.get(key)
            if not entry or now > entry["expires_at"]:
                await self.store.delete(key)
                removed += 1
            else:
                alive.append((entry["created_at"], key))

        if self.max_entries is not None and len(alive) > self.max_entries:
            alive.sort()
            for _, key in alive[:len(alive) - self.max_entries]:
                await self.store.delete(key)
                removed += 1

        if removed:
            log.debug("Swept %d cache entries", removed)
        return removed

    async def size(self) -> int:
        return len(await self.store.scan(CACHE_PREFIX))

    @property
    def hit_rate(self) -> float:
        """Percentage of lookups answered from cache."""
        total = self.hits + self.misses
        return (self.hits / total) * 100 if total else 0.0
