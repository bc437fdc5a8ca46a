"""
Key-value store capability.

Counters, cache entries and hot conversation windows all live behind this
interface so the governance layer can run on an in-process map or on Redis.
"""

import json
import time
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import redis.asyncio as redis


class Store(Protocol):
    """Async key-value capability used by the guard components."""

    async def get(self, key: str) -> Any: ...

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def incr(self, key: str, amount: int = 1, ttl: Optional[int] = None) -> int: ...

    async def expire(self, key: str, ttl: int) -> None: ...

    async def reserve(self, key: str, limit: int, ttl: Optional[int] = None) -> Tuple[bool, int]: ...

    async def scan(self, prefix: str) -> List[str]: ...

    async def push_window(self, key: str, value: Any, size: int, ttl: Optional[int] = None) -> None: ...

    async def window(self, key: str) -> List[Any]: ...


class MemoryStore:
    """In-process store with lazy TTL expiry.

    No method awaits anything, so every call runs to completion without
    yielding to the event loop and is atomic with respect to other requests.
    """

    def __init__(self, timer: Callable[[], float] = time.monotonic):
        self._data: Dict[str, Any] = {}
        self._expiry: Dict[str, float] = {}
        self._timer = timer

    def __len__(self) -> int:
        self._purge_expired()
        return len(self._data)

    def _alive(self, key: str) -> bool:
        deadline = self._expiry.get(key)
        if deadline is not None and deadline <= self._timer():
            self._data.pop(key, None)
            self._expiry.pop(key, None)
            return False
        return key in self._data

    def _purge_expired(self) -> None:
        for key in list(self._expiry):
            self._alive(key)

    def _touch(self, key: str, ttl: Optional[int]) -> None:
        if ttl:
            self._expiry[key] = self._timer() + ttl

    async def get(self, key: str) -> Any:
        if not self._alive(key):
            return None
        return self._data[key]

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        self._data[key] = value
        self._expiry.pop(key, None)
        self._touch(key, ttl)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)
        self._expiry.pop(key, None)

    async def incr(self, key: str, amount: int = 1, ttl: Optional[int] = None) -> int:
        current = self._data[key] if self._alive(key) else 0
        self._data[key] = int(current) + amount
        if ttl and key not in self._expiry:
            self._touch(key, ttl)
        return self._data[key]

    async def expire(self, key: str, ttl: int) -> None:
        if self._alive(key):
            self._touch(key, ttl)

    async def reserve(self, key: str, limit: int, ttl: Optional[int] = None) -> Tuple[bool, int]:
        current = int(self._data[key]) if self._alive(key) else 0
        if current >= limit:
            return False, current
        return True, await self.incr(key, 1, ttl)

    async def scan(self, prefix: str) -> List[str]:
        self._purge_expired()
        return [key for key in self._data if key.startswith(prefix)]

    async def push_window(self, key: str, value: Any, size: int, ttl: Optional[int] = None) -> None:
        items = list(self._data[key]) if self._alive(key) else []
        items.append(value)
        self._data[key] = items[-size:]
        self._touch(key, ttl)

    async def window(self, key: str) -> List[Any]:
        if not self._alive(key):
            return []
        return list(self._data[key])


# Compare-and-increment executed server side so concurrent callers cannot
# both observe a free slot.
_RESERVE_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local limit = tonumber(ARGV[1])
if current >= limit then
  return {0, current}
end
current = redis.call('INCR', KEYS[1])
if tonumber(ARGV[2]) > 0 and redis.call('TTL', KEYS[1]) < 0 then
  redis.call('EXPIRE', KEYS[1], ARGV[2])
end
return {1, current}
"""


class RedisStore:
    """Redis-backed store. Values are JSON encoded; window lists keep newest last."""

    def __init__(self, client: "redis.Redis", namespace: str = "aura_guard"):
        self.client = client
        self.namespace = namespace
        self._reserve = client.register_script(_RESERVE_SCRIPT)

    @classmethod
    def from_url(cls, url: str, namespace: str = "aura_guard") -> "RedisStore":
        """Create a store from a redis:// or rediss:// URL."""
        return cls(redis.from_url(url, decode_responses=True), namespace=namespace)

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    @staticmethod
    def _encode(value: Any) -> str:
        return json.dumps(value, default=str)

    @staticmethod
    def _decode(raw: Optional[str]) -> Any:
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return raw

    async def get(self, key: str) -> Any:
        return self._decode(await self.client.get(self._key(key)))

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        if ttl:
            await self.client.setex(self._key(key), ttl, self._encode(value))
        else:
            await self.client.set(self._key(key), self._encode(value))

    async def delete(self, key: str) -> None:
        await self.client.delete(self._key(key))

    async def incr(self, key: str, amount: int = 1, ttl: Optional[int] = None) -> int:
        full_key = self._key(key)
        value = await self.client.incrby(full_key, amount)
        if ttl and await self.client.ttl(full_key) < 0:
            await self.client.expire(full_key, ttl)
        return int(value)

    async def expire(self, key: str, ttl: int) -> None:
        await self.client.expire(self._key(key), ttl)

    async def reserve(self, key: str, limit: int, ttl: Optional[int] = None) -> Tuple[bool, int]:
        granted, current = await self._reserve(keys=[self._key(key)], args=[limit, ttl or 0])
        return bool(int(granted)), int(current)

    async def scan(self, prefix: str) -> List[str]:
        strip = len(self.namespace) + 1
        keys = []
        async for full_key in self.client.scan_iter(match=f"{self._key(prefix)}*"):
            keys.append(full_key[strip:])
        return keys

    async def push_window(self, key: str, value: Any, size: int, ttl: Optional[int] = None) -> None:
        full_key = self._key(key)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.rpush(full_key, self._encode(value))
            pipe.ltrim(full_key, -size, -1)
            if ttl:
                pipe.expire(full_key, ttl)
            await pipe.execute()

    async def window(self, key: str) -> List[Any]:
        return [self._decode(raw) for raw in await self.client.lrange(self._key(key), 0, -1)]
