"""
Key/value store used by the queue, job records, rate limiter and retry markers.

Two implementations share one interface:
- RedisStore: production, backed by redis.asyncio (single round-trip atomic ops)
- InMemoryStore: tests and single-process runs, same semantics incl. TTLs

Every call carries a timeout; the default comes from settings and callers
may pass ``timeout=`` to override it.
"""
import abc
import asyncio
import time
from typing import Awaitable, Callable, TypeVar

import redis.asyncio as redis

from invite_dispatch.config import settings
from invite_dispatch.errors import StoreTimeoutError

T = TypeVar("T")

# Delete the lock only if we still own it
_RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class KeyValueStore(abc.ABC):
    """Async key/value store with list, sorted-set and lock primitives."""

    @abc.abstractmethod
    async def get(self, key: str, *, timeout: float | None = None) -> str | None: ...

    @abc.abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int | None = None,
                  *, timeout: float | None = None) -> None: ...

    @abc.abstractmethod
    async def delete(self, key: str, *, timeout: float | None = None) -> int: ...

    @abc.abstractmethod
    async def incr(self, key: str, *, timeout: float | None = None) -> int: ...

    @abc.abstractmethod
    async def expire_ms(self, key: str, ttl_ms: int, *, timeout: float | None = None) -> bool: ...

    @abc.abstractmethod
    async def lpush(self, key: str, value: str, *, timeout: float | None = None) -> int: ...

    @abc.abstractmethod
    async def rpop(self, key: str, *, timeout: float | None = None) -> str | None: ...

    @abc.abstractmethod
    async def llen(self, key: str, *, timeout: float | None = None) -> int: ...

    @abc.abstractmethod
    async def zadd(self, key: str, member: str, score: float,
                   *, timeout: float | None = None) -> None: ...

    @abc.abstractmethod
    async def zrangebyscore(self, key: str, max_score: float, limit: int = 100,
                            *, timeout: float | None = None) -> list[str]: ...

    @abc.abstractmethod
    async def zrem(self, key: str, member: str, *, timeout: float | None = None) -> int: ...

    @abc.abstractmethod
    async def zcard(self, key: str, *, timeout: float | None = None) -> int: ...

    @abc.abstractmethod
    async def acquire_lock(self, key: str, token: str, ttl_ms: int,
                           *, timeout: float | None = None) -> bool: ...

    @abc.abstractmethod
    async def release_lock(self, key: str, token: str, *, timeout: float | None = None) -> bool: ...

    async def close(self) -> None:
        return None


def _decode(value):
    if isinstance(value, bytes):
        return value.decode()
    return value


class RedisStore(KeyValueStore):
    """Store backed by a redis.asyncio client."""

    def __init__(self, client: redis.Redis, default_timeout: float | None = None):
        self._redis = client
        self.default_timeout = default_timeout or settings.STORE_TIMEOUT_SECONDS

    @classmethod
    def from_url(cls, redis_url: str | None = None, default_timeout: float | None = None) -> "RedisStore":
        client = redis.from_url(redis_url or settings.REDIS_URL, decode_responses=True)
        return cls(client, default_timeout=default_timeout)

    async def _call(self, awaitable: Awaitable[T], timeout: float | None) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout or self.default_timeout)
        except asyncio.TimeoutError as exc:
            raise StoreTimeoutError("Redis call timed out") from exc

    async def get(self, key, *, timeout=None):
        return _decode(await self._call(self._redis.get(key), timeout))

    async def set(self, key, value, ttl_seconds=None, *, timeout=None):
        await self._call(self._redis.set(key, value, ex=ttl_seconds), timeout)

    async def delete(self, key, *, timeout=None):
        return await self._call(self._redis.delete(key), timeout)

    async def incr(self, key, *, timeout=None):
        return await self._call(self._redis.incr(key), timeout)

    async def expire_ms(self, key, ttl_ms, *, timeout=None):
        return bool(await self._call(self._redis.pexpire(key, ttl_ms), timeout))

    async def lpush(self, key, value, *, timeout=None):
        return await self._call(self._redis.lpush(key, value), timeout)

    async def rpop(self, key, *, timeout=None):
        return _decode(await self._call(self._redis.rpop(key), timeout))

    async def llen(self, key, *, timeout=None):
        return await self._call(self._redis.llen(key), timeout)

    async def zadd(self, key, member, score, *, timeout=None):
        await self._call(self._redis.zadd(key, {member: score}), timeout)

    async def zrangebyscore(self, key, max_score, limit=100, *, timeout=None):
        members = await self._call(
            self._redis.zrangebyscore(key, "-inf", max_score, start=0, num=limit),
            timeout,
        )
        return [_decode(m) for m in members]

    async def zrem(self, key, member, *, timeout=None):
        return await self._call(self._redis.zrem(key, member), timeout)

    async def zcard(self, key, *, timeout=None):
        return await self._call(self._redis.zcard(key), timeout)

    async def acquire_lock(self, key, token, ttl_ms, *, timeout=None):
        acquired = await self._call(self._redis.set(key, token, nx=True, px=ttl_ms), timeout)
        return bool(acquired)

    async def release_lock(self, key, token, *, timeout=None):
        released = await self._call(
            self._redis.eval(_RELEASE_LOCK_SCRIPT, 1, key, token), timeout
        )
        return bool(released)

    async def close(self):
        await self._redis.aclose()


class InMemoryStore(KeyValueStore):
    """
    Dict-backed store with the same semantics as RedisStore.

    Operations never await internally, so each one is atomic with respect
    to other coroutines on the same event loop.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._values: dict[str, str | int] = {}
        self._lists: dict[str, list[str]] = {}
        self._zsets: dict[str, dict[str, float]] = {}
        self._expiry: dict[str, float] = {}

    def _expired(self, key: str) -> bool:
        deadline = self._expiry.get(key)
        if deadline is not None and self.clock() >= deadline:
            self._values.pop(key, None)
            self._lists.pop(key, None)
            self._zsets.pop(key, None)
            self._expiry.pop(key, None)
            return True
        return False

    def _exists(self, key: str) -> bool:
        if self._expired(key):
            return False
        return key in self._values or key in self._lists or key in self._zsets

    async def get(self, key, *, timeout=None):
        if self._expired(key):
            return None
        value = self._values.get(key)
        return None if value is None else str(value)

    async def set(self, key, value, ttl_seconds=None, *, timeout=None):
        self._values[key] = value
        if ttl_seconds:
            self._expiry[key] = self.clock() + ttl_seconds
        else:
            self._expiry.pop(key, None)

    async def delete(self, key, *, timeout=None):
        existed = self._exists(key)
        self._values.pop(key, None)
        self._lists.pop(key, None)
        self._zsets.pop(key, None)
        self._expiry.pop(key, None)
        return int(existed)

    async def incr(self, key, *, timeout=None):
        self._expired(key)
        value = int(self._values.get(key, 0)) + 1
        self._values[key] = value
        return value

    async def expire_ms(self, key, ttl_ms, *, timeout=None):
        if not self._exists(key):
            return False
        self._expiry[key] = self.clock() + ttl_ms / 1000
        return True

    async def lpush(self, key, value, *, timeout=None):
        self._expired(key)
        items = self._lists.setdefault(key, [])
        items.insert(0, value)
        return len(items)

    async def rpop(self, key, *, timeout=None):
        if self._expired(key):
            return None
        items = self._lists.get(key)
        if not items:
            return None
        value = items.pop()
        if not items:
            del self._lists[key]
        return value

    async def llen(self, key, *, timeout=None):
        if self._expired(key):
            return 0
        return len(self._lists.get(key, []))

    async def zadd(self, key, member, score, *, timeout=None):
        self._expired(key)
        self._zsets.setdefault(key, {})[member] = score

    async def zrangebyscore(self, key, max_score, limit=100, *, timeout=None):
        if self._expired(key):
            return []
        members = self._zsets.get(key, {})
        due = sorted(
            (score, member) for member, score in members.items() if score <= max_score
        )
        return [member for _, member in due[:limit]]

    async def zrem(self, key, member, *, timeout=None):
        members = self._zsets.get(key, {})
        if member not in members:
            return 0
        del members[member]
        if not members:
            del self._zsets[key]
        return 1

    async def zcard(self, key, *, timeout=None):
        if self._expired(key):
            return 0
        return len(self._zsets.get(key, {}))

    async def acquire_lock(self, key, token, ttl_ms, *, timeout=None):
        if self._exists(key):
            return False
        self._values[key] = token
        self._expiry[key] = self.clock() + ttl_ms / 1000
        return True

    async def release_lock(self, key, token, *, timeout=None):
        if await self.get(key) != token:
            return False
        await self.delete(key)
        return True
