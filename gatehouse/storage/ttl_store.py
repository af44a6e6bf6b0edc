from __future__ import annotations

import asyncio
import time
from typing import Callable, Dict, Optional, Protocol, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from gatehouse.logging import get_logger

logger = get_logger(__name__)


class StoreUnavailable(Exception):
    """Raised when the shared TTL store cannot serve a request."""


class TTLStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def increment(self, key: str, ttl_seconds: int) -> int: ...

    async def expire(self, key: str, ttl_seconds: int) -> bool: ...

    async def ttl(self, key: str) -> int: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


# INCR creates missing keys at 1; only the creating call arms the expiry so the
# window is fixed from the first hit.
_INCREMENT_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return count
"""


class RedisTTLStore:
    """Async Redis-backed TTL store used in production."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._increment = self.client.register_script(_INCREMENT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before the runtime relies on it."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.client.get(key)
        except RedisError as exc:
            raise StoreUnavailable(f"get failed: {type(exc).__name__}") from exc

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self.client.set(key, value, ex=max(1, int(ttl_seconds)))
        except RedisError as exc:
            raise StoreUnavailable(f"set failed: {type(exc).__name__}") from exc

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except RedisError as exc:
            raise StoreUnavailable(f"delete failed: {type(exc).__name__}") from exc

    async def increment(self, key: str, ttl_seconds: int) -> int:
        try:
            return int(await self._increment(keys=[key], args=[max(1, int(ttl_seconds))]))
        except RedisError as exc:
            raise StoreUnavailable(f"increment failed: {type(exc).__name__}") from exc

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        try:
            return bool(await self.client.expire(key, max(1, int(ttl_seconds))))
        except RedisError as exc:
            raise StoreUnavailable(f"expire failed: {type(exc).__name__}") from exc

    async def ttl(self, key: str) -> int:
        try:
            return int(await self.client.ttl(key))
        except RedisError as exc:
            raise StoreUnavailable(f"ttl failed: {type(exc).__name__}") from exc

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as exc:
            raise StoreUnavailable(f"ping failed: {type(exc).__name__}") from exc

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisTTLStore:
    """Redis TTL store driven by a synchronous client.

    Used in test mode so the connection pool is never bound to a particular
    event loop; methods are still ``async`` so callers await them uniformly.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._increment = self.client.register_script(_INCREMENT_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def get(self, key: str) -> Optional[str]:
        try:
            return self.client.get(key)
        except RedisError as exc:
            raise StoreUnavailable(f"get failed: {type(exc).__name__}") from exc

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            self.client.set(key, value, ex=max(1, int(ttl_seconds)))
        except RedisError as exc:
            raise StoreUnavailable(f"set failed: {type(exc).__name__}") from exc

    async def delete(self, key: str) -> None:
        try:
            self.client.delete(key)
        except RedisError as exc:
            raise StoreUnavailable(f"delete failed: {type(exc).__name__}") from exc

    async def increment(self, key: str, ttl_seconds: int) -> int:
        try:
            return int(self._increment(keys=[key], args=[max(1, int(ttl_seconds))]))
        except RedisError as exc:
            raise StoreUnavailable(f"increment failed: {type(exc).__name__}") from exc

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        try:
            return bool(self.client.expire(key, max(1, int(ttl_seconds))))
        except RedisError as exc:
            raise StoreUnavailable(f"expire failed: {type(exc).__name__}") from exc

    async def ttl(self, key: str) -> int:
        try:
            return int(self.client.ttl(key))
        except RedisError as exc:
            raise StoreUnavailable(f"ttl failed: {type(exc).__name__}") from exc

    async def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except RedisError as exc:
            raise StoreUnavailable(f"ping failed: {type(exc).__name__}") from exc

    async def close(self) -> None:
        self.client.close()


class MemoryTTLStore:
    """In-process TTL store with Redis-like single-key semantics.

    Only suitable for a single instance: counters, challenges and blacklist
    entries are not shared between processes. Expiry is evaluated lazily
    against ``clock`` so tests can move time forward without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        async with self._lock:
            self._data[key] = (str(value), self._clock() + max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def increment(self, key: str, ttl_seconds: int) -> int:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                self._data[key] = ("1", self._clock() + max(1, int(ttl_seconds)))
                return 1
            value, expires_at = entry
            try:
                count = int(value) + 1
            except ValueError as exc:
                raise StoreUnavailable(f"value at {key} is not an integer") from exc
            self._data[key] = (str(count), expires_at)
            return count

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            self._data[key] = (entry[0], self._clock() + max(1, int(ttl_seconds)))
            return True

    async def ttl(self, key: str) -> int:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                return -2
            expires_at = entry[1]
            if expires_at is None:
                return -1
            return max(0, int(round(expires_at - self._clock())))

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        async with self._lock:
            self._data.clear()


__all__ = [
    "StoreUnavailable",
    "TTLStore",
    "RedisTTLStore",
    "SyncRedisTTLStore",
    "MemoryTTLStore",
]
