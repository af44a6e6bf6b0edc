from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from gatehouse.storage.ttl_store import MemoryTTLStore, RedisTTLStore, StoreUnavailable


class TestMemoryTTLStore:
    """Single-key semantics of the in-process store."""

    async def test_set_get_and_expiry(self, clock):
        store = MemoryTTLStore(clock=clock)
        await store.set("otp:abc", "payload", 600)
        assert await store.get("otp:abc") == "payload"
        assert await store.ttl("otp:abc") == 600

        clock.advance(599)
        assert await store.get("otp:abc") == "payload"
        clock.advance(1)
        assert await store.get("otp:abc") is None
        assert await store.ttl("otp:abc") == -2

    async def test_increment_sets_ttl_only_on_create(self, clock):
        store = MemoryTTLStore(clock=clock)
        assert await store.increment("failed_attempts:a@b.com", 3600) == 1
        clock.advance(1800)
        assert await store.increment("failed_attempts:a@b.com", 3600) == 2
        # Window is anchored at the first hit
        assert await store.ttl("failed_attempts:a@b.com") == 1800
        clock.advance(1800)
        assert await store.increment("failed_attempts:a@b.com", 3600) == 1

    async def test_expire_restarts_lifetime_of_live_key(self, clock):
        store = MemoryTTLStore(clock=clock)
        await store.increment("login_limit:1.2.3.4", 900)
        clock.advance(600)
        assert await store.expire("login_limit:1.2.3.4", 960) is True
        assert await store.ttl("login_limit:1.2.3.4") == 960
        assert await store.get("login_limit:1.2.3.4") == "1"
        assert await store.expire("missing", 960) is False

    async def test_delete_missing_key_is_noop(self, clock):
        store = MemoryTTLStore(clock=clock)
        await store.delete("nothing")
        assert await store.get("nothing") is None

    async def test_increment_non_integer_raises_store_unavailable(self, clock):
        store = MemoryTTLStore(clock=clock)
        await store.set("k", "not-a-number", 60)
        with pytest.raises(StoreUnavailable):
            await store.increment("k", 60)

    async def test_ping_and_close(self, clock):
        store = MemoryTTLStore(clock=clock)
        await store.set("k", "v", 60)
        assert await store.ping() is True
        await store.close()
        assert await store.get("k") is None


class TestRedisTTLStore:
    """Redis errors surface as StoreUnavailable."""

    def _store(self):
        store = RedisTTLStore.__new__(RedisTTLStore)
        store.redis_url = "redis://localhost:6379/0"
        store.client = MagicMock()
        store._increment = AsyncMock(return_value=3)
        return store

    async def test_increment_uses_script(self):
        store = self._store()
        assert await store.increment("rate_limit:1.2.3.4:anonymous", 900) == 3
        store._increment.assert_awaited_once_with(
            keys=["rate_limit:1.2.3.4:anonymous"], args=[900]
        )

    async def test_get_error_wrapped(self):
        store = self._store()
        store.client.get = AsyncMock(side_effect=RedisConnectionError("down"))
        with pytest.raises(StoreUnavailable):
            await store.get("otp:abc")

    async def test_set_clamps_ttl_to_one_second(self):
        store = self._store()
        store.client.set = AsyncMock(return_value=True)
        await store.set("blacklist:x", "1", 0)
        store.client.set.assert_awaited_once_with("blacklist:x", "1", ex=1)

    async def test_expire_error_wrapped(self):
        store = self._store()
        store.client.expire = AsyncMock(side_effect=RedisConnectionError("down"))
        with pytest.raises(StoreUnavailable):
            await store.expire("login_limit:1.2.3.4", 960)
