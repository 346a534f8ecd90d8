"""RedisCache/SyncRedisCache tests against an in-process fake client."""

import json
from datetime import datetime, timedelta, timezone

from municipio_auth.storage.models import Audience
from municipio_auth.storage.redis_cache import RedisCache, SyncRedisCache, refresh_key


class FakeSyncRedis:
    def __init__(self):
        self.data = {}
        self.ttls = {}

    def set(self, key, value, ex=None):
        self.data[key] = value
        self.ttls[key] = ex
        return True

    def get(self, key):
        return self.data.get(key)

    def delete(self, key):
        return 1 if self.data.pop(key, None) is not None else 0

    def getdel(self, key):
        return self.data.pop(key, None)

    def ping(self):
        return True

    def close(self):
        pass


class FakeAsyncRedis:
    def __init__(self):
        self.sync = FakeSyncRedis()

    async def set(self, key, value, ex=None):
        return self.sync.set(key, value, ex=ex)

    async def get(self, key):
        return self.sync.get(key)

    async def delete(self, key):
        return self.sync.delete(key)

    async def getdel(self, key):
        return self.sync.getdel(key)


def make_async_cache() -> RedisCache:
    cache: RedisCache = RedisCache.__new__(RedisCache)
    cache.redis_url = "redis://fake"
    cache.client = FakeAsyncRedis()
    return cache


def make_sync_cache() -> SyncRedisCache:
    cache: SyncRedisCache = SyncRedisCache.__new__(SyncRedisCache)
    cache.redis_url = "redis://fake"
    cache._sync_client = FakeSyncRedis()
    return cache


def test_refresh_key_layout():
    assert refresh_key(Audience.CIDADAO, "abc") == "refresh:cidadao:abc"


def test_ttl_is_clamped_and_handles_naive_timestamps():
    assert RedisCache._ttl_seconds(datetime.now(timezone.utc) - timedelta(minutes=5)) == 1
    naive = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(hours=1)
    assert 3590 <= RedisCache._ttl_seconds(naive) <= 3600


async def test_async_cache_refresh_lifecycle():
    cache = make_async_cache()
    expires = datetime.now(timezone.utc) + timedelta(days=30)
    await cache.mark_refresh_active(Audience.BACKOFFICE, "h1", expires)

    key = "refresh:backoffice:h1"
    assert cache.client.sync.data[key] == "active"
    assert cache.client.sync.ttls[key] > 29 * 24 * 3600
    assert await cache.is_refresh_active(Audience.BACKOFFICE, "h1")
    assert await cache.consume_refresh(Audience.BACKOFFICE, "h1") is True
    assert await cache.consume_refresh(Audience.BACKOFFICE, "h1") is False
    await cache.revoke_refresh(Audience.BACKOFFICE, "h1")


async def test_async_cache_ceremony_pop_is_single_use():
    cache = make_async_cache()
    await cache.stash_ceremony("webauthn:login:c1", {"owner_id": "u1"}, 300)
    assert cache.client.sync.ttls["webauthn:login:c1"] == 300
    assert await cache.pop_ceremony("webauthn:login:c1") == {"owner_id": "u1"}
    assert await cache.pop_ceremony("webauthn:login:c1") is None


async def test_corrupted_ceremony_payload_is_ignored():
    cache = make_async_cache()
    cache.client.sync.data["webauthn:login:bad"] = "{not json"
    assert await cache.pop_ceremony("webauthn:login:bad") is None
    assert "webauthn:login:bad" not in cache.client.sync.data


async def test_sync_cache_matches_async_behaviour():
    cache = make_sync_cache()
    expires = datetime.now(timezone.utc) + timedelta(minutes=10)
    await cache.mark_refresh_active(Audience.CIDADAO, "h1", expires)
    assert await cache.is_refresh_active(Audience.CIDADAO, "h1")
    assert not await cache.is_refresh_active(Audience.BACKOFFICE, "h1")
    assert await cache.consume_refresh(Audience.CIDADAO, "h1") is True
    assert await cache.consume_refresh(Audience.CIDADAO, "h1") is False

    await cache.stash_ceremony("webauthn:register:c1", {"owner_id": "u1", "data": {}}, 0)
    assert cache._sync_client.ttls["webauthn:register:c1"] == 1
    assert json.loads(cache._sync_client.data["webauthn:register:c1"])["owner_id"] == "u1"
    assert (await cache.pop_ceremony("webauthn:register:c1"))["owner_id"] == "u1"
