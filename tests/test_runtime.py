import pytest

from municipio_auth.config import Settings
from municipio_auth.service import runtime as runtime_module
from municipio_auth.service.runtime import Runtime, _mask_url_password
from municipio_auth.storage.memory import MemoryCache, MemoryStore

SECRET = "runtime-test-secret-0123456789abcdef"


def _settings(tmp_path, **overrides) -> Settings:
    values = dict(
        jwt_secret=SECRET,
        use_memory_store=True,
        shared_fs_root=str(tmp_path),
        test_mode=False,
        allow_redis_fallback_dev=False,
        redis_url="redis://:hunter2@cache.internal:6379/0",
    )
    values.update(overrides)
    return Settings(**values)


def _unreachable(self):
    raise ConnectionError("connection refused")


def test_missing_redis_is_fatal_without_fallback(tmp_path, monkeypatch):
    monkeypatch.setattr(runtime_module.RedisCache, "verify_connection", _unreachable)
    with pytest.raises(RuntimeError, match="Redis is required"):
        Runtime(_settings(tmp_path))


def test_dev_fallback_uses_memory_cache(tmp_path, monkeypatch):
    monkeypatch.setattr(runtime_module.RedisCache, "verify_connection", _unreachable)
    runtime = Runtime(_settings(tmp_path, allow_redis_fallback_dev=True))
    assert isinstance(runtime.cache, MemoryCache)
    assert isinstance(runtime.store, MemoryStore)


def test_test_mode_without_redis_url(tmp_path):
    runtime = Runtime(_settings(tmp_path, test_mode=True, redis_url=None))
    assert isinstance(runtime.cache, MemoryCache)
    assert runtime.sessions is not None
    assert runtime.passkeys.ceremony_ttl_seconds == 300


def test_injected_collaborators_are_used(tmp_path):
    store = MemoryStore()
    cache = MemoryCache()
    runtime = Runtime(_settings(tmp_path), store=store, cache=cache)
    assert runtime.store is store
    assert runtime.cache is cache
    assert runtime.roles.store is store


async def test_close_releases_cache(tmp_path):
    runtime = Runtime(_settings(tmp_path, test_mode=True, redis_url=None))
    await runtime.close()


def test_mask_url_password():
    assert _mask_url_password("redis://:hunter2@cache:6379/0") == "redis://:***@cache:6379/0"
    assert _mask_url_password("redis://cache:6379/0") == "redis://cache:6379/0"
    assert _mask_url_password(None) == ""
