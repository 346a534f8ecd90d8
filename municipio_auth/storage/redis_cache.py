from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis import Redis

from municipio_auth.storage.models import Audience

REFRESH_ACTIVE = "active"


def refresh_key(audience: Audience | str, token_hash: str) -> str:
    aud = audience.value if isinstance(audience, Audience) else str(audience)
    return f"refresh:{aud}:{token_hash}"


def _decode_payload(cached: Optional[str]) -> Optional[Dict[str, Any]]:
    if cached is None:
        return None
    try:
        data = json.loads(cached)
    except (json.JSONDecodeError, TypeError):
        # Corrupted entry; it was already removed by GETDEL
        return None
    return data if isinstance(data, dict) else None


class RedisCache:
    """Redis-backed fast revocation cache for refresh tokens and passkey ceremonies."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Remaining lifetime of ``expires_at`` in whole seconds, at least 1.

        Naive timestamps are treated as UTC. Redis rejects zero or negative
        expiries, so an already-expired entry still gets a one second TTL.
        """

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before the session core starts."""
        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def mark_refresh_active(
        self, audience: Audience, token_hash: str, expires_at: datetime
    ) -> None:
        ttl = self._ttl_seconds(expires_at)
        await self.client.set(refresh_key(audience, token_hash), REFRESH_ACTIVE, ex=ttl)

    async def is_refresh_active(self, audience: Audience, token_hash: str) -> bool:
        value = await self.client.get(refresh_key(audience, token_hash))
        return value == REFRESH_ACTIVE

    async def consume_refresh(self, audience: Audience, token_hash: str) -> bool:
        """Delete the active marker; only the caller that removed it gets ``True``."""
        removed = await self.client.delete(refresh_key(audience, token_hash))
        return bool(removed)

    async def revoke_refresh(self, audience: Audience, token_hash: str) -> None:
        await self.client.delete(refresh_key(audience, token_hash))

    async def stash_ceremony(
        self, key: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        await self.client.set(key, json.dumps(payload), ex=max(1, int(ttl_seconds)))

    async def pop_ceremony(self, key: str) -> Optional[Dict[str, Any]]:
        """Atomically read and delete ceremony state so it can be used once."""
        try:
            cached = await self.client.getdel(key)
        except AttributeError:
            # Older redis-py without GETDEL: keep it atomic with a script
            lua_script = """
            local value = redis.call('GET', KEYS[1])
            if value then
                redis.call('DEL', KEYS[1])
            end
            return value
            """
            cached = await self.client.eval(lua_script, 1, key)
        return _decode_payload(cached)

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for test mode.

    Uses a blocking client internally to avoid event loop binding issues in
    pytest, but exposes the same awaitable methods as ``RedisCache``.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def mark_refresh_active(
        self, audience: Audience, token_hash: str, expires_at: datetime
    ) -> None:
        ttl = RedisCache._ttl_seconds(expires_at)
        self._sync_client.set(refresh_key(audience, token_hash), REFRESH_ACTIVE, ex=ttl)

    async def is_refresh_active(self, audience: Audience, token_hash: str) -> bool:
        return self._sync_client.get(refresh_key(audience, token_hash)) == REFRESH_ACTIVE

    async def consume_refresh(self, audience: Audience, token_hash: str) -> bool:
        return bool(self._sync_client.delete(refresh_key(audience, token_hash)))

    async def revoke_refresh(self, audience: Audience, token_hash: str) -> None:
        self._sync_client.delete(refresh_key(audience, token_hash))

    async def stash_ceremony(
        self, key: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        self._sync_client.set(key, json.dumps(payload), ex=max(1, int(ttl_seconds)))

    async def pop_ceremony(self, key: str) -> Optional[Dict[str, Any]]:
        return _decode_payload(self._sync_client.getdel(key))

    async def close(self) -> None:
        self._sync_client.close()
