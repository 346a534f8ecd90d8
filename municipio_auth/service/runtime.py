from __future__ import annotations

from typing import Any, Optional
from urllib.parse import urlparse, urlunparse

from municipio_auth.config import Settings, get_settings
from municipio_auth.logging import get_logger
from municipio_auth.service.auth import SessionLifecycleManager
from municipio_auth.service.passkeys import PasskeyCredentialManager
from municipio_auth.service.passwords import Argon2PasswordVerifier
from municipio_auth.service.roles import RoleResolver
from municipio_auth.service.tokens import TokenIssuer
from municipio_auth.storage.memory import MemoryCache, MemoryStore
from municipio_auth.storage.postgres import PostgresStore
from municipio_auth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> str:
    """Replace the password in a connection URL before logging it."""
    if not url:
        return ""
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.netloc.replace(f":{parsed.password}@", ":***@")
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Wires the store, cache and services for one process.

    Callers own the instance; nothing here is module-global.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Any = None,
        cache: Any = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store if store is not None else self._build_store()
        self.cache = cache if cache is not None else self._build_cache()

        self.tokens = TokenIssuer.from_settings(self.settings)
        self.passwords = Argon2PasswordVerifier()
        self.roles = RoleResolver(self.store)
        self.passkeys = PasskeyCredentialManager(
            self.store,
            self.cache,
            ceremony_ttl_seconds=self.settings.passkey_ceremony_ttl_seconds,
        )
        self.sessions = SessionLifecycleManager(
            self.store,
            self.cache,
            self.tokens,
            self.passwords,
            self.roles,
            self.passkeys,
            operation_timeout=self.settings.operation_timeout_seconds,
        )
        logger.info("runtime_init_completed", cache_type=type(self.cache).__name__)

    def _build_store(self) -> Any:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                store = MemoryStore(fs_root=self.settings.shared_fs_root)
            else:
                store = PostgresStore(
                    self.settings.database_url,
                    statement_timeout_ms=self.settings.db_statement_timeout_ms,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def _build_cache(self) -> Any:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a per-test event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.redis_socket_timeout_seconds,
                    )
                else:
                    cache = RedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.redis_socket_timeout_seconds,
                    )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for refresh token revocation; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for a local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; refresh revocation "
                "state is process-local."
            ),
            mode=fallback_mode,
        )
        return MemoryCache()

    async def close(self) -> None:
        await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            close_store()
