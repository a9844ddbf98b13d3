from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlsplit, urlunsplit

from yishan_auth.config import Settings, get_settings, reset_settings_cache
from yishan_auth.logging import get_logger
from yishan_auth.service.auth import AuthService
from yishan_auth.service.cleanup import TokenCleanupService
from yishan_auth.service.menu import MenuAuthorizer
from yishan_auth.service.token_store import TokenStore
from yishan_auth.service.tokens import TokenIssuer
from yishan_auth.storage.memory import MemoryStore
from yishan_auth.storage.postgres import PostgresStore
from yishan_auth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

Store = Union[MemoryStore, PostgresStore]
Cache = Union[RedisCache, SyncRedisCache]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Hide the password in a connection URL, e.g. redis://:***@cache:6379/0."""
    if not url:
        return url
    try:
        parts = urlsplit(url)
        if not parts.password:
            return url
        host = parts.hostname or ""
        if parts.port:
            host = f"{host}:{parts.port}"
        netloc = f"{parts.username or ''}:***@{host}"
        return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))
    except ValueError:
        return "***url_parse_error***"


def _build_store(settings: Settings) -> Store:
    store_type = "memory" if settings.use_memory_store else "postgres"
    try:
        if settings.use_memory_store:
            store: Store = MemoryStore(fs_root=settings.shared_fs_root)
        else:
            store = PostgresStore(settings.database_url, fs_root=settings.shared_fs_root)
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


def _build_cache(settings: Settings) -> Optional[Cache]:
    """Connect the advisory cache, or explain why the service runs without one.

    Outside TEST_MODE and ALLOW_REDIS_FALLBACK_DEV an unreachable Redis is a
    startup failure; with either flag every lookup goes to the store.
    """
    failure: Exception | None = None
    if settings.redis_url:
        try:
            # The sync client avoids binding to one event loop under TestClient
            cache: Cache = (
                SyncRedisCache(settings.redis_url)
                if settings.test_mode
                else RedisCache(settings.redis_url)
            )
            cache.verify_connection()
            return cache
        except Exception as exc:
            failure = exc

    if not settings.test_mode and not settings.allow_redis_fallback_dev:
        raise RuntimeError(
            "Redis is required for the token and menu caches; start Redis or set "
            "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true to run uncached."
        ) from failure

    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(failure) if failure else "redis_url_missing",
        mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
    )
    return None


class Runtime:
    """Wires the store, cache and services once per process."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = _build_store(self.settings)
        self.cache = _build_cache(self.settings)

        self.issuer = TokenIssuer(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            leeway_seconds=self.settings.jwt_leeway_seconds,
        )
        self.tokens = TokenStore(
            self.store,
            self.cache,
            cache_ttl_seconds=self.settings.token_cache_ttl_seconds,
        )
        self.auth = AuthService(self.store, self.tokens, self.issuer, self.settings)
        self.menus = MenuAuthorizer(
            self.store,
            self.cache,
            super_admin_role_id=self.settings.super_admin_role_id,
            cache_ttl_seconds=self.settings.menu_cache_ttl_seconds,
        )
        self.cleanup = TokenCleanupService(self.tokens, environment=self.settings.environment)
        logger.info("runtime_init_completed", cache_enabled=self.cache is not None)

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        pool = getattr(self.store, "pool", None)
        if pool is not None:
            await asyncio.to_thread(pool.close)


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide Runtime, building it on first use."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache_quietly(cache: Cache) -> None:
    try:
        if isinstance(cache, SyncRedisCache):
            cache._sync_client.close()
            return
        try:
            asyncio.get_running_loop().create_task(cache.close())
        except RuntimeError:
            asyncio.run(cache.close())
    except Exception as exc:
        logger.debug("runtime_reset_cache_close_failed", error=str(exc))


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh read of the environment."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            _close_cache_quietly(runtime.cache)

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
