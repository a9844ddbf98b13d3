from __future__ import annotations

import hashlib
import json
from typing import Any, List, Optional

import redis.asyncio as aioredis
from redis import Redis

TOKEN_NAMESPACE = "token"
MENU_NAMESPACE = "menu"
_DELETE_BATCH = 500


def token_cache_key(kind: str, token: str) -> str:
    """Cache key for a token record looked up by its ``access`` or ``refresh`` value.

    Token strings are hashed so raw bearer credentials never appear in the keyspace.
    """
    digest = hashlib.sha256(token.encode("utf-8")).hexdigest()
    return f"{TOKEN_NAMESPACE}:{kind}:{digest}"


def menu_cache_key(scope: str, role_key: str) -> str:
    return f"{MENU_NAMESPACE}:{scope}:{role_key}"


def _loads(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None


class RedisCache:
    """Thin Redis wrapper for token records and role-scoped menu results.

    Nothing stored here is authoritative. Namespace invalidation walks the
    keyspace with SCAN, which costs O(total keys) per call; it is fine for an
    admin back office but should become explicit per-entity key sets if the
    cache is shared with high-cardinality data.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def get_token_record(self, kind: str, token: str) -> Optional[dict]:
        return _loads(await self.client.get(token_cache_key(kind, token)))

    async def set_token_record(
        self, kind: str, token: str, payload: dict, ttl_seconds: int
    ) -> None:
        await self.client.set(
            token_cache_key(kind, token), json.dumps(payload), ex=max(1, int(ttl_seconds))
        )

    async def delete_keys(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def get_menu_cache(self, scope: str, role_key: str) -> Any:
        return _loads(await self.client.get(menu_cache_key(scope, role_key)))

    async def set_menu_cache(
        self, scope: str, role_key: str, payload: Any, ttl_seconds: int
    ) -> None:
        await self.client.set(
            menu_cache_key(scope, role_key), json.dumps(payload), ex=max(1, int(ttl_seconds))
        )

    async def invalidate_namespace(self, namespace: str) -> int:
        """Delete every key under ``namespace:``; returns the number removed."""
        removed = 0
        batch: List[str] = []
        async for key in self.client.scan_iter(match=f"{namespace}:*", count=_DELETE_BATCH):
            batch.append(key)
            if len(batch) >= _DELETE_BATCH:
                removed += int(await self.client.delete(*batch))
                batch = []
        if batch:
            removed += int(await self.client.delete(*batch))
        return removed

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so callers await it exactly
    like RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def ping(self) -> bool:
        return bool(self._sync_client.ping())

    async def get_token_record(self, kind: str, token: str) -> Optional[dict]:
        return _loads(self._sync_client.get(token_cache_key(kind, token)))

    async def set_token_record(
        self, kind: str, token: str, payload: dict, ttl_seconds: int
    ) -> None:
        self._sync_client.set(
            token_cache_key(kind, token), json.dumps(payload), ex=max(1, int(ttl_seconds))
        )

    async def delete_keys(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(self._sync_client.delete(*keys))

    async def get_menu_cache(self, scope: str, role_key: str) -> Any:
        return _loads(self._sync_client.get(menu_cache_key(scope, role_key)))

    async def set_menu_cache(
        self, scope: str, role_key: str, payload: Any, ttl_seconds: int
    ) -> None:
        self._sync_client.set(
            menu_cache_key(scope, role_key), json.dumps(payload), ex=max(1, int(ttl_seconds))
        )

    async def invalidate_namespace(self, namespace: str) -> int:
        removed = 0
        batch: List[str] = []
        for key in self._sync_client.scan_iter(match=f"{namespace}:*", count=_DELETE_BATCH):
            batch.append(key)
            if len(batch) >= _DELETE_BATCH:
                removed += int(self._sync_client.delete(*batch))
                batch = []
        if batch:
            removed += int(self._sync_client.delete(*batch))
        return removed

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
